import logging
from typing import List, Optional

from pydantic import BaseModel

from docjobs.exceptions import (
    BatchNotFoundError,
    InvalidSelectionError,
    JobInFlightError,
    JobNotFoundError,
)
from docjobs.models.job import Batch, Job, JobInput, JobStatus
from docjobs.services.job_store import JobStore
from docjobs.services.worker_pool import AdmissionOutcome, PoolStatus, WorkerPool

logger = logging.getLogger(__name__)

OUTCOME_STATUS_CODES = {
    AdmissionOutcome.ACCEPTED: 200,
    AdmissionOutcome.DUPLICATE: 202,
    AdmissionOutcome.CAPACITY_EXCEEDED: 429,
    AdmissionOutcome.SHUTTING_DOWN: 503,
    AdmissionOutcome.FAILED_TO_START: 500,
}


class SubmitResult(BaseModel):
    batch_id: str
    outcome: AdmissionOutcome
    message: str
    status_code: int

    @property
    def started(self) -> bool:
        return self.outcome == AdmissionOutcome.ACCEPTED


class JobBatchManager:
    """
    Admission control and bookkeeping for batches.

    Starting a batch goes through the pool, whose lock makes the duplicate
    check, the capacity check and the registration of the new worker one
    atomic step. Rejections come back as outcomes, not exceptions.
    """

    def __init__(self, job_store: JobStore, worker_pool: WorkerPool):
        self.job_store = job_store
        self.worker_pool = worker_pool

    async def create_batch(
        self,
        job_inputs: List[JobInput],
        batch_id: Optional[str] = None,
        library_id: Optional[str] = None,
    ) -> Batch:
        return await self.job_store.create_batch(job_inputs, batch_id=batch_id, library_id=library_id)

    async def submit_batch(self, batch_id: str) -> SubmitResult:
        """
        Starts processing a batch unless it is already running or the pool is full.

        Raises:
            BatchNotFoundError: If the batch does not exist.
        """
        if not await self.job_store.batch_exists(batch_id):
            raise BatchNotFoundError(batch_id)

        admission = await self.worker_pool.spawn_worker(batch_id)
        result = SubmitResult(
            batch_id=batch_id,
            outcome=admission.outcome,
            message=admission.message,
            status_code=OUTCOME_STATUS_CODES[admission.outcome],
        )
        logger.info(f"Submit batch {batch_id}: {result.outcome.value} ({result.message})")
        return result

    def get_pool_status(self) -> PoolStatus:
        return self.worker_pool.get_status()

    async def get_batch_status(self, batch_id: str) -> Batch:
        batch = await self.job_store.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch

    def _ensure_not_in_flight(self, selected: List[Job]) -> None:
        in_flight = [
            job.id for job in selected
            if job.status == JobStatus.PROCESSING and self.worker_pool.is_batch_active(job.batch_id)
        ]
        if in_flight:
            raise JobInFlightError(f"Jobs {in_flight} are being processed and cannot be requeued.")

    async def process_single(self, job_id: int) -> SubmitResult:
        """Requeues one job and submits its batch."""
        job = await self.job_store.read_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        self._ensure_not_in_flight([job])

        await self.job_store.requeue_jobs([job_id])
        return await self.submit_batch(job.batch_id)

    async def process_selected(self, batch_id: str, job_ids: List[int]) -> SubmitResult:
        """
        Requeues the selected jobs of a batch and submits the batch.

        Raises:
            BatchNotFoundError: If the batch does not exist.
            InvalidSelectionError: If the selection is empty, has unknown ids,
                or includes jobs of another batch.
            JobInFlightError: If a selected job is being processed right now.
        """
        if not await self.job_store.batch_exists(batch_id):
            raise BatchNotFoundError(batch_id)

        unique_ids = list(dict.fromkeys(job_ids))
        if not unique_ids:
            raise InvalidSelectionError("No jobs selected.")

        selected = await self.job_store.read_jobs(unique_ids)
        found = {job.id for job in selected}
        missing = [job_id for job_id in unique_ids if job_id not in found]
        if missing:
            raise InvalidSelectionError(f"Jobs {missing} do not exist.")
        foreign = [job.id for job in selected if job.batch_id != batch_id]
        if foreign:
            raise InvalidSelectionError(f"Jobs {foreign} do not belong to batch {batch_id}.")
        self._ensure_not_in_flight(selected)

        await self.job_store.requeue_jobs(unique_ids)
        return await self.submit_batch(batch_id)

    async def delete_job(self, job_id: int) -> None:
        """
        Deletes a job. A job deleted while its batch is running is removed
        right away; whatever the worker later reports for it is discarded.
        """
        job = await self.job_store.read_job(job_id)
        if job is None or not await self.job_store.delete_job(job_id):
            raise JobNotFoundError(job_id)
        if self.worker_pool.is_batch_active(job.batch_id):
            logger.info(f"Job {job_id} deleted while batch {job.batch_id} is running; its result will be discarded.")

    async def get_batches_for_library(self, library_id: str) -> List[Batch]:
        return await self.job_store.get_batches_for_library(library_id)

    async def get_latest_batch_for_library(self, library_id: str) -> Optional[Batch]:
        batch_id = await self.job_store.get_latest_batch_id_for_library(library_id)
        if batch_id is None:
            return None
        return await self.job_store.get_batch(batch_id)
