import asyncio
import logging
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import databases
import sqlalchemy

from docjobs.database import batches, jobs
from docjobs.exceptions import BatchAlreadyExistsError, InvalidStatusTransition, JobInFlightError
from docjobs.models.job import ALLOWED_TRANSITIONS, Batch, BatchSummary, Job, JobInput, JobStatus, JobUpdate

logger = logging.getLogger(__name__)

UNFINISHED_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


class JobStore:
    """
    Durable record of jobs and batches.

    Every job status change and the batch summary it affects are written in
    one transaction, so observers never see a summary that disagrees with the
    job rows. Writes from this process are additionally serialized by an
    asyncio lock; the batch workers only ever read.
    """

    def __init__(self, database: databases.Database):
        self.database = database
        self._write_lock = asyncio.Lock()

    @staticmethod
    def _row_to_job(row) -> Job:
        return Job(
            id=row["id"],
            batch_id=row["batch_id"],
            library_id=row["library_id"],
            source_url=row["source_url"],
            scrape_type=row["scrape_type"],
            origin_url=row["origin_url"],
            status=row["status"],
            created_at=row["created_at"],
            processed_at=row["processed_at"],
            error_message=row["error_message"],
        )

    @staticmethod
    def _row_to_summary(row) -> BatchSummary:
        return BatchSummary(
            total=row["total"],
            pending=row["pending"],
            processing=row["processing"],
            completed=row["completed"],
            failed=row["failed"],
        )

    async def create_batch(
        self,
        job_inputs: List[JobInput],
        batch_id: Optional[str] = None,
        library_id: Optional[str] = None,
    ) -> Batch:
        """Inserts a batch and one pending job per input."""
        if not job_inputs:
            raise ValueError("A batch needs at least one job")

        batch_id = batch_id or str(uuid.uuid4())
        now = datetime.utcnow()

        async with self._write_lock:
            async with self.database.transaction():
                if await self.batch_exists(batch_id):
                    raise BatchAlreadyExistsError(batch_id)

                await self.database.execute(
                    batches.insert().values(
                        batch_id=batch_id,
                        library_id=library_id,
                        total=0, pending=0, processing=0, completed=0, failed=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                await self.database.execute_many(
                    jobs.insert(),
                    [
                        {
                            "batch_id": batch_id,
                            "library_id": library_id,
                            "source_url": job_input.source_url,
                            "scrape_type": job_input.scrape_type.value,
                            "origin_url": job_input.origin_url,
                            "status": JobStatus.PENDING.value,
                            "created_at": now,
                            "updated_at": now,
                        }
                        for job_input in job_inputs
                    ],
                )
                summary = await self._recompute_summary(batch_id)

        logger.info(f"Batch {batch_id} created with {summary.total} jobs.")
        return Batch(
            batch_id=batch_id,
            library_id=library_id,
            created_at=now,
            summary=summary,
            jobs=await self.read_batch_jobs(batch_id),
        )

    async def batch_exists(self, batch_id: str) -> bool:
        row = await self.database.fetch_one(
            sqlalchemy.select(batches.c.batch_id).where(batches.c.batch_id == batch_id)
        )
        return row is not None

    async def read_job(self, job_id: int) -> Optional[Job]:
        row = await self.database.fetch_one(jobs.select().where(jobs.c.id == job_id))
        return self._row_to_job(row) if row else None

    async def read_jobs(self, job_ids: Iterable[int]) -> List[Job]:
        rows = await self.database.fetch_all(
            jobs.select().where(jobs.c.id.in_(list(job_ids))).order_by(jobs.c.id)
        )
        return [self._row_to_job(row) for row in rows]

    async def read_batch_jobs(self, batch_id: str) -> List[Job]:
        rows = await self.database.fetch_all(
            jobs.select().where(jobs.c.batch_id == batch_id).order_by(jobs.c.id)
        )
        return [self._row_to_job(row) for row in rows]

    async def read_pending_jobs(
        self,
        batch_id: str,
        exclude_ids: Iterable[int] = (),
        limit: Optional[int] = None,
    ) -> List[Job]:
        """Pending jobs of a batch in creation order, skipping ids the caller already holds."""
        query = jobs.select().where(
            jobs.c.batch_id == batch_id,
            jobs.c.status == JobStatus.PENDING.value,
        )
        exclude_ids = list(exclude_ids)
        if exclude_ids:
            query = query.where(jobs.c.id.not_in(exclude_ids))
        query = query.order_by(jobs.c.created_at, jobs.c.id)
        if limit:
            query = query.limit(limit)
        rows = await self.database.fetch_all(query)
        return [self._row_to_job(row) for row in rows]

    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        """Summary and job rows of one batch, read in one transaction."""
        async with self.database.transaction():
            row = await self.database.fetch_one(
                batches.select().where(batches.c.batch_id == batch_id)
            )
            if row is None:
                return None
            batch_jobs = await self.read_batch_jobs(batch_id)
        return Batch(
            batch_id=row["batch_id"],
            library_id=row["library_id"],
            created_at=row["created_at"],
            summary=self._row_to_summary(row),
            jobs=batch_jobs,
        )

    async def get_summary(self, batch_id: str) -> Optional[BatchSummary]:
        row = await self.database.fetch_one(
            batches.select().where(batches.c.batch_id == batch_id)
        )
        return self._row_to_summary(row) if row else None

    async def write_job_status(
        self,
        job_id: int,
        status: JobStatus,
        processed_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> Optional[JobUpdate]:
        """
        Applies one status change and refreshes the batch summary atomically.

        Args:
            job_id: Job row ID.
            status: New status.
            processed_at: Defaults to now.
            error_message: Stored only when the new status is failed.
            batch_id: When given, the write only applies to a job of this batch.

        Returns:
            The updated job and summary, or None when the job no longer exists
            (or belongs to another batch).

        Raises:
            InvalidStatusTransition: If the change is not allowed from the current status.
        """
        status = JobStatus(status)
        async with self._write_lock:
            async with self.database.transaction():
                job = await self.read_job(job_id)
                if job is None or (batch_id is not None and job.batch_id != batch_id):
                    return None
                if status not in ALLOWED_TRANSITIONS[job.status]:
                    raise InvalidStatusTransition(job_id, job.status.value, status.value)

                values = {
                    "status": status.value,
                    "updated_at": datetime.utcnow(),
                    "processed_at": processed_at or datetime.utcnow(),
                    "error_message": error_message if status == JobStatus.FAILED else None,
                }
                await self.database.execute(jobs.update().where(jobs.c.id == job_id).values(**values))
                summary = await self._recompute_summary(job.batch_id)

        job = job.model_copy(update={
            "status": status,
            "processed_at": values["processed_at"],
            "error_message": values["error_message"],
        })
        return JobUpdate(job=job, summary=summary)

    async def recompute_and_persist_summary(self, batch_id: str) -> BatchSummary:
        async with self._write_lock:
            async with self.database.transaction():
                return await self._recompute_summary(batch_id)

    async def _recompute_summary(self, batch_id: str) -> BatchSummary:
        rows = await self.database.fetch_all(
            sqlalchemy.select(jobs.c.status, sqlalchemy.func.count().label("count"))
            .where(jobs.c.batch_id == batch_id)
            .group_by(jobs.c.status)
        )
        counts: Dict[str, int] = {row["status"]: row["count"] for row in rows}
        summary = BatchSummary(
            total=sum(counts.values()),
            pending=counts.get(JobStatus.PENDING.value, 0),
            processing=counts.get(JobStatus.PROCESSING.value, 0),
            completed=counts.get(JobStatus.COMPLETED.value, 0),
            failed=counts.get(JobStatus.FAILED.value, 0),
        )
        await self.database.execute(
            batches.update()
            .where(batches.c.batch_id == batch_id)
            .values(**summary.model_dump(), updated_at=datetime.utcnow())
        )
        return summary

    async def fail_unfinished_jobs(
        self,
        batch_id: str,
        reason: str,
        statuses: Iterable[str] = UNFINISHED_STATUSES,
    ) -> List[Job]:
        """
        Marks every job of a batch still in one of `statuses` as failed.
        Used to reconcile a batch whose worker is gone.

        Returns:
            The jobs that were failed, with their new status.
        """
        statuses = [JobStatus(s).value for s in statuses]
        now = datetime.utcnow()
        async with self._write_lock:
            async with self.database.transaction():
                rows = await self.database.fetch_all(
                    jobs.select().where(jobs.c.batch_id == batch_id, jobs.c.status.in_(statuses))
                )
                stranded = [self._row_to_job(row) for row in rows]
                if stranded:
                    await self.database.execute(
                        jobs.update()
                        .where(jobs.c.id.in_([job.id for job in stranded]))
                        .values(
                            status=JobStatus.FAILED.value,
                            error_message=reason,
                            processed_at=now,
                            updated_at=now,
                        )
                    )
                await self._recompute_summary(batch_id)

        if stranded:
            logger.warning(f"Batch {batch_id}: marked {len(stranded)} unfinished jobs as failed ({reason}).")
        return [
            job.model_copy(update={"status": JobStatus.FAILED, "error_message": reason, "processed_at": now})
            for job in stranded
        ]

    async def fail_orphaned_jobs(self, reason: str) -> List[Job]:
        """
        Fails every job left 'processing' in any batch. Only safe to call when
        no worker of this supervisor is running, i.e. at startup.
        """
        rows = await self.database.fetch_all(
            sqlalchemy.select(jobs.c.batch_id)
            .where(jobs.c.status == JobStatus.PROCESSING.value)
            .distinct()
        )
        orphaned: List[Job] = []
        for row in rows:
            orphaned.extend(
                await self.fail_unfinished_jobs(row["batch_id"], reason, statuses=(JobStatus.PROCESSING,))
            )
        return orphaned

    async def requeue_jobs(self, job_ids: Iterable[int]) -> int:
        """
        Resets the given jobs to pending for reprocessing. Returns the number of rows reset.

        Raises:
            JobInFlightError: If any of the jobs is processing when the write runs;
                nothing is reset in that case.
        """
        job_ids = list(job_ids)
        if not job_ids:
            return 0
        async with self._write_lock:
            async with self.database.transaction():
                in_flight = await self.database.fetch_all(
                    sqlalchemy.select(jobs.c.id)
                    .where(jobs.c.id.in_(job_ids))
                    .where(jobs.c.status == JobStatus.PROCESSING.value)
                )
                if in_flight:
                    raise JobInFlightError(
                        f"Jobs {[row['id'] for row in in_flight]} are being processed and cannot be requeued."
                    )
                rows = await self.database.fetch_all(
                    sqlalchemy.select(jobs.c.batch_id).where(jobs.c.id.in_(job_ids)).distinct()
                )
                await self.database.execute(
                    jobs.update()
                    .where(jobs.c.id.in_(job_ids))
                    .values(
                        status=JobStatus.PENDING.value,
                        processed_at=None,
                        error_message=None,
                        updated_at=datetime.utcnow(),
                    )
                )
                for row in rows:
                    await self._recompute_summary(row["batch_id"])
        logger.info(f"Requeued jobs {job_ids}.")
        return len(job_ids)

    async def delete_job(self, job_id: int) -> bool:
        """Deletes one job row and refreshes its batch summary. Returns False if it did not exist."""
        async with self._write_lock:
            async with self.database.transaction():
                job = await self.read_job(job_id)
                if job is None:
                    return False
                await self.database.execute(jobs.delete().where(jobs.c.id == job_id))
                await self._recompute_summary(job.batch_id)
        logger.info(f"Deleted job {job_id} from batch {job.batch_id}.")
        return True

    async def get_batches_for_library(self, library_id: str) -> List[Batch]:
        """All batches of a library, newest first, each with its jobs."""
        batch_rows = await self.database.fetch_all(
            batches.select()
            .where(batches.c.library_id == library_id)
            .order_by(batches.c.created_at.desc())
        )
        result = []
        for row in batch_rows:
            result.append(Batch(
                batch_id=row["batch_id"],
                library_id=row["library_id"],
                created_at=row["created_at"],
                summary=self._row_to_summary(row),
                jobs=await self.read_batch_jobs(row["batch_id"]),
            ))
        return result

    async def get_latest_batch_id_for_library(self, library_id: str) -> Optional[str]:
        row = await self.database.fetch_one(
            sqlalchemy.select(batches.c.batch_id)
            .where(batches.c.library_id == library_id)
            .order_by(batches.c.created_at.desc())
            .limit(1)
        )
        return row["batch_id"] if row else None
