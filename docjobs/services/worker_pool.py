import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, ValidationError

from docjobs.config import settings
from docjobs.exceptions import InvalidStatusTransition
from docjobs.models.job import Job, JobStatus
from docjobs.models.messages import ControlMessage, ControlMessageType, WorkerMessage, WorkerMessageType
from docjobs.services.event_channel import RedisEventChannel
from docjobs.services.job_store import JobStore
from docjobs.utils.text_utils import truncate

logger = logging.getLogger(__name__)

WORKER_MODULE = "docjobs.workers.batch_worker"
ORPHANED_JOB_REASON = "Interrupted by a previous shutdown; the worker processing this job is gone"
FORCED_SHUTDOWN_REASON = "Worker process was force-terminated during shutdown"
STREAM_LIMIT = 1024 * 1024 # Max bytes per worker message line


class AdmissionOutcome(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    SHUTTING_DOWN = "shutting_down"
    FAILED_TO_START = "failed_to_start"


class Admission(BaseModel):
    outcome: AdmissionOutcome
    message: str


class PoolStatus(BaseModel):
    active_batches: int
    running_batches: List[str]
    max_batches: int
    is_shutting_down: bool


class HandleState(str, Enum):
    SPAWNING = "spawning"
    RUNNING = "running"
    FINISHING = "finishing"
    CRASHED = "crashed"
    RECLAIMED = "reclaimed"


@dataclass
class WorkerHandle:
    """Pool-side record of one batch worker, from admission until reclamation."""
    batch_id: str
    started_at: datetime = field(default_factory=datetime.utcnow)
    state: HandleState = HandleState.SPAWNING
    process: Optional[asyncio.subprocess.Process] = None
    supervisor: Optional[asyncio.Task] = None
    done_message: Optional[str] = None
    last_error: Optional[str] = None
    forced_reason: Optional[str] = None
    reconcile_claimed: bool = False
    reclaimed: asyncio.Event = field(default_factory=asyncio.Event)


def abnormal_exit_reason(returncode: Optional[int]) -> str:
    if returncode is None:
        return "Worker process terminated abnormally (message stream lost)"
    if returncode < 0:
        return f"Worker process terminated abnormally (killed by signal {-returncode})"
    return f"Worker process terminated abnormally (exit code {returncode})"


class WorkerPool:
    """
    Runs one isolated worker process per active batch.

    All admission decisions, handle registration and removal, and the
    shutdown flag live behind one asyncio lock. Each worker's stdout is read
    by a dedicated supervisor task, so its messages are relayed in the order
    the worker sent them. When a worker exits for any reason its handle is
    reconciled and removed exactly once.
    """

    def __init__(
        self,
        job_store: JobStore,
        event_channel: RedisEventChannel,
        max_active_batches: Optional[int] = None,
        shutdown_timeout: Optional[float] = None,
        kill_grace: Optional[float] = None,
        start_timeout: Optional[float] = None,
        worker_command: Optional[Sequence[str]] = None,
        worker_env: Optional[Dict[str, str]] = None,
    ):
        self.job_store = job_store
        self.event_channel = event_channel
        self.max_active_batches = max_active_batches or settings.MAX_ACTIVE_BATCHES
        self.shutdown_timeout = settings.SHUTDOWN_TIMEOUT_SECONDS if shutdown_timeout is None else shutdown_timeout
        self.kill_grace = settings.WORKER_KILL_GRACE_SECONDS if kill_grace is None else kill_grace
        self.start_timeout = settings.WORKER_START_TIMEOUT_SECONDS if start_timeout is None else start_timeout
        self.worker_command = list(worker_command or [sys.executable, "-m", WORKER_MODULE])
        self.worker_env = worker_env or {}

        self._lock = asyncio.Lock()
        self._handles: Dict[str, WorkerHandle] = {}
        self._is_shutting_down = False
        self._drained = asyncio.Event()
        self._drained.set()
        self._shutdown_task: Optional[asyncio.Future] = None

    @property
    def is_shutting_down(self) -> bool:
        return self._is_shutting_down

    def get_status(self) -> PoolStatus:
        """
        Snapshot of the pool. Taken without yielding to the event loop, so it
        never mixes two states.
        """
        return PoolStatus(
            active_batches=len(self._handles),
            running_batches=list(self._handles.keys()),
            max_batches=self.max_active_batches,
            is_shutting_down=self._is_shutting_down,
        )

    def is_batch_active(self, batch_id: str) -> bool:
        return batch_id in self._handles

    async def spawn_worker(self, batch_id: str) -> Admission:
        """
        Admits a batch and starts its worker process.

        The shutdown check, duplicate check, capacity check and registration
        of the handle form one critical section; the process launch happens
        outside of it with the slot already held.
        """
        async with self._lock:
            if self._is_shutting_down:
                return Admission(outcome=AdmissionOutcome.SHUTTING_DOWN, message="System is shutting down")
            if batch_id in self._handles:
                return Admission(outcome=AdmissionOutcome.DUPLICATE, message="Batch already running")
            if len(self._handles) >= self.max_active_batches:
                logger.info(f"Rejecting batch {batch_id}: {len(self._handles)}/{self.max_active_batches} workers busy.")
                return Admission(
                    outcome=AdmissionOutcome.CAPACITY_EXCEEDED,
                    message=f"Maximum capacity reached ({self.max_active_batches} active batches)",
                )
            handle = WorkerHandle(batch_id=batch_id)
            self._handles[batch_id] = handle
            self._drained.clear()

        try:
            process = await asyncio.wait_for(self._launch(batch_id), timeout=self.start_timeout)
        except Exception as e:
            logger.error(f"Failed to start worker for batch {batch_id}: {e}", exc_info=True)
            await self._remove_handle(handle)
            return Admission(
                outcome=AdmissionOutcome.FAILED_TO_START,
                message=f"Failed to start batch processing: {str(e) or e.__class__.__name__}",
            )

        async with self._lock:
            reclaimed = handle.state == HandleState.RECLAIMED
            if not reclaimed:
                handle.process = process
                handle.state = HandleState.RUNNING
                handle.supervisor = asyncio.create_task(self._supervise(handle), name=f"worker-{batch_id}")
            stop_now = self._is_shutting_down

        if reclaimed:
            # Force-reclaimed by shutdown while the process was launching
            self._kill(process)
            await process.wait()
            return Admission(outcome=AdmissionOutcome.SHUTTING_DOWN, message="System is shutting down")

        if stop_now:
            await self._request_stop(handle)

        logger.info(f"Started worker process for batch {batch_id}, PID: {process.pid}")
        return Admission(outcome=AdmissionOutcome.ACCEPTED, message=f"Batch processing started for {batch_id}")

    async def _launch(self, batch_id: str) -> asyncio.subprocess.Process:
        env = {**os.environ, **self.worker_env}
        return await asyncio.create_subprocess_exec(
            *self.worker_command,
            batch_id,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            env=env,
            limit=STREAM_LIMIT,
        )

    async def _supervise(self, handle: WorkerHandle) -> None:
        """Reads one worker's messages in order until its stdout closes, then reconciles."""
        process = handle.process
        returncode: Optional[int] = None
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                await self._handle_line(handle, line)
            returncode = await process.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Batch {handle.batch_id}: lost the worker message stream: {e}", exc_info=True)
            self._kill(process)
            await process.wait()
            returncode = None

        logger.info(f"Worker for batch {handle.batch_id} (PID {process.pid}) exited with code {returncode}")
        await self._reconcile(handle, returncode)

    async def _handle_line(self, handle: WorkerHandle, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return
        try:
            message = WorkerMessage.model_validate_json(text)
        except ValidationError as e:
            logger.warning(f"Batch {handle.batch_id}: ignoring malformed worker message {truncate(text)!r}: {e}")
            return
        if message.batch_id != handle.batch_id:
            logger.warning(
                f"Batch {handle.batch_id}: ignoring message addressed to batch {message.batch_id}"
            )
            return

        if settings.IPC_LOG:
            logger.info(f"[IPC {handle.batch_id}] {text}")

        try:
            await self._relay(handle, message)
        except Exception as e:
            # One bad message must not stop the supervisor
            logger.error(f"Batch {handle.batch_id}: failed to relay {message.type.value} message: {e}", exc_info=True)

    async def _relay(self, handle: WorkerHandle, message: WorkerMessage) -> None:
        batch_id = handle.batch_id
        if message.type == WorkerMessageType.STARTED:
            await self.event_channel.publish("job", batch_id, {
                "type": "processing:started",
                "batch_id": batch_id,
                "message": message.message or "Batch processing started",
            })
        elif message.type == WorkerMessageType.PROGRESS:
            self.event_channel.publish_coalesced("job", batch_id, {
                "type": "processing:progress",
                "batch_id": batch_id,
                "message": message.message or "Processing batch...",
            })
        elif message.type == WorkerMessageType.JOB_PROGRESS:
            await self._relay_job_progress(handle, message)
        elif message.type == WorkerMessageType.DONE:
            handle.done_message = message.message
            if handle.state == HandleState.RUNNING:
                handle.state = HandleState.FINISHING
        elif message.type == WorkerMessageType.ERROR:
            handle.last_error = message.message or message.error or "Batch processing failed"
            logger.error(f"Batch {batch_id}: worker reported an error: {handle.last_error}")
            await self.event_channel.publish("job", batch_id, {
                "type": "processing:error",
                "batch_id": batch_id,
                "message": handle.last_error,
            })

    async def _relay_job_progress(self, handle: WorkerHandle, message: WorkerMessage) -> None:
        batch_id = handle.batch_id
        if message.job_id is None or message.status is None:
            logger.warning(f"Batch {batch_id}: job-progress message without job id or status, ignoring.")
            return

        error = None
        if message.status == JobStatus.FAILED:
            error = message.error or message.message or "Job failed"
        try:
            update = await self.job_store.write_job_status(
                message.job_id,
                message.status,
                processed_at=datetime.utcnow(),
                error_message=error,
                batch_id=batch_id,
            )
        except InvalidStatusTransition as e:
            logger.warning(f"Batch {batch_id}: ignoring worker report: {e}")
            return

        if update is None:
            logger.info(f"Batch {batch_id}: job {message.job_id} no longer exists, discarding its result.")
            return

        await self._publish_job_event(update.job, {
            "type": "job:progress",
            "batch_id": batch_id,
            "job_id": update.job.id,
            "status": update.job.status.value,
            "source": message.source or update.job.display_source,
            "message": message.message,
            "error": error,
            "summary": update.summary.model_dump(),
        })

    async def _publish_job_event(self, job: Job, payload: dict) -> None:
        await self.event_channel.publish("job", job.batch_id, payload)
        if job.library_id:
            await self.event_channel.publish("library", job.library_id, payload)

    async def _reconcile(self, handle: WorkerHandle, returncode: Optional[int]) -> None:
        """
        Settles the jobs of a worker that is gone and frees its slot. Runs at
        most once per handle, whichever path gets here first.
        """
        async with self._lock:
            if handle.reconcile_claimed:
                return
            handle.reconcile_claimed = True
            clean_exit = handle.forced_reason is None and returncode == 0
            handle.state = HandleState.FINISHING if clean_exit else HandleState.CRASHED

        batch_id = handle.batch_id
        self.event_channel.discard_coalesced("job", batch_id)
        try:
            if clean_exit:
                # Pending jobs are left for a later run; anything still in flight is not coming back
                stranded = await self.job_store.fail_unfinished_jobs(
                    batch_id,
                    "Worker process exited without reporting a result for this job",
                    statuses=(JobStatus.PROCESSING,),
                )
                event_type = "batch:completed"
                final_message = handle.done_message or "Batch processing completed"
            else:
                final_message = handle.forced_reason or abnormal_exit_reason(returncode)
                logger.error(f"Batch {batch_id}: {final_message}")
                stranded = await self.job_store.fail_unfinished_jobs(batch_id, final_message)
                event_type = "batch:failed"

            summary = await self.job_store.get_summary(batch_id)
            for job in stranded:
                await self._publish_job_event(job, {
                    "type": "job:progress",
                    "batch_id": batch_id,
                    "job_id": job.id,
                    "status": job.status.value,
                    "source": job.display_source,
                    "error": job.error_message,
                    "summary": summary.model_dump() if summary else None,
                })
            await self.event_channel.publish("job", batch_id, {
                "type": event_type,
                "batch_id": batch_id,
                "message": final_message,
                "exit_code": returncode,
                "summary": summary.model_dump() if summary else None,
            })
        except Exception as e:
            logger.error(f"Batch {batch_id}: reconciliation after worker exit failed: {e}", exc_info=True)
        finally:
            await self._remove_handle(handle)

    async def _remove_handle(self, handle: WorkerHandle) -> None:
        async with self._lock:
            if self._handles.get(handle.batch_id) is handle:
                del self._handles[handle.batch_id]
            handle.state = HandleState.RECLAIMED
            handle.reclaimed.set()
            if not self._handles:
                self._drained.set()

    async def _request_stop(self, handle: WorkerHandle, drain_timeout: float = 1.0) -> None:
        process = handle.process
        if process is None or process.returncode is not None or process.stdin is None:
            return
        try:
            process.stdin.write(ControlMessage(type=ControlMessageType.SHUTDOWN).to_line())
            await asyncio.wait_for(process.stdin.drain(), timeout=drain_timeout)
            logger.info(f"Sent shutdown request to worker for batch {handle.batch_id} (PID {process.pid})")
        except (BrokenPipeError, ConnectionResetError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not send shutdown request to worker for batch {handle.batch_id}: {e!r}")

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        try:
            process.kill()
        except ProcessLookupError:
            pass

    def _abandon(self, handle: WorkerHandle) -> None:
        """Drops a handle whose reconciliation did not finish before the shutdown deadline."""
        if handle.process is not None and handle.process.returncode is None:
            self._kill(handle.process)
        if handle.supervisor is not None and not handle.supervisor.done():
            handle.supervisor.cancel()
        if self._handles.get(handle.batch_id) is handle:
            del self._handles[handle.batch_id]
        handle.state = HandleState.RECLAIMED
        handle.reclaimed.set()
        if not self._handles:
            self._drained.set()
        logger.error(
            f"Batch {handle.batch_id}: shutdown deadline passed before its jobs were settled; "
            "they will be failed as orphaned on next startup."
        )

    async def _force_terminate(self, handle: WorkerHandle, term_grace: float) -> None:
        handle.forced_reason = FORCED_SHUTDOWN_REASON
        process = handle.process
        if process is not None and process.returncode is None:
            logger.warning(f"Terminating worker for batch {handle.batch_id} (PID {process.pid})")
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=term_grace)
            except asyncio.TimeoutError:
                logger.warning(f"Worker for batch {handle.batch_id} ignored SIGTERM, killing it")
                self._kill(process)
                await process.wait()

        # The supervisor normally sees EOF and reconciles on its own
        if handle.supervisor is not None and not handle.supervisor.done():
            await asyncio.wait({handle.supervisor})

        returncode = process.returncode if process is not None else None
        await self._reconcile(handle, returncode)
        if not handle.reclaimed.is_set():
            await self._remove_handle(handle)

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stops accepting work and brings every worker down within `timeout` seconds.

        Workers are first asked to stop. The last part of the budget, at most
        twice the kill grace and never more than half of it, is kept for
        terminating whatever is still running and marking its jobs failed.
        Concurrent and repeated calls wait for the same shutdown.
        """
        async with self._lock:
            self._is_shutting_down = True
            if self._shutdown_task is None:
                self._shutdown_task = asyncio.ensure_future(self._run_shutdown(timeout))
            shutdown_task = self._shutdown_task
        await asyncio.shield(shutdown_task)

    async def _run_shutdown(self, timeout: Optional[float]) -> None:
        timeout = self.shutdown_timeout if timeout is None else timeout
        handles = list(self._handles.values())
        if not handles:
            logger.info("Worker pool shut down with no active workers.")
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        force_budget = min(2 * self.kill_grace, timeout / 2)
        cooperative_deadline = deadline - force_budget

        logger.info(f"Shutting down worker pool: asking {len(handles)} worker(s) to stop...")
        await asyncio.gather(*(
            self._request_stop(handle, drain_timeout=min(1.0, timeout - force_budget)) for handle in handles
        ))

        try:
            await asyncio.wait_for(self._drained.wait(), timeout=max(cooperative_deadline - loop.time(), 0))
            logger.info("All worker processes stopped.")
            return
        except asyncio.TimeoutError:
            pass

        remaining = list(self._handles.values())
        logger.warning(
            f"Shutdown timeout ({timeout}s) nearly reached with {len(remaining)} worker(s) still running, "
            "force-terminating."
        )
        # SIGTERM gets a quarter of the force phase, the rest is for SIGKILL and settling jobs
        try:
            await asyncio.wait_for(
                asyncio.gather(*(self._force_terminate(handle, force_budget / 4) for handle in remaining)),
                timeout=max(deadline - loop.time(), 0),
            )
        except asyncio.TimeoutError:
            for handle in list(self._handles.values()):
                self._abandon(handle)
        logger.info("Worker pool shut down.")

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Waits until no worker is active. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._drained.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def recover_orphaned_jobs(self) -> List[Job]:
        """
        Fails jobs left 'processing' by a previous run of the service. Must run
        before the pool admits its first batch.
        """
        async with self._lock:
            if self._handles:
                raise RuntimeError("Orphan recovery is only safe before any worker has started")
        orphaned = await self.job_store.fail_orphaned_jobs(ORPHANED_JOB_REASON)
        if orphaned:
            logger.warning(f"Recovered {len(orphaned)} orphaned job(s) left processing by a previous run.")
        else:
            logger.info("No orphaned jobs found.")
        return orphaned
