"""
Batch worker process.

Started by the worker pool as `python -m docjobs.workers.batch_worker <batch_id>`.
Processes the pending jobs of one batch and reports every job status change
as a JSON line on stdout. It never writes to the Job Store itself: the pool
applies the reported changes. Logs go to stderr.
"""
import asyncio
import logging
import signal
import sys
from typing import Optional, Set, TextIO

import databases
from pydantic import ValidationError

from docjobs.config import settings
from docjobs.models.job import Job, JobStatus
from docjobs.models.messages import ControlMessage, ControlMessageType, WorkerMessage, WorkerMessageType
from docjobs.services.job_store import JobStore
from docjobs.utils.logger import setup_logging
from docjobs.utils.rate_limiter import SlidingWindowRateLimiter
from docjobs.workers.processor import JobProcessor

logger = logging.getLogger(__name__)


class BatchWorker:
    def __init__(
        self,
        batch_id: str,
        job_store: JobStore,
        processor: JobProcessor,
        concurrency: Optional[int] = None,
        batch_size: Optional[int] = None,
        rate_limit: Optional[int] = None,
        output: Optional[TextIO] = None,
    ):
        self.batch_id = batch_id
        self.job_store = job_store
        self.processor = processor
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.batch_size = batch_size or settings.WORKER_BATCH_SIZE
        self.output = output or sys.stdout
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._rate_limiter = SlidingWindowRateLimiter(rate_limit or settings.WORKER_RATE_LIMIT, 60.0)
        self._stop_event = asyncio.Event()
        # Jobs already taken by this run. The pool applies status writes
        # asynchronously, so a just-started job may still read as pending.
        self._seen_ids: Set[int] = set()

        logger.info(
            f"BatchWorker initialized for batch {batch_id}: concurrency={self.concurrency}, "
            f"batch_size={self.batch_size}, rate_limit={self._rate_limiter.max_calls}/min"
        )

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def send(self, message_type: WorkerMessageType, **fields) -> None:
        message = WorkerMessage(type=message_type, batch_id=self.batch_id, **fields)
        self.output.write(message.to_line())
        self.output.flush()

    def request_stop(self, reason: str) -> None:
        if not self._stop_event.is_set():
            logger.info(f"Batch {self.batch_id}: stopping ({reason}). In-flight jobs will finish.")
            self._stop_event.set()

    async def watch_control_stream(self, reader: asyncio.StreamReader) -> None:
        """Reads control messages from the supervisor until the stream closes."""
        while True:
            line = await reader.readline()
            if not line:
                # Supervisor is gone
                self.request_stop("control stream closed")
                return
            try:
                control = ControlMessage.model_validate_json(line)
            except ValidationError:
                logger.warning(f"Ignoring malformed control message: {line[:200]!r}")
                continue
            if control.type == ControlMessageType.SHUTDOWN:
                self.request_stop("shutdown requested by supervisor")

    async def _wait_for_rate_limit(self) -> bool:
        """Waits for a rate-limit slot. Returns False if a stop was requested first."""
        acquire = asyncio.ensure_future(self._rate_limiter.acquire())
        stop = asyncio.ensure_future(self._stop_event.wait())
        done, pending = await asyncio.wait({acquire, stop}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        return acquire in done and not self.stopping

    async def _run_job(self, job: Job) -> None:
        async with self._semaphore:
            if self.stopping or not await self._wait_for_rate_limit():
                # Not started, stays pending for a later run
                return

            source = job.display_source
            self.send(
                WorkerMessageType.JOB_PROGRESS,
                job_id=job.id,
                status=JobStatus.PROCESSING,
                source=source,
                message="Processing",
            )
            try:
                result = await self.processor.process(job)
            except Exception as e:
                error = str(e) or e.__class__.__name__
                logger.error(f"Job {job.id} failed: {error}", exc_info=True)
                self.send(
                    WorkerMessageType.JOB_PROGRESS,
                    job_id=job.id,
                    status=JobStatus.FAILED,
                    source=source,
                    error=error,
                    message=f"Failed: {error}",
                )
                return

            self.send(
                WorkerMessageType.JOB_PROGRESS,
                job_id=job.id,
                status=JobStatus.COMPLETED,
                source=source,
                message=result.message,
            )

    async def run(self) -> int:
        """Processes the batch and returns the process exit code."""
        logger.info(f"Starting batch processing for batch {self.batch_id}")
        self.send(WorkerMessageType.STARTED, message=f"Batch processing started for {self.batch_id}")

        try:
            while not self.stopping:
                jobs = await self.job_store.read_pending_jobs(
                    self.batch_id,
                    exclude_ids=self._seen_ids,
                    limit=self.batch_size,
                )
                if not jobs:
                    logger.info("No pending jobs left. Processing complete.")
                    break

                self._seen_ids.update(job.id for job in jobs)
                logger.info(f"Fetched {len(jobs)} jobs to process.")
                self.send(WorkerMessageType.PROGRESS, message=f"Processing batch of {len(jobs)} jobs...")

                # Finish this chunk before fetching the next one
                await asyncio.gather(*(self._run_job(job) for job in jobs))
        except Exception as e:
            logger.error(f"Batch {self.batch_id} processing failed: {e}", exc_info=True)
            self.send(WorkerMessageType.ERROR, message=str(e) or e.__class__.__name__)
            return 1

        if self.stopping:
            self.send(WorkerMessageType.DONE, message="Processing stopped due to shutdown")
        else:
            self.send(WorkerMessageType.DONE, message="All jobs completed successfully")
        logger.info(f"Batch processing finished for batch {self.batch_id}")
        return 0


async def open_control_stream() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def main(batch_id: str) -> int:
    database = databases.Database(settings.DATABASE_URL)
    processor = JobProcessor()
    worker = BatchWorker(batch_id, JobStore(database), processor)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, worker.request_stop, f"received {sig.name}")

    control_task: Optional[asyncio.Task] = None
    try:
        await database.connect()
        control_task = asyncio.create_task(worker.watch_control_stream(await open_control_stream()))
        return await worker.run()
    except Exception as e:
        logger.error(f"Batch worker for {batch_id} could not run: {e}", exc_info=True)
        worker.send(WorkerMessageType.ERROR, message=str(e) or e.__class__.__name__)
        return 1
    finally:
        if control_task is not None:
            control_task.cancel()
        await processor.close()
        if database.is_connected:
            await database.disconnect()


def run_worker(argv=None) -> None:
    argv = sys.argv[1:] if argv is None else argv
    setup_logging(stream=sys.stderr, log_file=None)
    if not argv:
        logger.error("Usage: python -m docjobs.workers.batch_worker <batch_id>")
        sys.exit(2)
    sys.exit(asyncio.run(main(argv[0])))


if __name__ == "__main__":
    run_worker()
