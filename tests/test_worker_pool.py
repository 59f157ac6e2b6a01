import asyncio
import os
import time

import pytest
import pytest_asyncio

from docjobs.models.job import JobInput, JobStatus, ScrapeType
from docjobs.services.worker_pool import (
    FORCED_SHUTDOWN_REASON,
    ORPHANED_JOB_REASON,
    AdmissionOutcome,
    WorkerPool,
)
from helpers import fake_worker_command, make_batch, published_events

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


@pytest_asyncio.fixture
async def make_pool(job_store, event_channel):
    """Builds pools running tests/fake_worker.py and shuts them all down afterwards."""
    pools = []

    def _make(scenario, job_ids=(), **kwargs):
        kwargs.setdefault("shutdown_timeout", 2.0)
        kwargs.setdefault("kill_grace", 0.5)
        pool = WorkerPool(
            job_store,
            event_channel,
            worker_command=kwargs.pop("worker_command", fake_worker_command(scenario)),
            worker_env={"FAKE_JOB_IDS": ",".join(str(job_id) for job_id in job_ids)},
            **kwargs,
        )
        pools.append(pool)
        return pool

    yield _make

    for pool in pools:
        await pool.shutdown(timeout=1.0)


async def wait_for_status(job_store, job_id, status, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = await job_store.read_job(job_id)
        if job is not None and job.status == status:
            return job
        await asyncio.sleep(0.05)
    raise AssertionError(f"Job {job_id} did not reach {status.value} within {timeout}s")


@pytest.mark.asyncio
async def test_duplicate_submission_does_not_spawn_twice(job_store, make_pool):
    """Submitting a running batch again reports duplicate and keeps one worker."""
    await make_batch(job_store, "b1")
    pool = make_pool("cooperative", max_active_batches=1)

    first = await pool.spawn_worker("b1")
    second = await pool.spawn_worker("b1")

    assert first.outcome == AdmissionOutcome.ACCEPTED
    assert second.outcome == AdmissionOutcome.DUPLICATE
    status = pool.get_status()
    assert status.active_batches == 1
    assert status.running_batches == ["b1"]
    assert status.max_batches == 1
    assert not status.is_shutting_down


@pytest.mark.asyncio
async def test_capacity_exceeded_leaves_state_unchanged(job_store, make_pool):
    await make_batch(job_store, "b1")
    await make_batch(job_store, "b2")
    pool = make_pool("cooperative", max_active_batches=1)

    assert (await pool.spawn_worker("b1")).outcome == AdmissionOutcome.ACCEPTED
    rejected = await pool.spawn_worker("b2")

    assert rejected.outcome == AdmissionOutcome.CAPACITY_EXCEEDED
    assert pool.get_status().running_batches == ["b1"]
    assert (await job_store.get_summary("b2")).pending == 3


@pytest.mark.asyncio
async def test_concurrent_admissions_respect_capacity(job_store, make_pool):
    """Simultaneous submissions for different batches never both take the last slot."""
    for batch_id in ("b1", "b2", "b3"):
        await make_batch(job_store, batch_id)
    pool = make_pool("cooperative", max_active_batches=2)

    results = await asyncio.gather(*(pool.spawn_worker(batch_id) for batch_id in ("b1", "b2", "b3")))

    outcomes = sorted(result.outcome.value for result in results)
    assert outcomes == ["accepted", "accepted", "capacity_exceeded"]
    assert pool.get_status().active_batches == 2


@pytest.mark.asyncio
async def test_completed_batch_frees_slot(job_store, event_channel, make_pool):
    batch = await make_batch(job_store, "b1", library_id="lib-1")
    pool = make_pool("complete", job_ids=[job.id for job in batch.jobs])

    assert (await pool.spawn_worker("b1")).outcome == AdmissionOutcome.ACCEPTED
    assert await pool.wait_idle(timeout=10)

    jobs = await job_store.read_batch_jobs("b1")
    assert all(job.status == JobStatus.COMPLETED for job in jobs)
    summary = await job_store.get_summary("b1")
    assert summary.completed == 3
    assert pool.get_status().active_batches == 0

    job_events = published_events(event_channel, "job")
    kinds = [event["type"] for event in job_events]
    assert kinds[0] == "processing:started"
    assert kinds[-1] == "batch:completed"
    assert kinds.count("job:progress") == 6
    library_events = published_events(event_channel, "library")
    assert len(library_events) == 6
    assert library_events[-1]["summary"]["completed"] == 3
    event_channel.publish_coalesced.assert_called()
    event_channel.discard_coalesced.assert_called_with("job", "b1")


@pytest.mark.asyncio
async def test_killed_worker_fails_unfinished_jobs(job_store, event_channel, make_pool):
    """A worker killed mid-run leaves no job processing and frees its slot."""
    batch = await make_batch(job_store, "b1", count=3)
    first, second, third = batch.jobs
    pool = make_pool("hang_after_first", job_ids=[job.id for job in batch.jobs])

    await pool.spawn_worker("b1")
    await wait_for_status(job_store, first.id, JobStatus.COMPLETED)
    await wait_for_status(job_store, second.id, JobStatus.PROCESSING)

    pool._handles["b1"].process.kill()
    assert await pool.wait_idle(timeout=10)

    jobs = {job.id: job for job in await job_store.read_batch_jobs("b1")}
    assert jobs[first.id].status == JobStatus.COMPLETED
    for job_id in (second.id, third.id):
        assert jobs[job_id].status == JobStatus.FAILED
        assert "terminated abnormally" in jobs[job_id].error_message
    assert pool.get_status().active_batches == 0
    assert published_events(event_channel, "job")[-1]["type"] == "batch:failed"


@pytest.mark.asyncio
async def test_nonzero_exit_is_abnormal(job_store, event_channel, make_pool):
    batch = await make_batch(job_store, "b1", count=3)
    pool = make_pool("exit_after_first", job_ids=[job.id for job in batch.jobs])

    await pool.spawn_worker("b1")
    assert await pool.wait_idle(timeout=10)

    summary = await job_store.get_summary("b1")
    assert summary.completed == 1
    assert summary.failed == 2
    failed = [job for job in await job_store.read_batch_jobs("b1") if job.status == JobStatus.FAILED]
    assert all(job.error_message == "Worker process terminated abnormally (exit code 3)" for job in failed)

    kinds = [event["type"] for event in published_events(event_channel, "job")]
    assert "processing:error" in kinds
    assert kinds[-1] == "batch:failed"


@pytest.mark.asyncio
async def test_worker_reported_failure_is_recorded(job_store, make_pool):
    batch = await make_batch(job_store, "b1", count=2)
    pool = make_pool("fail_one", job_ids=[job.id for job in batch.jobs])

    await pool.spawn_worker("b1")
    assert await pool.wait_idle(timeout=10)

    failed = await job_store.read_job(batch.jobs[0].id)
    assert failed.status == JobStatus.FAILED
    assert failed.error_message == "HTTP 404"
    assert (await job_store.read_job(batch.jobs[1].id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_malformed_messages_are_skipped(job_store, event_channel, make_pool):
    batch = await make_batch(job_store, "b1", count=2)
    pool = make_pool("garbage", job_ids=[job.id for job in batch.jobs])

    await pool.spawn_worker("b1")
    assert await pool.wait_idle(timeout=10)

    assert (await job_store.get_summary("b1")).completed == 2
    assert published_events(event_channel, "job")[-1]["type"] == "batch:completed"


@pytest.mark.asyncio
async def test_result_for_deleted_job_is_discarded(job_store, make_pool):
    batch = await make_batch(job_store, "b1", count=3)
    deleted = batch.jobs[1]
    await job_store.delete_job(deleted.id)
    pool = make_pool("complete", job_ids=[job.id for job in batch.jobs])

    await pool.spawn_worker("b1")
    assert await pool.wait_idle(timeout=10)

    assert await job_store.read_job(deleted.id) is None
    summary = await job_store.get_summary("b1")
    assert summary.total == 2
    assert summary.completed == 2


@pytest.mark.asyncio
async def test_failed_launch_releases_slot(job_store, make_pool):
    await make_batch(job_store, "b1")
    pool = make_pool("complete", worker_command=["/nonexistent/docjobs-worker"])

    result = await pool.spawn_worker("b1")

    assert result.outcome == AdmissionOutcome.FAILED_TO_START
    assert pool.get_status().active_batches == 0
    assert (await job_store.get_summary("b1")).pending == 3


@pytest.mark.asyncio
async def test_cooperative_shutdown(job_store, event_channel, make_pool):
    """Workers that honor the stop request exit cleanly and their pending jobs stay pending."""
    await make_batch(job_store, "b1")
    pool = make_pool("cooperative")
    await pool.spawn_worker("b1")

    await pool.shutdown(timeout=5.0)

    status = pool.get_status()
    assert status.active_batches == 0
    assert status.is_shutting_down
    assert (await job_store.get_summary("b1")).pending == 3
    assert published_events(event_channel, "job")[-1]["type"] == "batch:completed"

    rejected = await pool.spawn_worker("b1")
    assert rejected.outcome == AdmissionOutcome.SHUTTING_DOWN


@pytest.mark.asyncio
async def test_shutdown_force_terminates_stuck_workers(job_store, make_pool):
    batch = await make_batch(job_store, "b1", count=2)
    pool = make_pool("stubborn", job_ids=[job.id for job in batch.jobs], kill_grace=0.5)
    await pool.spawn_worker("b1")
    await wait_for_status(job_store, batch.jobs[0].id, JobStatus.PROCESSING)

    started = time.monotonic()
    # Concurrent calls wait for the same shutdown
    await asyncio.gather(pool.shutdown(timeout=1.0), pool.shutdown(timeout=1.0))
    elapsed = time.monotonic() - started

    assert elapsed < 5.0
    assert pool.get_status().active_batches == 0
    jobs = await job_store.read_batch_jobs("b1")
    assert all(job.status == JobStatus.FAILED for job in jobs)
    assert all(job.error_message == FORCED_SHUTDOWN_REASON for job in jobs)


@pytest.mark.asyncio
async def test_shutdown_deadline_includes_kill_grace(job_store, make_pool):
    """A worker ignoring SIGTERM does not stretch shutdown past its timeout."""
    batch = await make_batch(job_store, "b1", count=2)
    pool = make_pool("stubborn", job_ids=[job.id for job in batch.jobs], kill_grace=2.0)
    await pool.spawn_worker("b1")
    await wait_for_status(job_store, batch.jobs[0].id, JobStatus.PROCESSING)

    started = time.monotonic()
    await pool.shutdown(timeout=1.0)
    elapsed = time.monotonic() - started

    assert elapsed <= 1.3
    assert pool.get_status().active_batches == 0
    jobs = await job_store.read_batch_jobs("b1")
    assert all(job.status == JobStatus.FAILED for job in jobs)
    assert all(job.error_message == FORCED_SHUTDOWN_REASON for job in jobs)


@pytest.mark.asyncio
async def test_worker_launched_during_shutdown_is_reaped(job_store, make_pool):
    await make_batch(job_store, "b1")
    pool = make_pool("cooperative")
    launched = []
    real_launch = pool._launch

    async def slow_launch(batch_id):
        await asyncio.sleep(1.0)
        process = await real_launch(batch_id)
        launched.append(process)
        return process

    pool._launch = slow_launch
    admission = asyncio.create_task(pool.spawn_worker("b1"))
    await asyncio.sleep(0.05)
    await pool.shutdown(timeout=0.6)

    result = await admission
    assert result.outcome == AdmissionOutcome.SHUTTING_DOWN
    assert launched[0].returncode is not None
    assert pool.get_status().active_batches == 0

@pytest.mark.asyncio
async def test_shutdown_without_workers_returns_immediately(make_pool):
    pool = make_pool("complete")
    await pool.shutdown()
    await pool.shutdown()
    assert pool.get_status().is_shutting_down


@pytest.mark.asyncio
async def test_recover_orphaned_jobs(job_store, make_pool):
    batch = await make_batch(job_store, "b1", count=2)
    await job_store.write_job_status(batch.jobs[0].id, JobStatus.PROCESSING)
    pool = make_pool("complete")

    recovered = await pool.recover_orphaned_jobs()

    assert [job.id for job in recovered] == [batch.jobs[0].id]
    job = await job_store.read_job(batch.jobs[0].id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == ORPHANED_JOB_REASON
    assert (await job_store.read_job(batch.jobs[1].id)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_real_worker_processes_inline_batch(job_store, event_channel, database_url):
    """Runs the actual batch worker module against inline API-spec jobs."""
    batch = await job_store.create_batch(
        [
            JobInput(source_url="openapi: 3.0.0\ninfo:\n  title: Pets", scrape_type=ScrapeType.API_SPEC,
                     origin_url="https://api.example.com/openapi.yaml"),
            JobInput(source_url="   ", scrape_type=ScrapeType.API_SPEC),
        ],
        batch_id="b1",
        library_id="lib-1",
    )
    pool = WorkerPool(
        job_store,
        event_channel,
        shutdown_timeout=2.0,
        worker_env={"DATABASE_URL": database_url, "PYTHONPATH": REPO_ROOT, "WORKER_RATE_LIMIT": "100"},
    )

    try:
        result = await pool.spawn_worker("b1")
        assert result.outcome == AdmissionOutcome.ACCEPTED
        assert await pool.wait_idle(timeout=30.0)
    finally:
        await pool.shutdown(timeout=2.0)

    jobs = await job_store.read_batch_jobs("b1")
    assert [job.status for job in jobs] == [JobStatus.COMPLETED, JobStatus.COMPLETED]
    summary = await job_store.get_summary("b1")
    assert summary.completed == 2
    assert summary.total == 2

    events = published_events(event_channel, "job")
    assert events[0]["type"] == "processing:started"
    assert events[-1]["type"] == "batch:completed"
    assert events[-1]["exit_code"] == 0
    completed = [event for event in events if event["type"] == "job:progress" and event["status"] == "completed"]
    assert {event["job_id"] for event in completed} == {job.id for job in batch.jobs}
    assert "https://api.example.com/openapi.yaml" in {event["source"] for event in completed}
    assert published_events(event_channel, "library")
