import os
import sys
from typing import List, Optional

from docjobs.models.job import Batch, JobInput
from docjobs.services.job_store import JobStore

FAKE_WORKER = os.path.join(os.path.dirname(__file__), "fake_worker.py")


def published_events(event_channel, resource_type: Optional[str] = None) -> List[dict]:
    """Payloads passed to event_channel.publish, optionally for one resource type."""
    return [
        call.args[2]
        for call in event_channel.publish.call_args_list
        if resource_type is None or call.args[0] == resource_type
    ]


async def make_batch(job_store: JobStore, batch_id: str, count: int = 3, library_id: Optional[str] = None) -> Batch:
    return await job_store.create_batch(
        [JobInput(source_url=f"https://docs.example.com/{batch_id}/page-{i}") for i in range(count)],
        batch_id=batch_id,
        library_id=library_id,
    )


def fake_worker_command(scenario: str) -> List[str]:
    return [sys.executable, FAKE_WORKER, scenario]
