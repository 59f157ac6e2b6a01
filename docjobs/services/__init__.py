"""
Service layer components
"""
from .job_store import JobStore
from .event_channel import RedisEventChannel
from .worker_pool import WorkerPool, AdmissionOutcome, PoolStatus
from .job_batch_manager import JobBatchManager, SubmitResult

__all__ = [
    "JobStore",
    "RedisEventChannel",
    "WorkerPool",
    "AdmissionOutcome",
    "PoolStatus",
    "JobBatchManager",
    "SubmitResult",
]
