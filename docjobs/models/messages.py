"""
Messages exchanged between the Worker Process Pool and its batch workers.

Each message travels as one JSON document per line: worker messages on the
worker's stdout, control messages on its stdin.
"""
from enum import Enum
from typing import Optional
from pydantic import BaseModel

from docjobs.models.job import JobStatus


class WorkerMessageType(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    JOB_PROGRESS = "job-progress"
    DONE = "done"
    ERROR = "error"


class WorkerMessage(BaseModel):
    """
    Progress report from a batch worker to its supervisor.
    """
    type: WorkerMessageType
    batch_id: str
    message: Optional[str] = None
    job_id: Optional[int] = None
    status: Optional[JobStatus] = None # Only for job-progress
    source: Optional[str] = None
    error: Optional[str] = None

    def to_line(self) -> str:
        return self.model_dump_json(exclude_none=True) + "\n"


class ControlMessageType(str, Enum):
    SHUTDOWN = "shutdown"


class ControlMessage(BaseModel):
    """
    Instruction from the supervisor to a batch worker.
    """
    type: ControlMessageType

    def to_line(self) -> bytes:
        return (self.model_dump_json() + "\n").encode()
