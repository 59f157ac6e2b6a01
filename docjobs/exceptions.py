"""
Domain errors raised by the Job Store and the Job Batch Manager.

Admission rejections (duplicate, capacity) are not errors and are returned
as outcomes instead.
"""


class DocJobsError(Exception):
    """Base class for docjobs errors."""


class BatchNotFoundError(DocJobsError):
    def __init__(self, batch_id: str):
        super().__init__(f"Batch '{batch_id}' not found.")
        self.batch_id = batch_id


class BatchAlreadyExistsError(DocJobsError):
    def __init__(self, batch_id: str):
        super().__init__(f"Batch '{batch_id}' already exists.")
        self.batch_id = batch_id


class JobNotFoundError(DocJobsError):
    def __init__(self, job_id: int):
        super().__init__(f"Job with ID {job_id} not found.")
        self.job_id = job_id


class InvalidStatusTransition(DocJobsError):
    def __init__(self, job_id: int, current: str, requested: str):
        super().__init__(f"Job {job_id} cannot move from '{current}' to '{requested}'.")
        self.job_id = job_id
        self.current = current
        self.requested = requested


class JobInFlightError(DocJobsError):
    """A job is being processed by a running worker and cannot be requeued."""


class InvalidSelectionError(DocJobsError):
    """A set of job ids does not match the batch it was submitted for."""
