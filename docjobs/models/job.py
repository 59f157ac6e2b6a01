from enum import Enum
from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ScrapeType(str, Enum):
    WEB_SCRAPE = "web-scrape"
    GITLAB_REPO = "gitlab-repo"
    API_SPEC = "api-spec"


# Allowed writes through the relay. Terminal -> pending only happens via requeue.
ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class JobInput(BaseModel):
    """
    One ingestion unit to be added to a batch.
    """
    source_url: str = Field(..., min_length=1, description="URL to fetch, or inline content for repository/API-spec units.")
    scrape_type: ScrapeType = ScrapeType.WEB_SCRAPE
    origin_url: Optional[str] = None


class Job(BaseModel):
    """
    Represents one ingestion job, as stored in the Job Store.
    """
    id: int
    batch_id: str
    library_id: Optional[str] = None
    source_url: str
    scrape_type: ScrapeType
    origin_url: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def display_source(self) -> str:
        """URL shown to observers. Inline-content jobs are identified by their origin."""
        if self.scrape_type == ScrapeType.WEB_SCRAPE:
            return self.source_url
        return self.origin_url or self.scrape_type.value


class BatchSummary(BaseModel):
    """
    Derived counts for a batch. Always recomputed from member jobs.
    """
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class JobUpdate(BaseModel):
    """
    Result of one status write: the job as written and its batch summary
    as of the same transaction.
    """
    job: Job
    summary: BatchSummary


class Batch(BaseModel):
    """
    A named group of jobs submitted together.
    """
    batch_id: str
    library_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    summary: BatchSummary = Field(default_factory=BatchSummary)
    jobs: List[Job] = []
