from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from docjobs.models.job import BatchSummary, Job, JobInput

# --- API Request/Response Schemas ---

class CreateBatchRequest(BaseModel):
    """
    Schema for the POST /jobs/batches request body.
    """
    jobs: List[JobInput] = Field(
        ...,
        min_length=1,
        description="The ingestion units of the batch.",
        examples=[[{"source_url": "https://docs.example.com/guide", "scrape_type": "web-scrape"}]]
    )
    batch_id: Optional[str] = Field(
        None,
        max_length=64,
        description="Optional batch identifier. A UUID is generated when omitted.",
    )
    library_id: Optional[str] = Field(
        None,
        description="Optional grouping the batch belongs to. Library observers receive its job events.",
        examples=["library-docs"]
    )
    start: bool = Field(
        False,
        description="Submit the batch for processing right after creating it.",
    )

class ProcessSingleRequest(BaseModel):
    """
    Schema for the POST /jobs/process/single request body.
    """
    id: int = Field(..., description="ID of the job to reprocess.")

class ProcessSelectedRequest(BaseModel):
    """
    Schema for the POST /jobs/process/selected request body.
    """
    batch_id: str = Field(..., description="Batch the selected jobs belong to.")
    ids: List[int] = Field(..., description="IDs of the jobs to reprocess.")

class SubmitResponse(BaseModel):
    """
    Outcome of a request to start processing a batch.
    """
    batch_id: str = Field(..., description="The batch the request was for.")
    outcome: str = Field(..., description="One of 'accepted', 'duplicate', 'capacity_exceeded', 'shutting_down', 'failed_to_start'.")
    message: str = Field(..., description="Human-readable explanation of the outcome.")

class BatchStatusResponse(BaseModel):
    """
    Schema for the GET /jobs/status/{batch_id} response body.
    """
    batch_id: str = Field(..., description="Unique identifier for the batch.")
    library_id: Optional[str] = Field(None, description="Grouping the batch belongs to.")
    created_at: datetime = Field(..., description="Timestamp when the batch was created.")
    is_running: bool = Field(False, description="Whether a worker is processing the batch right now.")
    summary: BatchSummary = Field(..., description="Job counts by status.")
    jobs: List[Job] = Field([], description="Jobs of the batch in creation order.")

class CreateBatchResponse(BaseModel):
    """
    Schema for the POST /jobs/batches response body.
    """
    batch: BatchStatusResponse
    submission: Optional[SubmitResponse] = Field(None, description="Present when the batch was submitted on creation.")

class PoolStatusResponse(BaseModel):
    """
    Schema for the GET /jobs/pool response body.
    """
    active_batches: int = Field(..., description="Number of running batch workers.")
    running_batches: List[str] = Field(..., description="IDs of the batches being processed.")
    max_batches: int = Field(..., description="Maximum number of batches processed at once.")
    is_shutting_down: bool = Field(..., description="Whether the pool has stopped accepting batches.")

class DeleteJobResponse(BaseModel):
    id: int
    message: str

class HealthCheckResponse(BaseModel):
    """
    Schema for the GET /health response body.
    """
    status: str = Field("ok", description="Status of the API service.")
    timestamp: datetime = Field(..., description="Current server time.")
    version: str = Field(..., description="Application version.")
    database: str = Field("unknown", description="Job Store connectivity ('ok' or 'unavailable').")
    accepting_batches: bool = Field(True, description="False once shutdown has begun.")
