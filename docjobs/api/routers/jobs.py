import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Response, status

from docjobs.dependencies import get_job_batch_manager, get_request_context
from docjobs.exceptions import (
    BatchAlreadyExistsError,
    BatchNotFoundError,
    InvalidSelectionError,
    JobInFlightError,
    JobNotFoundError,
)
from docjobs.models.job import Batch
from docjobs.models.schemas import (
    BatchStatusResponse,
    CreateBatchRequest,
    CreateBatchResponse,
    DeleteJobResponse,
    PoolStatusResponse,
    ProcessSelectedRequest,
    ProcessSingleRequest,
    SubmitResponse,
)
from docjobs.services.job_batch_manager import JobBatchManager, SubmitResult

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs")


def _batch_response(batch: Batch, manager: JobBatchManager) -> BatchStatusResponse:
    return BatchStatusResponse(
        batch_id=batch.batch_id,
        library_id=batch.library_id,
        created_at=batch.created_at,
        is_running=manager.worker_pool.is_batch_active(batch.batch_id),
        summary=batch.summary,
        jobs=batch.jobs,
    )


def _submit_response(result: SubmitResult, response: Response) -> SubmitResponse:
    # Duplicate is reported as 202 so callers can treat it like success
    response.status_code = result.status_code
    return SubmitResponse(batch_id=result.batch_id, outcome=result.outcome.value, message=result.message)


@router.post("/batches", response_model=CreateBatchResponse, status_code=status.HTTP_201_CREATED, summary="Create a batch of jobs")
async def create_batch(
    request: CreateBatchRequest,
    manager: JobBatchManager = Depends(get_job_batch_manager),
):
    """
    Stores a new batch with one pending job per input. With `start` set, the
    batch is also submitted for processing; the submission outcome is
    reported in the body while the response stays 201.
    """
    try:
        batch = await manager.create_batch(request.jobs, batch_id=request.batch_id, library_id=request.library_id)
    except BatchAlreadyExistsError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    submission = None
    if request.start:
        result = await manager.submit_batch(batch.batch_id)
        submission = SubmitResponse(batch_id=result.batch_id, outcome=result.outcome.value, message=result.message)

    return CreateBatchResponse(batch=_batch_response(batch, manager), submission=submission)


@router.get("/status/{batch_id}", response_model=BatchStatusResponse, summary="Get batch status")
async def get_batch_status(batch_id: str, manager: JobBatchManager = Depends(get_job_batch_manager)):
    """
    Retrieves the summary and jobs of a batch. Observers use this to resync
    after missing events.
    """
    try:
        batch = await manager.get_batch_status(batch_id)
    except BatchNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return _batch_response(batch, manager)


@router.post("/process/all/{batch_id}", response_model=SubmitResponse, summary="Process all pending jobs of a batch")
async def process_all(
    batch_id: str,
    response: Response,
    manager: JobBatchManager = Depends(get_job_batch_manager),
):
    """
    Starts a worker for the batch.

    Returns 200 when started, 202 when the batch is already running, 429 when
    the pool is full, 503 during shutdown and 500 when the worker could not start.
    """
    try:
        result = await manager.submit_batch(batch_id)
    except BatchNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return _submit_response(result, response)


@router.post("/process/single", response_model=SubmitResponse, summary="Reprocess one job")
async def process_single(
    request: ProcessSingleRequest,
    response: Response,
    manager: JobBatchManager = Depends(get_job_batch_manager),
):
    try:
        result = await manager.process_single(request.id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except JobInFlightError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return _submit_response(result, response)


@router.post("/process/selected", response_model=SubmitResponse, summary="Reprocess selected jobs of a batch")
async def process_selected(
    request: ProcessSelectedRequest,
    response: Response,
    manager: JobBatchManager = Depends(get_job_batch_manager),
):
    try:
        result = await manager.process_selected(request.batch_id, request.ids)
    except BatchNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidSelectionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except JobInFlightError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return _submit_response(result, response)


@router.delete("/job/{job_id}", response_model=DeleteJobResponse, summary="Delete a job")
async def delete_job(
    job_id: int,
    manager: JobBatchManager = Depends(get_job_batch_manager),
    context: dict = Depends(get_request_context),
):
    try:
        await manager.delete_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    logger.info(f"Job {job_id} deleted by {context['client_ip']}")
    return DeleteJobResponse(id=job_id, message="Job deleted")


@router.get("/pool", response_model=PoolStatusResponse, summary="Get worker pool status")
async def get_pool_status(manager: JobBatchManager = Depends(get_job_batch_manager)):
    pool_status = manager.get_pool_status()
    return PoolStatusResponse(**pool_status.model_dump())


@router.get("/library/{library_id}", response_model=List[BatchStatusResponse], summary="List batches of a library")
async def get_library_batches(library_id: str, manager: JobBatchManager = Depends(get_job_batch_manager)):
    batches = await manager.get_batches_for_library(library_id)
    return [_batch_response(batch, manager) for batch in batches]


@router.get("/library/{library_id}/latest", response_model=Optional[BatchStatusResponse], summary="Get the latest batch of a library")
async def get_latest_library_batch(library_id: str, manager: JobBatchManager = Depends(get_job_batch_manager)):
    """Returns null when the library has no batches."""
    batch = await manager.get_latest_batch_for_library(library_id)
    if batch is None:
        return None
    return _batch_response(batch, manager)
