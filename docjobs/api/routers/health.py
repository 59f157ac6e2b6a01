from datetime import datetime
from fastapi import APIRouter, Depends
from docjobs.models.schemas import HealthCheckResponse
from docjobs.dependencies import get_job_batch_manager
from docjobs.services.job_batch_manager import JobBatchManager
from docjobs.config import settings

router = APIRouter()

@router.get("/health", response_model=HealthCheckResponse, summary="Perform a health check")
async def health_check(manager: JobBatchManager = Depends(get_job_batch_manager)):
    """
    Performs a health check on the API service.
    Returns:
        HealthCheckResponse: The current status of the service.
    """
    database_ok = manager.job_store.database.is_connected
    pool_status = manager.get_pool_status()
    return HealthCheckResponse(
        status="ok" if database_ok else "degraded",
        timestamp=datetime.utcnow(),
        version=settings.APP_VERSION,
        database="ok" if database_ok else "unavailable",
        accepting_batches=not pool_status.is_shutting_down,
    )
