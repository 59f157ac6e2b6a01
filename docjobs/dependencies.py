"""
Dependencies for FastAPI endpoints
"""
from fastapi import Request

from docjobs.services.event_channel import RedisEventChannel
from docjobs.services.job_batch_manager import JobBatchManager


async def get_job_batch_manager(request: Request) -> JobBatchManager:
    """The manager built at startup (see docjobs.main.lifespan)."""
    return request.app.state.job_batch_manager


async def get_event_channel(request: Request) -> RedisEventChannel:
    return request.app.state.event_channel


async def get_request_context(request: Request):
    """Get request context for logging"""
    return {
        "client_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "path": request.url.path,
        "method": request.method,
    }
