import json
import logging
from typing import Any, Dict
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from docjobs.config import settings
from docjobs.dependencies import get_event_channel
from docjobs.services.event_channel import RESOURCE_TYPES, RedisEventChannel

logger = logging.getLogger(__name__)
router = APIRouter()


def format_sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


@router.get("/events/{resource_type}/{resource_id}", summary="Stream status events for a batch or library")
async def stream_events(
    resource_type: str,
    resource_id: str,
    request: Request,
    event_channel: RedisEventChannel = Depends(get_event_channel),
):
    """
    Server-Sent Events stream for one resource. `job` streams are keyed by
    batch ID, `library` streams by library ID. Events are best effort:
    clients should re-read GET /jobs/status/{batch_id} after reconnecting.
    """
    if resource_type not in RESOURCE_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported resource type '{resource_type}'. Use one of: {', '.join(RESOURCE_TYPES)}."
        )

    async def event_stream():
        logger.info(f"SSE client connected to {resource_type}/{resource_id}")
        yield format_sse({"type": "connected", "resource_type": resource_type, "resource_id": resource_id})
        try:
            async for payload in event_channel.subscribe(
                resource_type, resource_id, idle_timeout=settings.SSE_HEARTBEAT_SECONDS
            ):
                if await request.is_disconnected():
                    break
                if payload is None:
                    yield ": heartbeat\n\n"
                else:
                    yield format_sse(payload)
        finally:
            logger.info(f"SSE client disconnected from {resource_type}/{resource_id}")

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
