# API routers package
"""
API routers initialization
"""
from .health import router as health_router
from .jobs import router as jobs_router
from .events import router as events_router

__all__ = ["health_router", "jobs_router", "events_router"]
