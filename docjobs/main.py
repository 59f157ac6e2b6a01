import time
import logging
from contextlib import asynccontextmanager # Import for lifespan management
from fastapi import FastAPI, Request
import uvicorn
from docjobs.api.routers import events, health, jobs
from docjobs.config import settings
from docjobs.database import connect_db, create_tables, database, disconnect_db
from docjobs.services.event_channel import RedisEventChannel
from docjobs.services.job_batch_manager import JobBatchManager
from docjobs.services.job_store import JobStore
from docjobs.services.worker_pool import WorkerPool
from docjobs.utils.logger import setup_logging

# Configure logging
setup_logging()
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Context manager for managing the lifespan of the FastAPI application.
    Builds the Job Store, Event Channel, Worker Pool and Job Batch Manager on
    startup and shuts the pool down before the database goes away.
    """
    logger.info("Application startup...")
    await create_tables()
    await connect_db()

    job_store = JobStore(database)
    event_channel = RedisEventChannel()
    worker_pool = WorkerPool(job_store, event_channel)
    # Nothing from a previous run can still be processing
    await worker_pool.recover_orphaned_jobs()

    app.state.job_store = job_store
    app.state.event_channel = event_channel
    app.state.worker_pool = worker_pool
    app.state.job_batch_manager = JobBatchManager(job_store, worker_pool)
    logger.info(f"Worker pool ready (max {worker_pool.max_active_batches} active batches).")

    yield # Application runs

    logger.info("Application shutdown...")
    try:
        await worker_pool.shutdown()
    finally:
        await event_channel.close()
        await disconnect_db()
    logger.info("Application shutdown complete.")

# Create FastAPI app instance
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Batch job processing with one supervised worker process per batch.",
    lifespan=lifespan # Assign the lifespan manager
)

# Add a middleware to log requests
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Middleware to log incoming requests and their processing time.
    """
    start_time = time.time()
    logger.info(f"Incoming request: {request.method} {request.url.path}")
    response = await call_next(request)
    process_time = time.time() - start_time
    logger.info(f"Request finished: {request.method} {request.url.path} with status {response.status_code} in {process_time:.4f}s")
    return response

# Include API routers
app.include_router(health.router, prefix=settings.API_PREFIX, tags=["Health"])
app.include_router(jobs.router, prefix=settings.API_PREFIX, tags=["Jobs"])
app.include_router(events.router, prefix=settings.API_PREFIX, tags=["Events"])

@app.get("/", tags=["Root"])
async def read_root():
    """
    Root endpoint providing a welcome message.
    """
    return {"message": f"Welcome to {settings.APP_NAME}!"}


def run():
    """Console entry point. Serves the app and bounds the whole shutdown."""
    uvicorn.run(
        "docjobs.main:app",
        host=settings.HOST,
        port=settings.PORT,
        timeout_graceful_shutdown=settings.SERVER_SHUTDOWN_TIMEOUT_SECONDS,
        log_config=None, # Keep the handlers from setup_logging
    )


if __name__ == "__main__":
    run()
