import os
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """
    # App
    APP_NAME: str = "DocJobs"
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"
    API_PREFIX: str = "/api"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    SERVER_SHUTDOWN_TIMEOUT_SECONDS: int = 5 # Grace period for open HTTP and SSE connections, before the pool shuts down

    # Job Store
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./docjobs.db")

    # Event Channel
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    EVENTS_CHANNEL_PREFIX: str = "docjobs:events"
    SSE_HEARTBEAT_SECONDS: int = 30

    # Worker Process Pool
    MAX_ACTIVE_BATCHES: int = 1
    SHUTDOWN_TIMEOUT_SECONDS: float = 10.0 # Whole pool shutdown, including killing stuck workers
    WORKER_KILL_GRACE_SECONDS: float = 3.0 # Between SIGTERM and SIGKILL, capped by the shutdown budget
    WORKER_START_TIMEOUT_SECONDS: float = 5.0
    PROGRESS_COALESCE_MS: int = 150
    IPC_LOG: bool = False # Log every worker message at INFO

    # Worker Process
    WORKER_CONCURRENCY: int = 2
    WORKER_BATCH_SIZE: int = 5
    WORKER_RATE_LIMIT: int = 20 # Jobs started per minute

    # Crawler
    CRAWLER_USER_AGENT: str = "Mozilla/5.0 (compatible; DocJobsBot/0.1)"
    CRAWLER_REQUEST_TIMEOUT: int = 10
    CRAWLER_MAX_RETRIES: int = 3

    # Logging
    LOG_PATH: str = "logs/"

    class Config:
        case_sensitive = True

# Instantiate settings
settings = Settings()
