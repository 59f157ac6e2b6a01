"""
Logging setup shared by the API process and the batch worker processes.
"""
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional, TextIO

from docjobs.config import settings

LOG_FORMAT = "%(asctime)s - %(process)d - %(name)s - %(levelname)s - %(message)s"


def setup_logging(
    level: Optional[str] = None,
    stream: TextIO = sys.stdout,
    log_file: Optional[str] = "docjobs.log",
) -> None:
    """
    Configures the root logger once per process.

    Args:
        level: Log level name, defaults to settings.LOG_LEVEL.
        stream: Console stream. Worker processes pass sys.stderr because
            their stdout carries the message stream to the supervisor.
        log_file: File name under settings.LOG_PATH, or None to skip the file handler.
    """
    root = logging.getLogger()
    if getattr(root, "_docjobs_configured", False):
        return

    root.setLevel((level or settings.LOG_LEVEL).upper())
    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(stream)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        try:
            os.makedirs(settings.LOG_PATH, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(settings.LOG_PATH, log_file),
                maxBytes=5 * 1024 * 1024,
                backupCount=3,
            )
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError as e:
            root.warning(f"Could not open log file in {settings.LOG_PATH}: {e}")

    root._docjobs_configured = True
