"""
Utility functions
"""
from .logger import setup_logging
from .rate_limiter import SlidingWindowRateLimiter
from .text_utils import clean_html, truncate

__all__ = [
    "setup_logging",
    "SlidingWindowRateLimiter",
    "clean_html",
    "truncate",
]
