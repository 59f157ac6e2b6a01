"""
Code that runs inside batch worker processes
"""
from .processor import JobProcessor, ProcessResult, FetchError

__all__ = ["JobProcessor", "ProcessResult", "FetchError"]
