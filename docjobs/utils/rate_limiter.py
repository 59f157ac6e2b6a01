import asyncio
import time
from collections import deque
from typing import Deque


class SlidingWindowRateLimiter:
    """
    Allows at most `max_calls` acquisitions within any window of
    `period_seconds`. Callers over the limit wait for the oldest call to
    leave the window.
    """

    def __init__(self, max_calls: int, period_seconds: float = 60.0):
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        self.max_calls = max_calls
        self.period_seconds = period_seconds
        self._calls: Deque[float] = deque()
        self._lock = asyncio.Lock() # To protect access to _calls

    def _evict(self, now: float) -> None:
        # Filter out calls older than the window
        while self._calls and now - self._calls[0] >= self.period_seconds:
            self._calls.popleft()

    def try_acquire(self) -> bool:
        """Takes a slot if one is free right now, without waiting."""
        now = time.monotonic()
        self._evict(now)
        if len(self._calls) >= self.max_calls:
            return False
        self._calls.append(now)
        return True

    async def acquire(self) -> None:
        while True:
            async with self._lock:
                if self.try_acquire():
                    return
                wait = self.period_seconds - (time.monotonic() - self._calls[0])
            await asyncio.sleep(max(wait, 0.01))

    @property
    def in_window(self) -> int:
        self._evict(time.monotonic())
        return len(self._calls)
