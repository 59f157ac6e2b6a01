import asyncio
import time

import pytest

from docjobs.utils.rate_limiter import SlidingWindowRateLimiter


def test_try_acquire_stops_at_limit():
    limiter = SlidingWindowRateLimiter(max_calls=2, period_seconds=60)
    assert limiter.try_acquire()
    assert limiter.try_acquire()
    assert not limiter.try_acquire()
    assert limiter.in_window == 2


def test_rejects_non_positive_limit():
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(max_calls=0)


@pytest.mark.asyncio
async def test_acquire_waits_for_window_to_slide():
    limiter = SlidingWindowRateLimiter(max_calls=2, period_seconds=0.2)

    started = time.monotonic()
    await asyncio.gather(*(limiter.acquire() for _ in range(3)))
    elapsed = time.monotonic() - started

    assert elapsed >= 0.15
    assert limiter.in_window <= 2
