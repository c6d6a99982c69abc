"""Tests for the async token bucket."""
import asyncio
import time

import pytest

from job_queue.rate_limiter import TokenBucketRateLimiter


class TestTokenBucketRateLimiter:
    def test_burst_then_empty(self):
        limiter = TokenBucketRateLimiter(rate=1, burst=3)
        assert [limiter.try_acquire() for _ in range(4)] == [True, True, True, False]

    def test_per_window(self):
        limiter = TokenBucketRateLimiter.per_window(100, 1000)
        assert limiter.rate == pytest.approx(100.0)
        assert limiter.burst == 100

    def test_per_window_scales_rate(self):
        limiter = TokenBucketRateLimiter.per_window(10, 500)
        assert limiter.rate == pytest.approx(20.0)

    @pytest.mark.parametrize("rate,burst", [(0, 1), (-1, 1), (1, 0)])
    def test_invalid_arguments(self, rate, burst):
        with pytest.raises(ValueError):
            TokenBucketRateLimiter(rate=rate, burst=burst)

    @pytest.mark.asyncio
    async def test_acquire_waits_for_refill(self):
        limiter = TokenBucketRateLimiter(rate=50, burst=1)
        assert await limiter.acquire()
        started = time.monotonic()
        assert await limiter.acquire(timeout=1.0)
        # One token at 50/s takes ~20 ms to refill.
        assert time.monotonic() - started >= 0.01

    @pytest.mark.asyncio
    async def test_acquire_times_out(self):
        limiter = TokenBucketRateLimiter(rate=0.1, burst=1)
        assert limiter.try_acquire()
        assert await limiter.acquire(timeout=0.05) is False

    @pytest.mark.asyncio
    async def test_concurrent_acquirers_share_budget(self):
        limiter = TokenBucketRateLimiter(rate=0.1, burst=5)
        results = await asyncio.gather(*(limiter.acquire(timeout=0.05) for _ in range(8)))
        assert sum(results) == 5
