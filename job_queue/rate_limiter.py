"""
Async token bucket shared by all workers.

Caps the number of processing attempts started per unit of time regardless
of how many workers are running. It is the only mutable counter shared across
workers and owns its own lock.
"""
from __future__ import annotations

import asyncio
import time


class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 100.0, burst: int = 100):
        if rate <= 0:
            raise ValueError("rate must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    @classmethod
    def per_window(cls, max_events: int, window_ms: int) -> TokenBucketRateLimiter:
        """Build a limiter allowing ``max_events`` per ``window_ms``."""
        return cls(rate=max_events * 1000.0 / window_ms, burst=max_events)

    def try_acquire(self) -> bool:
        """Non-blocking take. Safe without the lock: no await between check and take."""
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False

    async def acquire(self, timeout: float | None = 5.0) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
                shortfall = (1.0 - self._tokens) / self.rate
            if deadline is None:
                wait = shortfall
            else:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                wait = min(shortfall, remaining)
            await asyncio.sleep(wait)

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._last_refill = now
