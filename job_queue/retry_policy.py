"""
Retry Policy — exponential backoff for failed routing attempts.

    next_delay_ms(i) = base_delay_ms * 2 ** i

With the defaults (base 1000 ms, 5 attempts) attempt indices 0..4 give
1s, 2s, 4s, 8s, 16s.
"""
from __future__ import annotations

from dataclasses import dataclass

from config.settings import RetryConfig


@dataclass(frozen=True)
class RetryPolicy:
    base_delay_ms: int = 1000
    max_attempts: int = 5

    def __post_init__(self):
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(base_delay_ms=config.base_delay_ms, max_attempts=config.max_attempts)

    def next_delay_ms(self, attempt_index: int) -> int:
        if attempt_index < 0:
            raise ValueError("attempt_index must be >= 0")
        return self.base_delay_ms * (2 ** attempt_index)

    def is_exhausted(self, attempts_made: int) -> bool:
        """True once ``attempts_made`` (including the one that just failed) hits the cap."""
        return attempts_made >= self.max_attempts

    def is_retryable(self, exc: BaseException) -> bool:
        # Every routing failure is retried until exhaustion; there is no
        # permanent-error fast path yet.
        return True

    def schedule(self) -> list[int]:
        return [self.next_delay_ms(i) for i in range(self.max_attempts)]
