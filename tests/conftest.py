"""Shared test fixtures for the Event Gateway."""
import asyncio
from typing import Any

import pytest
import pytest_asyncio

from core.errors import TransientRoutingFailure
from database.ledger_memory import InMemoryLedger
from job_queue.dead_letter import InMemoryDeadLetterStore
from job_queue.message_queue import InMemoryMessageQueue
from job_queue.rate_limiter import TokenBucketRateLimiter
from job_queue.retry_policy import RetryPolicy
from job_queue.worker import WorkerScheduler
from models.schemas import EventJobData
from routing.client import RoutingCollaborator, RoutingDecision

TEST_SECRET = "test-secret"


# ──────────────────────────────────────────────────────────────
#  Routing stubs
# ──────────────────────────────────────────────────────────────

class ScriptedRouter(RoutingCollaborator):
    """Fails the first ``failures`` calls per event, then succeeds."""

    def __init__(self, failures: int = 0, always_fail: bool = False, delay_s: float = 0.0):
        self.failures = failures
        self.always_fail = always_fail
        self.delay_s = delay_s
        self.calls: list[str] = []

    async def route(self, event_id: str, payload: dict[str, Any]) -> RoutingDecision:
        self.calls.append(event_id)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.always_fail or self.calls.count(event_id) <= self.failures:
            raise TransientRoutingFailure("Routing service temporarily unavailable", event_id)
        return RoutingDecision(event_id=event_id, destination="default")


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def job_data():
    return EventJobData(
        event_id="evt-001",
        type="ORDER_CREATED",
        payload={"orderId": "12345"},
        correlation_id="corr-001",
    )


@pytest_asyncio.fixture
async def queue():
    q = InMemoryMessageQueue()
    await q.connect()
    yield q
    await q.close()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def dead_letters():
    return InMemoryDeadLetterStore()


@pytest.fixture
def router():
    return ScriptedRouter()


@pytest.fixture
def fast_policy():
    return RetryPolicy(base_delay_ms=1, max_attempts=5)


@pytest.fixture
def make_scheduler(queue, ledger, dead_letters, fast_policy):
    def _make(router, concurrency: int = 1, policy: RetryPolicy = None):
        return WorkerScheduler(
            queue=queue,
            ledger=ledger,
            router=router,
            dead_letters=dead_letters,
            retry_policy=policy or fast_policy,
            rate_limiter=TokenBucketRateLimiter(rate=10_000, burst=10_000),
            concurrency=concurrency,
            lease_poll_s=0.05,
        )
    return _make


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Poll an async predicate until it returns truthy or the timeout expires."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        if await predicate():
            return True
        if asyncio.get_running_loop().time() >= deadline:
            return False
        await asyncio.sleep(interval)
