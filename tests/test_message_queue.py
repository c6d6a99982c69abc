"""
Tests for the durable queue.

Covers:
  - InMemoryMessageQueue lease / ack / nack / move_to_failed lifecycle
  - Lease tokens: a stale holder can never ack, nack or fail the job
  - Idempotent enqueue while a job is outstanding
  - Delayed promotion and expired-lease recovery (fake clock)
  - Retention pruning
  - Queue factory (memory vs redis selection)
"""
import asyncio

import pytest
import pytest_asyncio

from config.settings import QueueConfig
from core.errors import JobNotFound, LeaseLost
from job_queue.message_queue import (
    InMemoryMessageQueue, RedisMessageQueue, create_message_queue,
)
from models.schemas import EventJobData, LeaseState


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_data(event_id: str) -> EventJobData:
    return EventJobData(event_id=event_id, type="ORDER_CREATED", payload={"n": event_id})


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def clocked_queue(clock):
    q = InMemoryMessageQueue(QueueConfig(lease_timeout_s=30), clock=clock)
    await q.connect()
    yield q
    await q.close()


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_job_id_is_idempotency_key(self, queue, job_data):
        result = await queue.enqueue(job_data, idempotency_key=job_data.event_id)
        assert result.job_id == "evt-001"
        assert result.created
        job = await queue.get_job(result.job_id)
        assert job.lease_state == LeaseState.WAITING
        assert job.attempts_made == 0
        assert job.data.payload == {"orderId": "12345"}

    @pytest.mark.asyncio
    async def test_without_key_generates_id(self, queue, job_data):
        a = await queue.enqueue(job_data)
        b = await queue.enqueue(job_data)
        assert a.job_id != b.job_id
        assert a.created and b.created

    @pytest.mark.asyncio
    async def test_duplicate_outstanding_is_noop(self, queue, job_data):
        results = [await queue.enqueue(job_data, idempotency_key="evt-001") for _ in range(3)]
        assert [r.job_id for r in results] == ["evt-001"] * 3
        assert [r.created for r in results] == [True, False, False]
        stats = await queue.stats()
        assert stats.waiting == 1

    @pytest.mark.asyncio
    async def test_duplicate_while_active_is_noop(self, queue, job_data):
        await queue.enqueue(job_data, idempotency_key="evt-001")
        leased = await queue.lease(timeout=0)
        assert not (await queue.enqueue(job_data, idempotency_key="evt-001")).created
        stats = await queue.stats()
        assert leased is not None
        assert stats.active == 1
        assert stats.waiting == 0

    @pytest.mark.asyncio
    async def test_reenqueue_after_completion_creates_fresh_job(self, queue, job_data):
        await queue.enqueue(job_data, idempotency_key="evt-001")
        job = await queue.lease(timeout=0)
        await queue.nack(job.job_id, job.lease_token, 0)
        job = await queue.lease(timeout=0)
        await queue.move_to_failed(job.job_id, job.lease_token, "boom")
        assert (await queue.get_job("evt-001")).attempts_made == 2

        assert (await queue.enqueue(job_data, idempotency_key="evt-001")).created
        fresh = await queue.get_job("evt-001")
        assert fresh.lease_state == LeaseState.WAITING
        assert fresh.attempts_made == 0
        assert fresh.failed_reason == ""


class TestLease:
    @pytest.mark.asyncio
    async def test_leased_job_invisible_to_other_leasers(self, queue, job_data):
        await queue.enqueue(job_data, idempotency_key="evt-001")
        first = await queue.lease(timeout=0)
        second = await queue.lease(timeout=0)
        assert first is not None and first.lease_state == LeaseState.ACTIVE
        assert second is None

    @pytest.mark.asyncio
    async def test_fifo_order(self, queue):
        for i in range(3):
            await queue.enqueue(make_data(f"e{i}"), idempotency_key=f"e{i}")
        ids = [(await queue.lease(timeout=0)).job_id for _ in range(3)]
        assert ids == ["e0", "e1", "e2"]

    @pytest.mark.asyncio
    async def test_lease_wakes_on_enqueue(self, queue, job_data):
        waiter = asyncio.create_task(queue.lease(timeout=2.0))
        await asyncio.sleep(0.05)
        assert not waiter.done()
        await queue.enqueue(job_data, idempotency_key="evt-001")
        job = await asyncio.wait_for(waiter, timeout=1.0)
        assert job.job_id == "evt-001"

    @pytest.mark.asyncio
    async def test_lease_times_out_empty(self, queue):
        assert await queue.lease(timeout=0.05) is None

    @pytest.mark.asyncio
    async def test_closed_queue_returns_none(self, job_data):
        q = InMemoryMessageQueue()
        await q.connect()
        await q.close()
        assert await q.lease(timeout=1.0) is None

    @pytest.mark.asyncio
    async def test_returned_job_is_a_snapshot(self, queue, job_data):
        await queue.enqueue(job_data, idempotency_key="evt-001")
        job = await queue.lease(timeout=0)
        job.attempts_made = 99
        assert (await queue.get_job("evt-001")).attempts_made == 0


class TestCompletion:
    @pytest.mark.asyncio
    async def test_ack_completes(self, queue, job_data):
        await queue.enqueue(job_data, idempotency_key="evt-001")
        job = await queue.lease(timeout=0)
        await queue.ack(job.job_id, job.lease_token)
        stored = await queue.get_job("evt-001")
        assert stored.lease_state == LeaseState.COMPLETED
        assert stored.finished_at is not None
        assert (await queue.stats()).completed == 1

    @pytest.mark.asyncio
    async def test_nack_without_delay_requeues(self, queue, job_data):
        await queue.enqueue(job_data, idempotency_key="evt-001")
        job = await queue.lease(timeout=0)
        await queue.nack(job.job_id, job.lease_token, 0)
        again = await queue.lease(timeout=0)
        assert again.job_id == "evt-001"
        assert again.attempts_made == 1

    @pytest.mark.asyncio
    async def test_nack_delay_holds_job_until_due(self, clocked_queue, clock, job_data):
        await clocked_queue.enqueue(job_data, idempotency_key="evt-001")
        job = await clocked_queue.lease(timeout=0)
        await clocked_queue.nack(job.job_id, job.lease_token, 2000)

        assert (await clocked_queue.stats()).delayed == 1
        clock.advance(1.5)
        assert await clocked_queue.lease(timeout=0) is None
        clock.advance(0.6)
        again = await clocked_queue.lease(timeout=0)
        assert again is not None
        assert again.attempts_made == 1

    @pytest.mark.asyncio
    async def test_move_to_failed(self, queue, job_data):
        await queue.enqueue(job_data, idempotency_key="evt-001")
        job = await queue.lease(timeout=0)
        await queue.move_to_failed(job.job_id, job.lease_token, "Routing service temporarily unavailable")
        stored = await queue.get_job("evt-001")
        assert stored.lease_state == LeaseState.FAILED
        assert stored.failed_reason == "Routing service temporarily unavailable"
        assert stored.attempts_made == 1
        assert await queue.lease(timeout=0) is None

    @pytest.mark.asyncio
    async def test_unknown_job_raises(self, queue):
        with pytest.raises(JobNotFound):
            await queue.ack("missing", "token")
        with pytest.raises(JobNotFound):
            await queue.nack("missing", "token", 10)


class TestLeaseRecovery:
    @pytest.mark.asyncio
    async def test_expired_lease_returns_to_waiting(self, clocked_queue, clock, job_data):
        await clocked_queue.enqueue(job_data, idempotency_key="evt-001")
        await clocked_queue.lease(timeout=0)

        clock.advance(10)
        assert await clocked_queue.recover_expired_leases() == 0

        clock.advance(25)
        assert await clocked_queue.recover_expired_leases() == 1
        again = await clocked_queue.lease(timeout=0)
        assert again.job_id == "evt-001"
        # Recovery is not a failed attempt.
        assert again.attempts_made == 0

    @pytest.mark.asyncio
    async def test_each_lease_gets_a_new_token(self, clocked_queue, clock, job_data):
        await clocked_queue.enqueue(job_data, idempotency_key="evt-001")
        first = await clocked_queue.lease(timeout=0)
        clock.advance(31)
        await clocked_queue.recover_expired_leases()
        second = await clocked_queue.lease(timeout=0)
        assert first.lease_token and second.lease_token
        assert first.lease_token != second.lease_token

    @pytest.mark.asyncio
    async def test_stale_nack_leaves_new_holder_alone(self, clocked_queue, clock, job_data):
        await clocked_queue.enqueue(job_data, idempotency_key="evt-001")
        stale = await clocked_queue.lease(timeout=0)
        clock.advance(31)
        await clocked_queue.recover_expired_leases()
        current = await clocked_queue.lease(timeout=0)

        with pytest.raises(LeaseLost):
            await clocked_queue.nack(stale.job_id, stale.lease_token, 0)

        stored = await clocked_queue.get_job("evt-001")
        assert stored.lease_state == LeaseState.ACTIVE
        assert stored.attempts_made == 0
        assert stored.lease_token == current.lease_token
        # Nobody else can lease it while the current holder is working.
        assert await clocked_queue.lease(timeout=0) is None

    @pytest.mark.asyncio
    async def test_stale_ack_and_fail_are_rejected(self, clocked_queue, clock, job_data):
        await clocked_queue.enqueue(job_data, idempotency_key="evt-001")
        stale = await clocked_queue.lease(timeout=0)
        clock.advance(31)
        await clocked_queue.recover_expired_leases()
        current = await clocked_queue.lease(timeout=0)

        with pytest.raises(LeaseLost):
            await clocked_queue.ack(stale.job_id, stale.lease_token)
        with pytest.raises(LeaseLost):
            await clocked_queue.move_to_failed(stale.job_id, stale.lease_token, "boom")
        assert (await clocked_queue.get_job("evt-001")).lease_state == LeaseState.ACTIVE
        # A resubmission is still absorbed by the live job.
        assert not (await clocked_queue.enqueue(job_data, idempotency_key="evt-001")).created

        await clocked_queue.ack(current.job_id, current.lease_token)
        assert (await clocked_queue.get_job("evt-001")).lease_state == LeaseState.COMPLETED

    @pytest.mark.asyncio
    async def test_ack_after_recovery_is_rejected(self, clocked_queue, clock, job_data):
        await clocked_queue.enqueue(job_data, idempotency_key="evt-001")
        job = await clocked_queue.lease(timeout=0)
        clock.advance(31)
        await clocked_queue.recover_expired_leases()
        with pytest.raises(LeaseLost):
            await clocked_queue.ack(job.job_id, job.lease_token)
        assert (await clocked_queue.get_job("evt-001")).lease_state == LeaseState.WAITING


class TestRetention:
    @pytest.mark.asyncio
    async def test_completed_count_limit(self):
        q = InMemoryMessageQueue(QueueConfig(completed_retention_count=2))
        await q.connect()
        for i in range(3):
            await q.enqueue(make_data(f"e{i}"), idempotency_key=f"e{i}")
            job = await q.lease(timeout=0)
            await q.ack(job.job_id, job.lease_token)
        stats = await q.stats()
        assert stats.completed == 2
        assert await q.get_job("e0") is None
        await q.close()


class TestQueueFactory:
    def test_default_is_memory(self):
        assert isinstance(create_message_queue(), InMemoryMessageQueue)

    def test_redis_backend(self):
        q = create_message_queue(QueueConfig(backend="redis", redis_url="redis://localhost:6379", name="t"))
        assert isinstance(q, RedisMessageQueue)

    def test_each_call_returns_new_handle(self):
        assert create_message_queue() is not create_message_queue()
