"""
Durable Queue — Abstract interface with Redis and in-memory backends.

Lease model:
  waiting ──lease()──▶ active ──ack()──────────▶ completed
                         │   ──nack(delay)─────▶ delayed ──(due)──▶ waiting
                         │   ──move_to_failed()▶ failed
                         └── lease timeout ────▶ waiting

Guarantees:
  - A leased job is invisible to other leasers until ack/nack/move_to_failed
    or until its lease expires (at-least-once, never exactly-once).
  - Every lease carries a fresh lease_token. ack/nack/move_to_failed must
    present it; a stale token (the lease expired and the job moved on) raises
    LeaseLost and leaves the job untouched.
  - enqueue() is idempotent on the idempotency key while the job is
    outstanding (waiting/active/delayed). Once the job has completed or
    failed, the same key creates a fresh job with attempts_made reset;
    the idempotency ledger is the real safety net for those resubmissions.

Redis key layout ({name} is the queue name):
  {name}:job:{id}     hash   — data, state, attempts_made, lease_token, ...
  {name}:waiting      list   — ids ready to lease
  {name}:delayed      zset   — ids scored by run-at epoch seconds
  {name}:active       zset   — ids scored by lease deadline
  {name}:completed    zset   — ids scored by finish time (trimmed)
  {name}:failed       zset   — ids scored by finish time
"""
from __future__ import annotations

import asyncio
import heapq
import json
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import QueueConfig
from core.errors import JobNotFound, LeaseLost
from models.schemas import (
    EnqueueResult, EventJobData, Job, LeaseState, QueueStats,
    OUTSTANDING_LEASE_STATES, utcnow,
)

logger = structlog.get_logger()


def _new_job_id() -> str:
    return uuid.uuid4().hex


def _new_lease_token() -> str:
    return uuid.uuid4().hex


class MessageQueue(ABC):
    """Abstract durable queue interface."""

    def __init__(self, config: QueueConfig = None):
        self.config = config or QueueConfig()

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down. Blocked leasers return None."""
        ...

    @abstractmethod
    async def enqueue(self, job_data: EventJobData, idempotency_key: str = None) -> EnqueueResult:
        """Add a job. A key that is still outstanding is a no-op (created=False)."""
        ...

    @abstractmethod
    async def lease(self, timeout: float = None) -> Optional[Job]:
        """Lease the next ready job, waiting up to ``timeout`` seconds."""
        ...

    @abstractmethod
    async def ack(self, job_id: str, lease_token: str):
        """Mark a leased job completed."""
        ...

    @abstractmethod
    async def nack(self, job_id: str, lease_token: str, delay_ms: int):
        """Release a leased job for retry after ``delay_ms``; increments attempts_made."""
        ...

    @abstractmethod
    async def move_to_failed(self, job_id: str, lease_token: str, reason: str):
        """Terminally fail a leased job; increments attempts_made."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def stats(self) -> QueueStats:
        ...

    @abstractmethod
    async def recover_expired_leases(self) -> int:
        """Return jobs whose lease expired to waiting. Returns how many moved."""
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development / Tests)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — nothing survives a restart.
    """

    def __init__(self, config: QueueConfig = None, clock: Callable[[], float] = time.monotonic):
        super().__init__(config)
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._ready: deque[str] = deque()
        self._delayed: list[tuple[float, str]] = []    # heap of (run_at, job_id)
        self._completed_order: deque[str] = deque()
        self._cond: Optional[asyncio.Condition] = None
        self._running = False

    def _condition(self) -> asyncio.Condition:
        if self._cond is None:
            self._cond = asyncio.Condition()
        return self._cond

    async def connect(self):
        self._running = True
        self._condition()
        logger.info("inmemory_queue_connected", queue=self.config.name)

    async def close(self):
        self._running = False
        cond = self._condition()
        async with cond:
            cond.notify_all()
        logger.info("inmemory_queue_closed", queue=self.config.name)

    async def ping(self) -> bool:
        return self._running

    async def enqueue(self, job_data: EventJobData, idempotency_key: str = None) -> EnqueueResult:
        job_id = idempotency_key or _new_job_id()
        cond = self._condition()
        async with cond:
            existing = self._jobs.get(job_id)
            if existing and existing.lease_state in OUTSTANDING_LEASE_STATES:
                logger.info("job_enqueue_deduplicated",
                            job_id=job_id,
                            state=existing.lease_state.value)
                return EnqueueResult(job_id=job_id, created=False)
            self._jobs[job_id] = Job(job_id=job_id, data=job_data)
            self._ready.append(job_id)
            cond.notify()
        logger.debug("job_enqueued", job_id=job_id, event_id=job_data.event_id)
        return EnqueueResult(job_id=job_id, created=True)

    async def lease(self, timeout: float = None) -> Optional[Job]:
        deadline = None if timeout is None else self._clock() + timeout
        cond = self._condition()
        async with cond:
            while True:
                self._promote_due()
                job = self._pop_ready()
                if job is not None:
                    job.lease_state = LeaseState.ACTIVE
                    job.lease_expires_at = self._clock() + self.config.lease_timeout_s
                    job.lease_token = _new_lease_token()
                    return replace(job)
                if not self._running:
                    return None
                wait = self._next_wakeup(deadline)
                if wait is not None and wait <= 0:
                    return None
                try:
                    await asyncio.wait_for(cond.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass

    def _pop_ready(self) -> Optional[Job]:
        while self._ready:
            job_id = self._ready.popleft()
            job = self._jobs.get(job_id)
            # Stale ids (re-enqueued or pruned) are skipped.
            if job is not None and job.lease_state == LeaseState.WAITING:
                return job
        return None

    def _promote_due(self):
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is not None and job.lease_state == LeaseState.DELAYED:
                job.lease_state = LeaseState.WAITING
                job.run_at = None
                self._ready.append(job_id)

    def _next_wakeup(self, deadline: Optional[float]) -> Optional[float]:
        now = self._clock()
        candidates = []
        if deadline is not None:
            candidates.append(deadline - now)
        if self._delayed:
            candidates.append(max(self._delayed[0][0] - now, 0.001))
        return min(candidates) if candidates else None

    def _get_leased(self, job_id: str, lease_token: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.lease_state != LeaseState.ACTIVE or job.lease_token != lease_token:
            logger.warning("job_lease_lost", job_id=job_id, state=job.lease_state.value)
            raise LeaseLost(job_id)
        return job

    async def ack(self, job_id: str, lease_token: str):
        cond = self._condition()
        async with cond:
            job = self._get_leased(job_id, lease_token)
            job.lease_state = LeaseState.COMPLETED
            job.lease_expires_at = None
            job.lease_token = None
            job.finished_at = utcnow()
            self._completed_order.append(job_id)
            self._prune()
        logger.debug("job_acked", job_id=job_id)

    async def nack(self, job_id: str, lease_token: str, delay_ms: int):
        cond = self._condition()
        async with cond:
            job = self._get_leased(job_id, lease_token)
            job.attempts_made += 1
            job.lease_expires_at = None
            job.lease_token = None
            if delay_ms <= 0:
                job.lease_state = LeaseState.WAITING
                self._ready.append(job_id)
            else:
                job.lease_state = LeaseState.DELAYED
                job.run_at = self._clock() + delay_ms / 1000.0
                heapq.heappush(self._delayed, (job.run_at, job_id))
            cond.notify_all()
        logger.debug("job_nacked", job_id=job_id, delay_ms=delay_ms)

    async def move_to_failed(self, job_id: str, lease_token: str, reason: str):
        cond = self._condition()
        async with cond:
            job = self._get_leased(job_id, lease_token)
            job.attempts_made += 1
            job.lease_state = LeaseState.FAILED
            job.lease_expires_at = None
            job.lease_token = None
            job.failed_reason = reason
            job.finished_at = utcnow()
            self._prune()
        logger.warning("job_moved_to_failed", job_id=job_id, reason=reason)

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return replace(job) if job else None

    async def stats(self) -> QueueStats:
        counts = {state: 0 for state in LeaseState}
        for job in self._jobs.values():
            counts[job.lease_state] += 1
        return QueueStats(
            waiting=counts[LeaseState.WAITING],
            active=counts[LeaseState.ACTIVE],
            completed=counts[LeaseState.COMPLETED],
            failed=counts[LeaseState.FAILED],
            delayed=counts[LeaseState.DELAYED],
        )

    async def recover_expired_leases(self) -> int:
        now = self._clock()
        recovered = 0
        cond = self._condition()
        async with cond:
            for job in self._jobs.values():
                if (job.lease_state == LeaseState.ACTIVE
                        and job.lease_expires_at is not None
                        and job.lease_expires_at <= now):
                    job.lease_state = LeaseState.WAITING
                    job.lease_expires_at = None
                    job.lease_token = None
                    self._ready.append(job.job_id)
                    recovered += 1
            if recovered:
                cond.notify_all()
        if recovered:
            logger.warning("expired_leases_recovered", count=recovered)
        return recovered

    def _prune(self):
        """Apply completed/failed retention limits."""
        now = utcnow()
        max_count = self.config.completed_retention_count
        while len(self._completed_order) > max_count:
            self._drop_finished(self._completed_order.popleft(), LeaseState.COMPLETED)
        while self._completed_order:
            job = self._jobs.get(self._completed_order[0])
            if job is None or job.lease_state != LeaseState.COMPLETED:
                self._completed_order.popleft()
                continue
            if (now - job.finished_at).total_seconds() <= self.config.completed_retention_s:
                break
            self._drop_finished(self._completed_order.popleft(), LeaseState.COMPLETED)
        expired_failed = [
            job_id for job_id, job in self._jobs.items()
            if job.lease_state == LeaseState.FAILED
            and (now - job.finished_at).total_seconds() > self.config.failed_retention_s
        ]
        for job_id in expired_failed:
            self._drop_finished(job_id, LeaseState.FAILED)

    def _drop_finished(self, job_id: str, state: LeaseState):
        job = self._jobs.get(job_id)
        if job is not None and job.lease_state == state:
            del self._jobs[job_id]


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

_LEASE_SCRIPT = """
local id = redis.call('LPOP', KEYS[1])
if not id then return nil end
local jobkey = ARGV[2] .. id
if redis.call('HGET', jobkey, 'state') ~= 'waiting' then return '' end
redis.call('HSET', jobkey, 'state', 'active', 'lease_expires_at', ARGV[1], 'lease_token', ARGV[3])
redis.call('ZADD', KEYS[2], ARGV[1], id)
return id
"""

_PROMOTE_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local moved = 0
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[1], id)
  local jobkey = ARGV[2] .. id
  if redis.call('HGET', jobkey, 'state') == ARGV[3] then
    redis.call('HSET', jobkey, 'state', 'waiting', 'lease_expires_at', '', 'lease_token', '', 'run_at', '')
    redis.call('RPUSH', KEYS[2], id)
    moved = moved + 1
  end
end
return moved
"""


class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis lists, sorted sets and per-job hashes.

    Lease, promotion and lease recovery run as small Lua scripts so a job is
    never visible in two states at once.
    """

    def __init__(self, config: QueueConfig = None, poll_interval_s: float = 0.2):
        super().__init__(config)
        self._redis = None
        self._poll_interval = poll_interval_s
        self._running = False
        self._lease_script = None
        self._promote_script = None
        prefix = self.config.name
        self._job_prefix = f"{prefix}:job:"
        self._waiting = f"{prefix}:waiting"
        self._delayed = f"{prefix}:delayed"
        self._active = f"{prefix}:active"
        self._completed = f"{prefix}:completed"
        self._failed = f"{prefix}:failed"

    def _job_key(self, job_id: str) -> str:
        return f"{self._job_prefix}{job_id}"

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=5), reraise=True)
    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self.config.redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        self._lease_script = self._redis.register_script(_LEASE_SCRIPT)
        self._promote_script = self._redis.register_script(_PROMOTE_SCRIPT)
        self._running = True
        logger.info("redis_queue_connected", url=self.config.redis_url, queue=self.config.name)

    async def close(self):
        self._running = False
        if self._redis:
            await self._redis.aclose()
            self._redis = None
        logger.info("redis_queue_closed", queue=self.config.name)

    async def ping(self) -> bool:
        try:
            return bool(self._redis and await self._redis.ping())
        except Exception as e:
            logger.warning("redis_queue_ping_failed", error=str(e))
            return False

    async def enqueue(self, job_data: EventJobData, idempotency_key: str = None) -> EnqueueResult:
        from redis.exceptions import WatchError

        job_id = idempotency_key or _new_job_id()
        key = self._job_key(job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                state = await pipe.hget(key, "state")
                if state in {s.value for s in OUTSTANDING_LEASE_STATES}:
                    await pipe.unwatch()
                    logger.info("job_enqueue_deduplicated", job_id=job_id, state=state)
                    return EnqueueResult(job_id=job_id, created=False)
                pipe.multi()
                pipe.delete(key)
                pipe.hset(key, mapping={
                    "data": json.dumps(job_data.to_wire()),
                    "state": LeaseState.WAITING.value,
                    "attempts_made": 0,
                    "failed_reason": "",
                    "created_at": utcnow().isoformat(),
                    "finished_at": "",
                    "lease_expires_at": "",
                    "lease_token": "",
                    "run_at": "",
                })
                pipe.zrem(self._completed, job_id)
                pipe.zrem(self._failed, job_id)
                pipe.rpush(self._waiting, job_id)
                await pipe.execute()
            except WatchError:
                # A concurrent enqueue of the same key won the race.
                logger.info("job_enqueue_deduplicated", job_id=job_id, state="raced")
                return EnqueueResult(job_id=job_id, created=False)
        logger.debug("job_enqueued", job_id=job_id, event_id=job_data.event_id)
        return EnqueueResult(job_id=job_id, created=True)

    async def lease(self, timeout: float = None) -> Optional[Job]:
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._running:
            await self._promote_due()
            lease_until = time.time() + self.config.lease_timeout_s
            job_id = await self._lease_script(
                keys=[self._waiting, self._active],
                args=[lease_until, self._job_prefix, _new_lease_token()],
            )
            if job_id == "":
                continue
            if job_id:
                return await self.get_job(job_id)
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                await asyncio.sleep(min(self._poll_interval, remaining))
            else:
                await asyncio.sleep(self._poll_interval)
        return None

    async def _promote_due(self) -> int:
        return await self._promote_script(
            keys=[self._delayed, self._waiting],
            args=[time.time(), self._job_prefix, LeaseState.DELAYED.value],
        )

    async def _fenced(self, job_id: str, lease_token: str, apply: Callable[[Any], None]):
        """Run ``apply(pipe)`` in one MULTI, only while ``lease_token`` holds the lease."""
        from redis.exceptions import WatchError

        key = self._job_key(job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                state, token = await pipe.hmget(key, "state", "lease_token")
                if state is None:
                    await pipe.unwatch()
                    raise JobNotFound(job_id)
                if state != LeaseState.ACTIVE.value or token != lease_token:
                    await pipe.unwatch()
                    logger.warning("job_lease_lost", job_id=job_id, state=state)
                    raise LeaseLost(job_id)
                pipe.multi()
                apply(pipe)
                await pipe.execute()
            except WatchError:
                # The reaper (or a re-lease) touched the job between check and write.
                logger.warning("job_lease_lost", job_id=job_id, state="raced")
                raise LeaseLost(job_id) from None

    async def ack(self, job_id: str, lease_token: str):
        now = time.time()
        key = self._job_key(job_id)

        def apply(pipe):
            pipe.hset(key, mapping={
                "state": LeaseState.COMPLETED.value,
                "finished_at": utcnow().isoformat(),
                "lease_expires_at": "",
                "lease_token": "",
            })
            pipe.zrem(self._active, job_id)
            pipe.zadd(self._completed, {job_id: now})
            pipe.zremrangebyrank(self._completed, 0, -(self.config.completed_retention_count + 1))
            pipe.zremrangebyscore(self._completed, "-inf", now - self.config.completed_retention_s)
            pipe.expire(key, self.config.completed_retention_s)

        await self._fenced(job_id, lease_token, apply)
        logger.debug("job_acked", job_id=job_id)

    async def nack(self, job_id: str, lease_token: str, delay_ms: int):
        key = self._job_key(job_id)

        def apply(pipe):
            pipe.hincrby(key, "attempts_made", 1)
            pipe.zrem(self._active, job_id)
            if delay_ms <= 0:
                pipe.hset(key, mapping={
                    "state": LeaseState.WAITING.value,
                    "lease_expires_at": "",
                    "lease_token": "",
                })
                pipe.rpush(self._waiting, job_id)
            else:
                run_at = time.time() + delay_ms / 1000.0
                pipe.hset(key, mapping={
                    "state": LeaseState.DELAYED.value,
                    "lease_expires_at": "",
                    "lease_token": "",
                    "run_at": run_at,
                })
                pipe.zadd(self._delayed, {job_id: run_at})

        await self._fenced(job_id, lease_token, apply)
        logger.debug("job_nacked", job_id=job_id, delay_ms=delay_ms)

    async def move_to_failed(self, job_id: str, lease_token: str, reason: str):
        now = time.time()
        key = self._job_key(job_id)

        def apply(pipe):
            pipe.hincrby(key, "attempts_made", 1)
            pipe.hset(key, mapping={
                "state": LeaseState.FAILED.value,
                "failed_reason": reason,
                "finished_at": utcnow().isoformat(),
                "lease_expires_at": "",
                "lease_token": "",
            })
            pipe.zrem(self._active, job_id)
            pipe.zadd(self._failed, {job_id: now})
            pipe.zremrangebyscore(self._failed, "-inf", now - self.config.failed_retention_s)
            pipe.expire(key, self.config.failed_retention_s)

        await self._fenced(job_id, lease_token, apply)
        logger.warning("job_moved_to_failed", job_id=job_id, reason=reason)

    async def get_job(self, job_id: str) -> Optional[Job]:
        fields = await self._redis.hgetall(self._job_key(job_id))
        if not fields:
            return None
        return self._job_from_hash(job_id, fields)

    @staticmethod
    def _job_from_hash(job_id: str, fields: dict[str, Any]) -> Job:
        finished = fields.get("finished_at") or None
        return Job(
            job_id=job_id,
            data=EventJobData.model_validate(json.loads(fields["data"])),
            attempts_made=int(fields.get("attempts_made", 0)),
            lease_state=LeaseState(fields.get("state", LeaseState.WAITING.value)),
            lease_expires_at=float(fields["lease_expires_at"]) if fields.get("lease_expires_at") else None,
            lease_token=fields.get("lease_token") or None,
            run_at=float(fields["run_at"]) if fields.get("run_at") else None,
            failed_reason=fields.get("failed_reason", ""),
            created_at=datetime.fromisoformat(fields["created_at"]) if fields.get("created_at")
            else datetime.now(timezone.utc),
            finished_at=datetime.fromisoformat(finished) if finished else None,
        )

    async def stats(self) -> QueueStats:
        pipe = self._redis.pipeline()
        pipe.llen(self._waiting)
        pipe.zcard(self._active)
        pipe.zcard(self._completed)
        pipe.zcard(self._failed)
        pipe.zcard(self._delayed)
        waiting, active, completed, failed, delayed = await pipe.execute()
        return QueueStats(
            waiting=waiting, active=active, completed=completed,
            failed=failed, delayed=delayed,
        )

    async def recover_expired_leases(self) -> int:
        recovered = await self._promote_script(
            keys=[self._active, self._waiting],
            args=[time.time(), self._job_prefix, LeaseState.ACTIVE.value],
        )
        if recovered:
            logger.warning("expired_leases_recovered", count=recovered)
        return recovered


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_message_queue(config: QueueConfig = None) -> MessageQueue:
    """Factory: create a new queue handle for the configured backend."""
    config = config or QueueConfig()
    if config.backend == "redis":
        return RedisMessageQueue(config)
    return InMemoryMessageQueue(config)
