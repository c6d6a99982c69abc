"""
Worker Scheduler — Leases event jobs from the queue and drives routing.

A fixed pool of worker tasks share one queue. Each worker loops:
rate-limit → lease → process attempt → ack / nack / fail. The token bucket
caps attempt starts system-wide, independent of the worker count.

Topology:
  ┌──────────────┐       ┌─────────────────┐       ┌────────────┐
  │ Ingestion    │──────▶│ events queue     │──────▶│  Worker(s) │
  │ Gate         │       │ (lease/ack/nack) │       └─────┬──────┘
  └──────────────┘       └─────────────────┘             │
                                  ▲                      │ ledger check
                                  │ retry after backoff  │ route
                                  └──────────────────────┤
                         ┌─────────────────┐             │
                         │  DLQ            │◀── exhaust ─┘
                         └─────────────────┘

Nothing is held across the routing call except the job's lease.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import Counter
from typing import Optional

from core.errors import ExhaustedRetries, InvalidTransition, LeaseLost
from database.ledger_base import IdempotencyLedger
from job_queue.dead_letter import DeadLetterStore
from job_queue.message_queue import MessageQueue
from job_queue.rate_limiter import TokenBucketRateLimiter
from job_queue.retry_policy import RetryPolicy
from models.schemas import (
    AttemptOutcome, AttemptResult, DeadLetterEntry, EventStatus, Job,
)
from routing.client import RoutingCollaborator

logger = structlog.get_logger()


class WorkerScheduler:
    """
    Bounded pool of workers processing event jobs.

    Usage:
        scheduler = WorkerScheduler(queue, ledger, router, dead_letters)
        await scheduler.start()      # spawns worker tasks, returns immediately
        await scheduler.stop()       # stop leasing, drain in-flight attempts
    """

    def __init__(
        self,
        queue: MessageQueue,
        ledger: IdempotencyLedger,
        router: RoutingCollaborator,
        dead_letters: DeadLetterStore,
        retry_policy: RetryPolicy = None,
        rate_limiter: TokenBucketRateLimiter = None,
        concurrency: int = 20,
        lease_poll_s: float = 1.0,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.ledger = ledger
        self.router = router
        self.dead_letters = dead_letters
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limiter = rate_limiter or TokenBucketRateLimiter(rate=100, burst=100)
        self.concurrency = concurrency
        self.lease_poll_s = lease_poll_s
        self.outcomes: Counter[str] = Counter()
        self._tasks: list[asyncio.Task] = []
        self._in_flight = 0
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def start(self):
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker_loop(i), name=f"event-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("worker_scheduler_started", concurrency=self.concurrency)

    async def stop(self, grace_s: float = 30.0):
        """Stop leasing, let in-flight attempts finish for up to ``grace_s``."""
        if not self._running and not self._tasks:
            return
        self._running = False
        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=grace_s)
            for task in pending:
                task.cancel()
            for task in pending:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            if pending:
                logger.warning("worker_attempts_cancelled_on_shutdown", count=len(pending))
        self._tasks.clear()
        logger.info("worker_scheduler_stopped", outcomes=dict(self.outcomes))

    async def _worker_loop(self, worker_id: int):
        while self._running:
            # The token is taken before leasing so a throttled worker never
            # sits on a lease while its timeout runs down.
            if not await self.rate_limiter.acquire(timeout=self.lease_poll_s):
                continue
            try:
                job = await self.queue.lease(timeout=self.lease_poll_s)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("lease_failed", worker=worker_id, error=str(e))
                await asyncio.sleep(1)
                continue
            if job is None:
                continue

            self._in_flight += 1
            try:
                result = await self.process_attempt(job)
                self.outcomes[result.outcome.value] += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # One attempt blowing up must never take the worker down.
                logger.error("attempt_crashed",
                             worker=worker_id,
                             job_id=job.job_id,
                             error=str(e),
                             exc_info=True)
            finally:
                self._in_flight -= 1

    async def process_attempt(self, job: Job) -> AttemptResult:
        """
        Run one processing attempt for a leased job.

        Flow:
        1. try_create on the ledger; an existing ROUTED row → ack, skip
        2. bump ledger attempt bookkeeping
        3. call the routing collaborator
        4. success → ledger ROUTED, ack
        5. failure → nack with backoff, or on exhaustion ledger FAILED,
           queue failed, DLQ entry
        Queue/ledger errors (including a lost lease) abandon the attempt without
        touching terminal state; the lease timeout redelivers the job.
        """
        data = job.data
        attempt = job.attempts_made + 1
        log = logger.bind(
            job_id=job.job_id,
            event_id=data.event_id,
            correlation_id=data.correlation_id or data.event_id,
            attempt=attempt,
        )
        log.info("processing_event", type=data.type)

        try:
            created = await self.ledger.try_create(
                data.event_id, data.type, data.payload, data.correlation_id,
            )
            if not created:
                status = await self.ledger.get_status(data.event_id)
                if status == EventStatus.ROUTED:
                    await self.queue.ack(job.job_id, job.lease_token)
                    log.info("event_already_routed_skipping")
                    return self._result(job, AttemptOutcome.DUPLICATE)
            await self.ledger.increment_attempts(data.event_id)
        except Exception as e:
            return self._abandon(job, log, e)

        try:
            await self.router.route(data.event_id, data.payload)
        except Exception as e:
            log.warning("routing_failed", error=str(e))
            try:
                return await self._handle_failure(job, e, log)
            except Exception as infra:
                return self._abandon(job, log, infra)

        try:
            try:
                await self.ledger.transition_to(data.event_id, EventStatus.ROUTED)
            except InvalidTransition as e:
                if e.current != EventStatus.ROUTED.value:
                    raise
                # A redelivered copy of this job already recorded the outcome.
                await self.queue.ack(job.job_id, job.lease_token)
                log.info("event_routed_concurrently")
                return self._result(job, AttemptOutcome.DUPLICATE)
            await self.queue.ack(job.job_id, job.lease_token)
        except Exception as e:
            return self._abandon(job, log, e)

        log.info("event_routed")
        return self._result(job, AttemptOutcome.ROUTED)

    async def _handle_failure(self, job: Job, exc: Exception, log) -> AttemptResult:
        reason = str(exc) or type(exc).__name__
        attempts_made = job.attempts_made + 1

        if self.retry_policy.is_retryable(exc) and not self.retry_policy.is_exhausted(attempts_made):
            delay_ms = self.retry_policy.next_delay_ms(job.attempts_made)
            await self.queue.nack(job.job_id, job.lease_token, delay_ms)
            log.info("event_retry_scheduled", delay_ms=delay_ms,
                     max_attempts=self.retry_policy.max_attempts)
            return self._result(job, AttemptOutcome.RETRY_SCHEDULED, delay_ms=delay_ms, error=reason)

        try:
            await self.ledger.transition_to(job.event_id, EventStatus.FAILED, error=reason)
        except InvalidTransition as e:
            log.warning("event_already_terminal", status=e.current)
        # The queue job must be terminal before the entry is visible, otherwise a
        # replay would deduplicate against the still-active job.
        await self.queue.move_to_failed(job.job_id, job.lease_token, reason)
        await self.dead_letters.add(DeadLetterEntry(
            original_job_data=job.data,
            error=reason,
            attempts=attempts_made,
        ))

        log.error("event_processing_failed_permanently", attempts=attempts_made, error=reason)
        return self._result(job, AttemptOutcome.DEAD_LETTERED, error=reason,
                            failure=ExhaustedRetries(job.event_id, attempts_made, reason))

    def _abandon(self, job: Job, log, exc: Exception) -> AttemptResult:
        if isinstance(exc, LeaseLost):
            # Another worker holds the job now; its attempt decides the outcome.
            log.warning("attempt_lease_lost")
        else:
            log.error("attempt_abandoned", error=str(exc), error_type=type(exc).__name__)
        return self._result(job, AttemptOutcome.ABANDONED, error=str(exc))

    @staticmethod
    def _result(job: Job, outcome: AttemptOutcome, delay_ms: Optional[int] = None,
                error: str = "", failure: Optional[Exception] = None) -> AttemptResult:
        return AttemptResult(
            job_id=job.job_id,
            event_id=job.event_id,
            outcome=outcome,
            attempt=job.attempts_made + 1,
            delay_ms=delay_ms,
            error=error,
            failure=failure,
        )


# ──────────────────────────────────────────────────────────────
#  Lease Reaper
# ──────────────────────────────────────────────────────────────

class LeaseReaper:
    """
    Background task that periodically returns jobs whose lease expired
    (crashed or stuck worker) to the waiting list.
    """

    def __init__(self, queue: MessageQueue, interval_seconds: float = 5.0):
        self.queue = queue
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("lease_reaper_started", interval=self.interval)
        while True:
            try:
                await self.queue.recover_expired_leases()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("lease_reaper_error", error=str(e))
            await asyncio.sleep(self.interval)
