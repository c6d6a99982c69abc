"""
Pipeline — Wires the gateway's components from settings and owns their lifecycle.

Every handle (queue, ledger, DLQ, router, limiter) is created here once and
injected into the components that use it; nothing reaches for a module-level
singleton.

Startup order:   ledger.init → queue.connect → dlq.connect → workers → reaper
Shutdown order:  reaper → workers (grace period) → router → dlq → queue → ledger
"""
from __future__ import annotations

import structlog
from typing import Any

from config.settings import Settings, get_settings
from database.ledger_base import IdempotencyLedger
from database.ledger_factory import create_ledger
from ingestion.gate import IngestionGate
from job_queue.dead_letter import DeadLetterStore, create_dead_letter_store
from job_queue.message_queue import MessageQueue, create_message_queue
from job_queue.rate_limiter import TokenBucketRateLimiter
from job_queue.retry_policy import RetryPolicy
from job_queue.worker import LeaseReaper, WorkerScheduler
from models.schemas import QueueStats
from routing.client import RoutingCollaborator, create_routing_client

logger = structlog.get_logger()


class Pipeline:
    """
    Composition root for the gateway.

    Usage:
        pipeline = Pipeline.from_settings(settings)
        await pipeline.start()                 # with_workers=False for API-only
        receipt = await pipeline.gate.ingest(body, signature)
        await pipeline.stop()
    """

    def __init__(
        self,
        settings: Settings,
        queue: MessageQueue,
        ledger: IdempotencyLedger,
        dead_letters: DeadLetterStore,
        router: RoutingCollaborator,
    ):
        self.settings = settings
        self.queue = queue
        self.ledger = ledger
        self.dead_letters = dead_letters
        self.router = router
        self.retry_policy = RetryPolicy.from_config(settings.retry)
        self.rate_limiter = TokenBucketRateLimiter.per_window(
            settings.worker.max_rate, settings.worker.rate_duration_ms,
        )
        self.gate = IngestionGate(queue, settings.ingestion.hmac_secret)
        self.scheduler = WorkerScheduler(
            queue=queue,
            ledger=ledger,
            router=router,
            dead_letters=dead_letters,
            retry_policy=self.retry_policy,
            rate_limiter=self.rate_limiter,
            concurrency=settings.worker.concurrency,
        )
        self.reaper = LeaseReaper(queue, interval_seconds=settings.queue.reaper_interval_s)
        self._started = False
        self._workers_started = False

    @classmethod
    def from_settings(cls, settings: Settings = None) -> "Pipeline":
        settings = settings or get_settings()
        dlq_backend = "redis" if settings.queue.backend == "redis" else "memory"
        return cls(
            settings=settings,
            queue=create_message_queue(settings.queue),
            ledger=create_ledger(settings.database),
            dead_letters=create_dead_letter_store(
                backend=dlq_backend,
                redis_url=settings.queue.redis_url,
                name=f"{settings.queue.name}-dlq",
            ),
            router=create_routing_client(settings.routing),
        )

    async def start(self, with_workers: bool = True):
        if self._started:
            return
        await self.ledger.init()
        await self.queue.connect()
        await self.dead_letters.connect()
        self._started = True
        if with_workers:
            await self.scheduler.start()
            await self.reaper.start_background()
            self._workers_started = True
        logger.info("pipeline_started",
                    queue_backend=type(self.queue).__name__,
                    ledger_backend=type(self.ledger).__name__,
                    router=type(self.router).__name__,
                    workers=self.settings.worker.concurrency if with_workers else 0)

    async def stop(self):
        if not self._started:
            return
        if self._workers_started:
            await self.reaper.stop()
            await self.scheduler.stop(grace_s=self.settings.worker.shutdown_grace_s)
            self._workers_started = False
        await self.router.close()
        await self.dead_letters.close()
        await self.queue.close()
        await self.ledger.close()
        self._started = False
        logger.info("pipeline_stopped")

    # ──────────────────────────────────────────────────────────────
    #  Operational queries
    # ──────────────────────────────────────────────────────────────

    async def stats(self) -> QueueStats:
        stats = await self.queue.stats()
        stats.dlq = await self.dead_letters.count()
        return stats

    async def replay_dead_letters(self) -> int:
        return await self.dead_letters.replay_all(self.queue)

    async def readiness(self) -> dict[str, Any]:
        checks: dict[str, bool] = {}
        for name, component in (("queue", self.queue), ("ledger", self.ledger)):
            try:
                checks[name] = bool(await component.ping())
            except Exception as e:
                logger.warning("readiness_check_failed", component=name, error=str(e))
                checks[name] = False
        return {"ready": all(checks.values()), "checks": checks}
