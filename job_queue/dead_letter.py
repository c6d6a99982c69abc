"""
Dead Letter Store — terminal quarantine for jobs that exhausted their retries.

Entries are append-only and removed only by replay. Replay re-enqueues the
original job data onto the main queue (keyed by event id, so the replayed job
starts with a fresh lease and attempts_made = 0) and then deletes the entry.
The ledger is left untouched: the replayed attempt finds the existing FAILED
row and reprocesses it.
"""
from __future__ import annotations

import structlog
from abc import ABC, abstractmethod
from typing import Optional

from tenacity import retry, stop_after_attempt, wait_exponential

from job_queue.message_queue import MessageQueue
from models.schemas import DeadLetterEntry

logger = structlog.get_logger()


class DeadLetterStore(ABC):
    """Interface that all dead letter backends must implement."""

    async def connect(self):
        pass

    async def close(self):
        pass

    @abstractmethod
    async def add(self, entry: DeadLetterEntry) -> None:
        ...

    @abstractmethod
    async def list(self, limit: int = 100) -> list[DeadLetterEntry]:
        """Oldest first."""
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def remove(self, entry_id: str) -> bool:
        ...

    async def replay_all(self, queue: MessageQueue) -> int:
        """Re-enqueue every entry onto ``queue``. Returns how many were replayed.

        An entry whose enqueue fails stays in the store and is retried by the
        next replay.
        """
        entries = await self.list(limit=0)
        replayed = 0
        for entry in entries:
            data = entry.original_job_data
            try:
                await queue.enqueue(data, idempotency_key=data.event_id)
                await self.remove(entry.entry_id)
                replayed += 1
            except Exception as e:
                logger.error("dlq_replay_failed",
                             entry_id=entry.entry_id,
                             event_id=data.event_id,
                             error=str(e))
        logger.info("dlq_replayed", replayed=replayed, total=len(entries))
        return replayed


class InMemoryDeadLetterStore(DeadLetterStore):

    def __init__(self):
        self._entries: dict[str, DeadLetterEntry] = {}

    async def add(self, entry: DeadLetterEntry) -> None:
        self._entries[entry.entry_id] = entry
        logger.warning("event_moved_to_dlq",
                       event_id=entry.original_job_data.event_id,
                       attempts=entry.attempts)

    async def list(self, limit: int = 100) -> list[DeadLetterEntry]:
        entries = sorted(self._entries.values(), key=lambda e: e.failed_at)
        return entries[:limit] if limit else entries

    async def count(self) -> int:
        return len(self._entries)

    async def remove(self, entry_id: str) -> bool:
        return self._entries.pop(entry_id, None) is not None


class RedisDeadLetterStore(DeadLetterStore):
    """DLQ kept in a single Redis hash: entry_id → JSON entry."""

    def __init__(self, redis_url: str = "redis://localhost:6379", name: str = "events-dlq"):
        self._redis_url = redis_url
        self._key = name
        self._redis = None

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=5), reraise=True)
    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        await self._redis.ping()
        logger.info("redis_dlq_connected", key=self._key)

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def add(self, entry: DeadLetterEntry) -> None:
        await self._redis.hset(self._key, entry.entry_id, entry.model_dump_json(by_alias=True))
        logger.warning("event_moved_to_dlq",
                       event_id=entry.original_job_data.event_id,
                       attempts=entry.attempts)

    async def list(self, limit: int = 100) -> list[DeadLetterEntry]:
        raw = await self._redis.hvals(self._key)
        entries = sorted(
            (DeadLetterEntry.model_validate_json(v) for v in raw),
            key=lambda e: e.failed_at,
        )
        return entries[:limit] if limit else entries

    async def count(self) -> int:
        return await self._redis.hlen(self._key)

    async def remove(self, entry_id: str) -> bool:
        return bool(await self._redis.hdel(self._key, entry_id))


def create_dead_letter_store(backend: str = "memory", redis_url: str = "",
                             name: Optional[str] = None) -> DeadLetterStore:
    if backend == "redis":
        return RedisDeadLetterStore(redis_url or "redis://localhost:6379", name or "events-dlq")
    return InMemoryDeadLetterStore()
