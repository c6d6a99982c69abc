"""
Job Queue — Durable delivery of events from ingestion to the workers.

Ingestion ENQUEUES one job per event; the worker pool LEASES jobs, calls the
routing collaborator and acks, reschedules with backoff, or dead-letters.
Backends: Redis (production) and in-memory asyncio primitives (dev/tests).
"""
from job_queue.message_queue import (
    MessageQueue, InMemoryMessageQueue, RedisMessageQueue, create_message_queue,
)
from job_queue.dead_letter import (
    DeadLetterStore, InMemoryDeadLetterStore, RedisDeadLetterStore,
    create_dead_letter_store,
)
from job_queue.rate_limiter import TokenBucketRateLimiter
from job_queue.retry_policy import RetryPolicy
from job_queue.worker import WorkerScheduler, LeaseReaper

__all__ = [
    "MessageQueue", "InMemoryMessageQueue", "RedisMessageQueue", "create_message_queue",
    "DeadLetterStore", "InMemoryDeadLetterStore", "RedisDeadLetterStore",
    "create_dead_letter_store",
    "TokenBucketRateLimiter", "RetryPolicy",
    "WorkerScheduler", "LeaseReaper",
]
