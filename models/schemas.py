"""
Core data models for the Event Gateway.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class EventStatus(str, Enum):
    ROUTING_PENDING = "ROUTING_PENDING"
    ROUTED = "ROUTED"
    FAILED = "FAILED"


# Allowed ledger edges. FAILED → ROUTED exists only for DLQ replay: a replayed
# event reprocesses against its existing FAILED row.
ALLOWED_TRANSITIONS: dict[EventStatus, frozenset[EventStatus]] = {
    EventStatus.ROUTING_PENDING: frozenset({EventStatus.ROUTED, EventStatus.FAILED}),
    EventStatus.FAILED: frozenset({EventStatus.ROUTED}),
    EventStatus.ROUTED: frozenset(),
}


class LeaseState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


OUTSTANDING_LEASE_STATES = frozenset({LeaseState.WAITING, LeaseState.ACTIVE, LeaseState.DELAYED})


class AttemptOutcome(str, Enum):
    ROUTED = "routed"
    DUPLICATE = "duplicate"         # ledger already ROUTED — idempotent skip
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    ABANDONED = "abandoned"         # infrastructure failure, left for lease timeout


# ──────────────────────────────────────────────────────────────
#  Event — the ledger record
# ──────────────────────────────────────────────────────────────

class Event(BaseModel):
    """A ledger row tracking one event through its routing lifecycle."""
    event_id: str
    type: str
    payload: dict[str, Any] = {}
    status: EventStatus = EventStatus.ROUTING_PENDING
    attempts: int = 0
    error: Optional[str] = None
    correlation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "type": self.type,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
            "createdAt": self.created_at.isoformat(),
            "correlationId": self.correlation_id,
        }


# ──────────────────────────────────────────────────────────────
#  Job data — what travels on the queue
# ──────────────────────────────────────────────────────────────

class EventJobData(BaseModel):
    """Queue payload copied verbatim from the ingestion request.

    Producers speak camelCase (``eventId``, ``correlationId``); both the alias
    and the field name are accepted on input and the alias is used on output.
    """
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias="eventId")
    type: str
    payload: dict[str, Any]
    correlation_id: Optional[str] = Field(default=None, alias="correlationId")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass
class Job:
    """A queue-level delivery unit. Shares its identity with the event."""
    job_id: str
    data: EventJobData
    attempts_made: int = 0
    lease_state: LeaseState = LeaseState.WAITING
    lease_expires_at: Optional[float] = None     # monotonic/epoch seconds, backend-defined
    lease_token: Optional[str] = None            # fences ack/nack/fail to the current holder
    run_at: Optional[float] = None
    failed_reason: str = ""
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def event_id(self) -> str:
        return self.data.event_id


@dataclass
class EnqueueResult:
    job_id: str
    created: bool                                # False when an outstanding job absorbed it


class DeadLetterEntry(BaseModel):
    """Terminal record for a job that exhausted its retry attempts."""
    entry_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    original_job_data: EventJobData
    error: str
    failed_at: datetime = Field(default_factory=utcnow)
    attempts: int


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    dlq: int = 0


@dataclass
class AttemptResult:
    """Explicit outcome of one processing attempt, returned to the scheduler."""
    job_id: str
    event_id: str
    outcome: AttemptOutcome
    attempt: int
    delay_ms: Optional[int] = None
    error: str = ""
    failure: Optional[Exception] = None         # ExhaustedRetries when dead-lettered
