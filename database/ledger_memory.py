"""
InMemoryLedger — Dict-backed idempotency ledger for development and testing.

Check-and-insert runs without an await in between, so on a single event loop
it is atomic in the same way a unique index is.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from core.errors import InvalidTransition
from database.ledger_base import IdempotencyLedger, check_transition
from models.schemas import Event, EventStatus, utcnow

logger = structlog.get_logger()


class InMemoryLedger(IdempotencyLedger):

    def __init__(self):
        self._events: dict[str, Event] = {}
        logger.info("inmemory_ledger_initialized")

    async def try_create(self, event_id: str, type: str, payload: dict[str, Any],
                         correlation_id: Optional[str] = None) -> bool:
        if event_id in self._events:
            logger.info("duplicate_event_detected", event_id=event_id)
            return False
        self._events[event_id] = Event(
            event_id=event_id, type=type, payload=payload,
            correlation_id=correlation_id,
        )
        return True

    async def get_event(self, event_id: str) -> Optional[Event]:
        event = self._events.get(event_id)
        return event.model_copy() if event else None

    async def increment_attempts(self, event_id: str) -> Optional[int]:
        event = self._events.get(event_id)
        if event is None:
            return None
        event.attempts += 1
        event.updated_at = utcnow()
        return event.attempts

    async def transition_to(self, event_id: str, new_status: EventStatus,
                            error: Optional[str] = None,
                            processed_at: Optional[datetime] = None) -> Event:
        event = self._events.get(event_id)
        if event is None:
            raise InvalidTransition(event_id, "MISSING", new_status.value)
        check_transition(event_id, event.status, new_status)
        event.status = new_status
        if new_status == EventStatus.ROUTED:
            event.processed_at = processed_at or utcnow()
        elif new_status == EventStatus.FAILED:
            event.error = error
        event.updated_at = utcnow()
        return event.model_copy()

    async def list_by_status(self, status: EventStatus, limit: int = 100) -> list[Event]:
        matching = [e for e in self._events.values() if e.status == status]
        matching.sort(key=lambda e: e.created_at, reverse=True)
        return [e.model_copy() for e in matching[:limit]]

    async def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in EventStatus}
        for event in self._events.values():
            counts[event.status.value] += 1
        return counts
