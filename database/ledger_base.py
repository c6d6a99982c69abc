"""
Abstract Idempotency Ledger — Interface for all storage backends.

Implementations:
  - SqlLedger       (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryLedger  (dict-based, single-process, no persistence)

The ledger's uniqueness on event_id is the only duplicate-suppression
primitive in the pipeline; callers never lock around it.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from core.errors import InvalidTransition
from models.schemas import ALLOWED_TRANSITIONS, Event, EventStatus


def check_transition(event_id: str, current: EventStatus, target: EventStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(event_id, current.value, target.value)


class IdempotencyLedger(ABC):
    """Interface that all ledger backends must implement."""

    async def init(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        return True

    @abstractmethod
    async def try_create(self, event_id: str, type: str, payload: dict[str, Any],
                         correlation_id: Optional[str] = None) -> bool:
        """Atomically insert a ROUTING_PENDING row. False, with no side effects, if it exists."""
        ...

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[Event]:
        ...

    async def get_status(self, event_id: str) -> Optional[EventStatus]:
        event = await self.get_event(event_id)
        return event.status if event else None

    @abstractmethod
    async def increment_attempts(self, event_id: str) -> Optional[int]:
        """Bump the ledger-side attempt counter. Returns the new value."""
        ...

    @abstractmethod
    async def transition_to(self, event_id: str, new_status: EventStatus,
                            error: Optional[str] = None,
                            processed_at: Optional[datetime] = None) -> Event:
        """Move along an allowed edge; raises InvalidTransition otherwise.

        ROUTED sets processed_at (now if not given); FAILED sets error.
        """
        ...

    @abstractmethod
    async def list_by_status(self, status: EventStatus, limit: int = 100) -> list[Event]:
        """Newest first."""
        ...

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]:
        ...
