"""
SqlLedger — Portable idempotency ledger for PostgreSQL, MySQL, SQLite.

Duplicate suppression relies on the primary key on event_id: a second insert
fails with IntegrityError and is reported as ``created=False``. Transitions
are conditional UPDATEs on the current status, so two workers racing on the
same event can never both record ROUTED.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.errors import InfrastructureFailure, InvalidTransition
from database.ledger_base import IdempotencyLedger
from database.models import EventRow
from database.session import Database
from models.schemas import ALLOWED_TRANSITIONS, Event, EventStatus, utcnow

logger = structlog.get_logger()


class SqlLedger(IdempotencyLedger):
    """
    Persistent ledger backed by any SQLAlchemy-supported database.
    """

    def __init__(self, db: Database):
        self._db = db

    async def init(self) -> None:
        await self._db.init()

    async def close(self) -> None:
        await self._db.close()

    async def ping(self) -> bool:
        return await self._db.ping()

    @asynccontextmanager
    async def _guard(self, operation: str):
        try:
            yield
        except (IntegrityError, InvalidTransition):
            raise
        except SQLAlchemyError as e:
            logger.error("ledger_unavailable", operation=operation, error=str(e))
            raise InfrastructureFailure(f"Ledger {operation} failed: {e}", component="ledger") from e

    async def try_create(self, event_id: str, type: str, payload: dict[str, Any],
                         correlation_id: Optional[str] = None) -> bool:
        try:
            async with self._guard("try_create"):
                async with self._db.session() as db:
                    db.add(EventRow(
                        event_id=event_id,
                        type=type,
                        payload=payload,
                        correlation_id=correlation_id,
                        status=EventStatus.ROUTING_PENDING.value,
                        attempts=0,
                    ))
        except IntegrityError:
            logger.info("duplicate_event_detected", event_id=event_id)
            return False
        return True

    async def get_event(self, event_id: str) -> Optional[Event]:
        async with self._guard("get_event"):
            async with self._db.session() as db:
                row = await db.get(EventRow, event_id)
                return self._row_to_event(row) if row else None

    async def increment_attempts(self, event_id: str) -> Optional[int]:
        async with self._guard("increment_attempts"):
            async with self._db.session() as db:
                await db.execute(
                    update(EventRow)
                    .where(EventRow.event_id == event_id)
                    .values(attempts=EventRow.attempts + 1, updated_at=utcnow())
                )
                result = await db.execute(
                    select(EventRow.attempts).where(EventRow.event_id == event_id)
                )
                return result.scalar_one_or_none()

    async def transition_to(self, event_id: str, new_status: EventStatus,
                            error: Optional[str] = None,
                            processed_at: Optional[datetime] = None) -> Event:
        sources = [s.value for s, targets in ALLOWED_TRANSITIONS.items() if new_status in targets]
        values: dict[str, Any] = {"status": new_status.value, "updated_at": utcnow()}
        if new_status == EventStatus.ROUTED:
            values["processed_at"] = processed_at or utcnow()
        elif new_status == EventStatus.FAILED:
            values["error"] = error

        async with self._guard("transition_to"):
            async with self._db.session() as db:
                result = await db.execute(
                    update(EventRow)
                    .where(EventRow.event_id == event_id, EventRow.status.in_(sources))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                row = await db.get(EventRow, event_id, populate_existing=True)
                if result.rowcount == 0:
                    current = row.status if row else "MISSING"
                    raise InvalidTransition(event_id, current, new_status.value)
                return self._row_to_event(row)

    async def list_by_status(self, status: EventStatus, limit: int = 100) -> list[Event]:
        async with self._guard("list_by_status"):
            async with self._db.session() as db:
                stmt = (
                    select(EventRow)
                    .where(EventRow.status == status.value)
                    .order_by(EventRow.created_at.desc())
                    .limit(limit)
                )
                result = await db.execute(stmt)
                return [self._row_to_event(r) for r in result.scalars()]

    async def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in EventStatus}
        async with self._guard("count_by_status"):
            async with self._db.session() as db:
                result = await db.execute(
                    select(EventRow.status, func.count()).group_by(EventRow.status)
                )
                for status, n in result.all():
                    counts[status] = n
        return counts

    @staticmethod
    def _row_to_event(row: EventRow) -> Event:
        return Event(
            event_id=row.event_id,
            type=row.type,
            payload=row.payload or {},
            status=EventStatus(row.status),
            attempts=row.attempts,
            error=row.error,
            correlation_id=row.correlation_id,
            created_at=row.created_at,
            processed_at=row.processed_at,
            updated_at=row.updated_at,
        )
