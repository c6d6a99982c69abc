"""
Database layer — Idempotency ledger persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_ledger
  ledger = create_ledger(settings.database)
  await ledger.init()
  created = await ledger.try_create("evt-1", "ORDER_CREATED", {})
"""
from database.models import Base, EventRow
from database.session import Database
from database.ledger_base import IdempotencyLedger
from database.ledger_sql import SqlLedger
from database.ledger_memory import InMemoryLedger
from database.ledger_factory import create_ledger

__all__ = [
    # ORM models
    "Base", "EventRow",
    # Session management
    "Database",
    # Ledger interface
    "IdempotencyLedger",
    # Ledger backends
    "SqlLedger", "InMemoryLedger",
    # Factory
    "create_ledger",
]
