"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(DatabaseConfig(store_backend="memory"))
  sale = await store.get_sale("s1")
"""
from database.models import (
    Base, LeadRow, ChannelRow, ScheduledMessageRow, SaleRow, SaleCheckpointRow,
    CheckpointHistoryRow, PickupClosingRow, PickupClosingSaleRow, ConversationRow,
    ConversationMessageRow, SatisfactionRatingRow, AutoCloseConfigRow,
)
from database.session import configure_engine, get_engine, get_session, init_db, close_db
from database.store_base import BaseStore
from database.store import SqlStore
from database.store_memory import InMemoryStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "LeadRow", "ChannelRow", "ScheduledMessageRow", "SaleRow",
    "SaleCheckpointRow", "CheckpointHistoryRow", "PickupClosingRow",
    "PickupClosingSaleRow", "ConversationRow", "ConversationMessageRow",
    "SatisfactionRatingRow", "AutoCloseConfigRow",
    # Session management
    "configure_engine", "get_engine", "get_session", "init_db", "close_db",
    # Store interface and backends
    "BaseStore", "SqlStore", "InMemoryStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
