"""
Database layer — Multi-backend persistence for queue items and history.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store(DatabaseConfig(store_backend="memory"))
  item = await store.get_item("q_1a2b3c")
"""
from database.models import Base, QueueItemRow, QueueHistoryRow
from database.session import QueueDatabase, async_url, engine_options
from database.store_base import BaseItemStore
from database.store import SqlItemStore
from database.store_memory import InMemoryItemStore
from database.store_file import FileItemStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "QueueItemRow", "QueueHistoryRow",
    # Engine and transactions
    "QueueDatabase", "async_url", "engine_options",
    # Store interface
    "BaseItemStore",
    # Store backends
    "SqlItemStore", "InMemoryItemStore", "FileItemStore",
    # Factory
    "create_store",
]
