"""
Abstract Item Store — Interface for all queue storage backends.

Implementations:
  - SqlItemStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryItemStore (dict-based, single-process, no persistence)
  - FileItemStore     (JSON files on disk, single-process, durable)

Every write is versioned: update_item() and commit() only succeed when the
stored version equals ``expected_version`` and bump it by one. A mismatch
raises ConflictError; nothing is ever silently overwritten.

Writes that carry a history ``entry`` (insert_item, commit, delete_item) apply
the item change and the entry together: either both are stored or neither is.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import (
    QueueHistoryEntry, QueueItem, QueueItemStatus, QueuePriority,
)


class BaseItemStore(ABC):
    """Interface that all item store backends must implement."""

    async def initialize(self) -> None:
        """Prepare the backend (create tables, load files). Idempotent."""

    async def close(self) -> None:
        """Release backend resources."""

    # ── Items ─────────────────────────────────────────────────

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[QueueItem]:
        ...

    @abstractmethod
    async def get_item_by_email_id(self, email_id: str) -> Optional[QueueItem]:
        """Most recent non-archived item for a source message, if any."""
        ...

    @abstractmethod
    async def insert_item(self, item: QueueItem, entry: QueueHistoryEntry = None) -> QueueItem:
        """Persist a new item at version 1, with its first history entry if given."""
        ...

    @abstractmethod
    async def update_item(self, item: QueueItem, expected_version: int) -> QueueItem:
        """Replace a stored item without a history entry. Raises ConflictError on version mismatch."""
        ...

    @abstractmethod
    async def commit(self, item: QueueItem, expected_version: int,
                     entry: QueueHistoryEntry) -> QueueItem:
        """Versioned replace of ``item`` plus one history entry, atomically."""
        ...

    @abstractmethod
    async def delete_item(self, item_id: str, entry: QueueHistoryEntry = None) -> bool:
        ...

    @abstractmethod
    async def scan_items(
        self,
        statuses: list[QueueItemStatus] = None,
        priorities: list[QueuePriority] = None,
    ) -> list[QueueItem]:
        ...

    # ── History ───────────────────────────────────────────────

    @abstractmethod
    async def append_history(self, entry: QueueHistoryEntry) -> None:
        ...

    @abstractmethod
    async def get_history(self, item_id: str, limit: int = None) -> list[QueueHistoryEntry]:
        """Entries for one item, newest first."""
        ...

    @abstractmethod
    async def purge_history(self, before: datetime) -> int:
        """Delete entries older than ``before``. Returns the number removed."""
        ...
