"""
InMemoryItemStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database server)
  - Same versioning semantics as SqlItemStore
  - Safe under asyncio (single event loop, no awaits inside a write)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime
from typing import Optional

from database.store_base import BaseItemStore
from models.errors import ConflictError, NotFoundError
from models.schemas import (
    QueueHistoryEntry, QueueItem, QueueItemStatus, QueuePriority,
)

logger = structlog.get_logger()


class InMemoryItemStore(BaseItemStore):
    """
    Holds private copies of every item, so callers can never mutate
    stored state without going through update_item().
    """

    def __init__(self):
        self._items: dict[str, QueueItem] = {}                               # id → item
        self._history: dict[str, list[QueueHistoryEntry]] = defaultdict(list)  # item id → entries

        # Indexes
        self._email_index: dict[str, str] = {}                               # email_id → item id
        logger.info("inmemory_store_initialized")

    # ── Items ─────────────────────────────────────────────────

    async def get_item(self, item_id: str) -> Optional[QueueItem]:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    async def get_item_by_email_id(self, email_id: str) -> Optional[QueueItem]:
        item_id = self._email_index.get(email_id)
        if not item_id:
            return None
        item = self._items.get(item_id)
        if item is None or item.status == QueueItemStatus.ARCHIVED:
            return None
        return item.model_copy(deep=True)

    async def insert_item(self, item: QueueItem, entry: QueueHistoryEntry = None) -> QueueItem:
        if item.id in self._items:
            raise ConflictError(f"Queue item already exists: {item.id}",
                                details={"item_id": item.id})
        stored = item.model_copy(update={"version": 1}, deep=True)
        self._items[stored.id] = stored
        self._email_index[stored.email_id] = stored.id
        if entry is not None:
            self._history[entry.item_id].append(entry.model_copy(deep=True))
        return stored.model_copy(deep=True)

    def _check_version(self, item_id: str, expected_version: int) -> None:
        current = self._items.get(item_id)
        if current is None:
            raise NotFoundError(item_id)
        if current.version != expected_version:
            raise ConflictError(
                f"Version conflict on {item_id}: expected {expected_version}, found {current.version}",
                details={"item_id": item_id, "expected": expected_version, "actual": current.version},
            )

    async def update_item(self, item: QueueItem, expected_version: int) -> QueueItem:
        self._check_version(item.id, expected_version)
        stored = item.model_copy(update={"version": expected_version + 1}, deep=True)
        self._items[stored.id] = stored
        return stored.model_copy(deep=True)

    async def commit(self, item: QueueItem, expected_version: int,
                     entry: QueueHistoryEntry) -> QueueItem:
        # Everything is checked and copied before the first mutation; no awaits in between
        self._check_version(item.id, expected_version)
        stored = item.model_copy(update={"version": expected_version + 1}, deep=True)
        record = entry.model_copy(deep=True)
        self._items[stored.id] = stored
        self._history[record.item_id].append(record)
        return stored.model_copy(deep=True)

    async def delete_item(self, item_id: str, entry: QueueHistoryEntry = None) -> bool:
        item = self._items.pop(item_id, None)
        if item is None:
            return False
        if self._email_index.get(item.email_id) == item_id:
            del self._email_index[item.email_id]
        if entry is not None:
            self._history[entry.item_id].append(entry.model_copy(deep=True))
        return True

    async def scan_items(
        self,
        statuses: list[QueueItemStatus] = None,
        priorities: list[QueuePriority] = None,
    ) -> list[QueueItem]:
        status_set = set(statuses or [])
        priority_set = set(priorities or [])
        return [
            item.model_copy(deep=True)
            for item in self._items.values()
            if (not status_set or item.status in status_set)
            and (not priority_set or item.priority in priority_set)
        ]

    # ── History ───────────────────────────────────────────────

    async def append_history(self, entry: QueueHistoryEntry) -> None:
        self._history[entry.item_id].append(entry.model_copy(deep=True))

    async def get_history(self, item_id: str, limit: int = None) -> list[QueueHistoryEntry]:
        # Reversed first so entries sharing a timestamp also come out newest first
        entries = sorted(reversed(self._history.get(item_id, [])),
                         key=lambda e: e.timestamp, reverse=True)
        if limit:
            entries = entries[:limit]
        return [e.model_copy(deep=True) for e in entries]

    async def purge_history(self, before: datetime) -> int:
        removed = 0
        for item_id in list(self._history):
            kept = [e for e in self._history[item_id] if e.timestamp >= before]
            removed += len(self._history[item_id]) - len(kept)
            if kept:
                self._history[item_id] = kept
            else:
                del self._history[item_id]
        return removed
