"""
FileItemStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    items.json      {item_id: item}
    history.json    {item_id: [entry, ...]}

Features:
  - Survives process restarts (unlike InMemoryItemStore)
  - No external dependencies (no database server)
  - Each write flushes the changed collection through a temp file + rename
  - Single-process only (no cross-process write safety)

Best for: small deployments, demos, air-gapped environments.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from database.store_memory import InMemoryItemStore
from models.schemas import QueueHistoryEntry, QueueItem

logger = structlog.get_logger()

_COLLECTIONS = ["items", "history"]


class FileItemStore(InMemoryItemStore):
    """
    Extends InMemoryItemStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.

    For higher throughput, set flush_interval_s > 0 to batch writes.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk. Unreadable files are logged and skipped."""
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                self._set_collection(collection, data)
                logger.debug("file_store_loaded",
                             collection=collection,
                             records=len(data) if isinstance(data, dict) else "N/A")
            except (json.JSONDecodeError, ValueError, TypeError) as e:
                logger.warning("file_store_load_error",
                               collection=collection, error=str(e))

    def _set_collection(self, collection: str, data: Any):
        """Restore a collection from loaded JSON data."""
        if not isinstance(data, dict):
            data = {}
        if collection == "items":
            self._items = {iid: QueueItem.model_validate(raw) for iid, raw in data.items()}
            # Rebuild email index; the newest item per email wins
            self._email_index.clear()
            for item in sorted(self._items.values(), key=lambda i: i.added_at):
                self._email_index[item.email_id] = item.id
        elif collection == "history":
            self._history = defaultdict(list, {
                iid: [QueueHistoryEntry.model_validate(e) for e in entries]
                for iid, entries in data.items()
            })

    def _get_collection_data(self, collection: str) -> Any:
        """Get serializable data for a collection."""
        if collection == "items":
            return {iid: item.model_dump(mode="json") for iid, item in self._items.items()}
        if collection == "history":
            return {
                iid: [e.model_dump(mode="json") for e in entries]
                for iid, entries in self._history.items()
            }
        return {}

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        data = self._get_collection_data(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(path)  # atomic on POSIX

    def _mark_dirty(self, *collections: str):
        """Mark collections as needing a flush."""
        if self._flush_interval <= 0:
            for c in collections:
                self._flush_collection(c)
        else:
            self._dirty.update(collections)
            if self._flush_task is None or self._flush_task.done():
                self._flush_task = asyncio.get_running_loop().create_task(
                    self._deferred_flush()
                )

    async def _deferred_flush(self):
        """Batch flush after interval."""
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    async def close(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        self.flush_all()

    # ── Override write methods to trigger persistence ──────────

    async def insert_item(self, item: QueueItem, entry: QueueHistoryEntry = None) -> QueueItem:
        result = await super().insert_item(item, entry)
        self._mark_dirty("items", *(["history"] if entry is not None else []))
        return result

    async def update_item(self, item: QueueItem, expected_version: int) -> QueueItem:
        result = await super().update_item(item, expected_version)
        self._mark_dirty("items")
        return result

    async def commit(self, item: QueueItem, expected_version: int,
                     entry: QueueHistoryEntry) -> QueueItem:
        result = await super().commit(item, expected_version, entry)
        self._mark_dirty("items", "history")
        return result

    async def delete_item(self, item_id: str, entry: QueueHistoryEntry = None) -> bool:
        removed = await super().delete_item(item_id, entry)
        if removed:
            self._mark_dirty("items", *(["history"] if entry is not None else []))
        return removed

    async def append_history(self, entry: QueueHistoryEntry) -> None:
        await super().append_history(entry)
        self._mark_dirty("history")

    async def purge_history(self, before: datetime) -> int:
        removed = await super().purge_history(before)
        if removed:
            self._mark_dirty("history")
        return removed
