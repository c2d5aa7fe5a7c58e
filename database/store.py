"""
SqlItemStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Versioned writes use a conditional UPDATE (``WHERE id = :id AND version = :v``);
zero affected rows means either the item is gone or someone else wrote first.
An item write and its history row share one transaction. Driver and connection
failures, and rows that no longer parse, surface as CollaboratorError.
"""
from __future__ import annotations

import json
import structlog
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import QueueHistoryRow, QueueItemRow
from database.session import QueueDatabase
from database.store_base import BaseItemStore
from models.errors import CollaboratorError, ConflictError, NotFoundError
from models.schemas import (
    QueueHistoryEntry, QueueItem, QueueItemStatus, QueuePriority,
)

logger = structlog.get_logger()


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _unreadable(kind: str, row_id: str, e: Exception) -> CollaboratorError:
    logger.error("sql_store_unreadable_row", kind=kind, row_id=row_id,
                 error=str(e), error_type=type(e).__name__)
    return CollaboratorError(f"Unreadable {kind} row {row_id}: {e}",
                             details={"kind": kind, "row_id": row_id})


class SqlItemStore(BaseItemStore):
    """
    Persistent item store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite. The store owns its engine
    and releases it in close().
    """

    def __init__(self, url: str = None, pool_size: int = 5, echo: bool = False,
                 database: QueueDatabase = None):
        if database is None and not url:
            raise ValueError("SqlItemStore needs a database URL")
        self._db = database or QueueDatabase(url, pool_size=pool_size, echo=echo)

    @property
    def database(self) -> QueueDatabase:
        return self._db

    async def initialize(self) -> None:
        try:
            await self._db.create_tables()
        except SQLAlchemyError as e:
            logger.error("sql_store_init_failed", error=str(e))
            raise CollaboratorError(f"Database unavailable: {e}") from e

    async def close(self) -> None:
        await self._db.dispose()

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._db.transaction() as db:
                yield db
        except SQLAlchemyError as e:
            logger.error("sql_store_error", operation=operation, error=str(e))
            raise CollaboratorError(f"Database error during {operation}: {e}",
                                    details={"operation": operation}) from e

    # ── Item operations ───────────────────────────────────────

    async def get_item(self, item_id: str) -> Optional[QueueItem]:
        async with self._session("get_item") as db:
            row = await db.get(QueueItemRow, item_id)
            return self._row_to_item(row) if row else None

    async def get_item_by_email_id(self, email_id: str) -> Optional[QueueItem]:
        async with self._session("get_item_by_email_id") as db:
            stmt = (
                select(QueueItemRow)
                .where(QueueItemRow.email_id == email_id)
                .where(QueueItemRow.status != QueueItemStatus.ARCHIVED.value)
                .order_by(QueueItemRow.added_at.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_item(row) if row else None

    async def insert_item(self, item: QueueItem, entry: QueueHistoryEntry = None) -> QueueItem:
        stored = item.model_copy(update={"version": 1})
        async with self._session("insert_item") as db:
            if await db.get(QueueItemRow, item.id) is not None:
                raise ConflictError(f"Queue item already exists: {item.id}",
                                    details={"item_id": item.id})
            db.add(QueueItemRow(**self._item_values(stored)))
            if entry is not None:
                await self._add_history(db, entry)
        return stored

    async def _versioned_update(self, db: AsyncSession, item: QueueItem,
                                expected_version: int) -> QueueItem:
        stored = item.model_copy(update={"version": expected_version + 1})
        values = self._item_values(stored)
        values.pop("id")
        stmt = (
            update(QueueItemRow)
            .where(QueueItemRow.id == item.id)
            .where(QueueItemRow.version == expected_version)
            .values(**values)
        )
        result = await db.execute(stmt)
        if result.rowcount == 0:
            current = await db.get(QueueItemRow, item.id)
            if current is None:
                raise NotFoundError(item.id)
            raise ConflictError(
                f"Version conflict on {item.id}: expected {expected_version}, found {current.version}",
                details={"item_id": item.id, "expected": expected_version,
                         "actual": current.version},
            )
        return stored

    async def update_item(self, item: QueueItem, expected_version: int) -> QueueItem:
        async with self._session("update_item") as db:
            return await self._versioned_update(db, item, expected_version)

    async def commit(self, item: QueueItem, expected_version: int,
                     entry: QueueHistoryEntry) -> QueueItem:
        async with self._session("commit") as db:
            stored = await self._versioned_update(db, item, expected_version)
            await self._add_history(db, entry)
        return stored

    async def delete_item(self, item_id: str, entry: QueueHistoryEntry = None) -> bool:
        async with self._session("delete_item") as db:
            result = await db.execute(delete(QueueItemRow).where(QueueItemRow.id == item_id))
            if result.rowcount == 0:
                return False
            if entry is not None:
                await self._add_history(db, entry)
            return True

    async def scan_items(
        self,
        statuses: list[QueueItemStatus] = None,
        priorities: list[QueuePriority] = None,
    ) -> list[QueueItem]:
        async with self._session("scan_items") as db:
            stmt = select(QueueItemRow)
            if statuses:
                stmt = stmt.where(QueueItemRow.status.in_([_plain(s) for s in statuses]))
            if priorities:
                stmt = stmt.where(QueueItemRow.priority.in_([_plain(p) for p in priorities]))
            result = await db.execute(stmt)
            return [self._row_to_item(r) for r in result.scalars().all()]

    # ── History operations ────────────────────────────────────

    async def _add_history(self, db: AsyncSession, entry: QueueHistoryEntry) -> None:
        seq = await db.scalar(
            select(func.count()).select_from(QueueHistoryRow)
            .where(QueueHistoryRow.item_id == entry.item_id)
        )
        db.add(QueueHistoryRow(
            id=entry.id,
            item_id=entry.item_id,
            action=entry.action.value,
            old_status=_plain(entry.old_status),
            new_status=_plain(entry.new_status),
            old_priority=_plain(entry.old_priority),
            new_priority=_plain(entry.new_priority),
            actor=entry.actor,
            timestamp=entry.timestamp,
            seq=seq or 0,
            metadata_=entry.metadata,
        ))

    async def append_history(self, entry: QueueHistoryEntry) -> None:
        async with self._session("append_history") as db:
            await self._add_history(db, entry)

    async def get_history(self, item_id: str, limit: int = None) -> list[QueueHistoryEntry]:
        async with self._session("get_history") as db:
            stmt = (
                select(QueueHistoryRow)
                .where(QueueHistoryRow.item_id == item_id)
                .order_by(QueueHistoryRow.timestamp.desc(), QueueHistoryRow.seq.desc())
            )
            if limit:
                stmt = stmt.limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_history(r) for r in result.scalars().all()]

    async def purge_history(self, before: datetime) -> int:
        async with self._session("purge_history") as db:
            result = await db.execute(
                delete(QueueHistoryRow).where(QueueHistoryRow.timestamp < before)
            )
            removed = result.rowcount or 0
        if removed:
            logger.info("history_purged", removed=removed, before=before.isoformat())
        return removed

    # ── Converters ────────────────────────────────────────────

    @staticmethod
    def _item_values(item: QueueItem) -> dict[str, Any]:
        return {k: _plain(v) for k, v in item.model_dump().items()}

    @staticmethod
    def _row_to_item(row: QueueItemRow) -> QueueItem:
        try:
            data = row.to_dict()
            if isinstance(data.get("labels"), str):
                data["labels"] = json.loads(data["labels"])
            data["labels"] = data.get("labels") or []
            return QueueItem.model_validate(data)
        except (ValueError, TypeError) as e:
            raise _unreadable("item", row.id, e) from e

    @staticmethod
    def _row_to_history(row: QueueHistoryRow) -> QueueHistoryEntry:
        try:
            metadata = row.metadata_ or {}
            if isinstance(metadata, str):
                metadata = json.loads(metadata)
            return QueueHistoryEntry(
                id=row.id,
                item_id=row.item_id,
                action=row.action,
                old_status=row.old_status,
                new_status=row.new_status,
                old_priority=row.old_priority,
                new_priority=row.new_priority,
                actor=row.actor,
                timestamp=row.timestamp,
                metadata=metadata,
            )
        except (ValueError, TypeError) as e:
            raise _unreadable("history", row.id, e) from e
