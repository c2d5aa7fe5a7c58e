"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB. On PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Enums stored as plain strings so new values never need a migration.
  - All timestamps are written in UTC. SQLite hands them back naive; the
    pydantic models re-attach UTC on the way out.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Float, DateTime, Text, Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Queue Items
# ──────────────────────────────────────────────────────────────

class QueueItemRow(Base):
    __tablename__ = "queue_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    email_id: Mapped[str] = mapped_column(String(256), nullable=False)
    thread_id: Mapped[str] = mapped_column(String(256), default="")

    subject: Mapped[str] = mapped_column(Text, default="")
    sender: Mapped[str] = mapped_column(String(320), default="")
    recipient: Mapped[str] = mapped_column(String(320), default="")
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    labels: Mapped[Any] = mapped_column(JSON, default=list)

    priority: Mapped[str] = mapped_column(String(16), default="medium")
    category: Mapped[str] = mapped_column(String(128), default="general")
    reason: Mapped[str] = mapped_column(String(32), default="needs_reply")

    status: Mapped[str] = mapped_column(String(16), default="active")
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_action_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    snoozed_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    action_count: Mapped[int] = mapped_column(Integer, default=0)
    snooze_count: Mapped[int] = mapped_column(Integer, default=0)
    waiting_on: Mapped[str] = mapped_column(String(320), default="")
    waiting_reason: Mapped[str] = mapped_column(Text, default="")

    deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    deadline_allowance_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    deadline_override_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    deadline_status: Mapped[str] = mapped_column(String(16), default="on_time")
    time_remaining_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    suggested_snooze_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    suggestion_reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    suggestion_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    suggestion_source: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    version: Mapped[int] = mapped_column(Integer, default=1)

    __table_args__ = (
        Index("ix_queue_items_email", "email_id"),
        Index("ix_queue_items_status_priority", "status", "priority"),
        Index("ix_queue_items_status_snoozed", "status", "snoozed_until"),
        Index("ix_queue_items_deadline", "deadline"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {c.name: getattr(self, c.key) for c in self.__table__.columns}


# ──────────────────────────────────────────────────────────────
#  Queue History
# ──────────────────────────────────────────────────────────────

class QueueHistoryRow(Base):
    __tablename__ = "queue_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    # No foreign key: history outlives hard-deleted items until retention purges it
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    old_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    old_priority: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    new_priority: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    actor: Mapped[str] = mapped_column(String(128), default="system")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    seq: Mapped[int] = mapped_column(Integer, default=0)

    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    __table_args__ = (
        Index("ix_queue_history_item_ts", "item_id", "timestamp"),
        Index("ix_queue_history_ts", "timestamp"),
    )
