"""
Queue database — one async engine and its transactions, owned by a store.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  mysql://       → mysql+aiomysql://         (requires aiomysql)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

There is no module-level engine. Whoever constructs a QueueDatabase owns it
and disposes it; SqlItemStore does so in close().

Usage:
    db = QueueDatabase.from_config(settings.database)
    await db.create_tables()
    async with db.transaction() as session:
        await session.execute(...)
    await db.dispose()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = [
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql://", "mysql+aiomysql://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
]


def async_url(db_url: str) -> str:
    """Swap a sync driver prefix for its async counterpart. Other URLs pass through."""
    for sync_prefix, async_prefix in _ASYNC_DRIVERS:
        if db_url.startswith(sync_prefix):
            return async_prefix + db_url[len(sync_prefix):]
    return db_url


def engine_options(db_url: str, pool_size: int = 5, echo: bool = False) -> dict:
    """
    SQLite keeps SQLAlchemy's default pool for aiosqlite. Server databases get
    a bounded pool that checks connections before handing them out, so a
    restarted database surfaces as one failed ping rather than a broken sweep.
    """
    if db_url.startswith("sqlite"):
        return {"echo": echo}
    return {"echo": echo, "pool_size": pool_size, "pool_pre_ping": True}


def _redacted(db_url: str) -> str:
    return db_url.split("@")[-1] if "@" in db_url else db_url


class QueueDatabase:
    """Lazily created engine plus session factory for one database URL."""

    def __init__(self, url: str, pool_size: int = 5, echo: bool = False):
        self.url = async_url(url)
        self._options = engine_options(self.url, pool_size=pool_size, echo=echo)
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "QueueDatabase":
        return cls(config.url, pool_size=config.pool_size, echo=config.echo_sql)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.url, **self._options)
            self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)
            logger.info("database_engine_created",
                        dialect=self._engine.dialect.name, url=_redacted(self.url))
        return self._engine

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """One session, committed on success and rolled back on any error."""
        self.engine  # creates the session factory
        async with self._sessions() as session:
            async with session.begin():
                yield session

    async def create_tables(self) -> list[str]:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        tables = sorted(Base.metadata.tables)
        logger.info("database_initialized", dialect=self.engine.dialect.name, tables=tables)
        return tables

    async def existing_tables(self) -> list[str]:
        async with self.engine.connect() as conn:
            return sorted(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))

    async def missing_tables(self) -> list[str]:
        return sorted(set(Base.metadata.tables) - set(await self.existing_tables()))

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None
            logger.info("database_closed", url=_redacted(self.url))
