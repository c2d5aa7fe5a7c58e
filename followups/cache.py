"""
Queue cache — one in-process TTL cache with a declared TTL per key class.

Key classes:
  active       scan of all queue items feeding query()     invalidated on every write
  history:{id} history of one item                          invalidated on writes to that item
  stats        QueueStatistics                              NOT invalidated on writes; may be
                                                            up to its TTL stale

Read-populate: a reader takes ``generation`` before going to the store and
passes it to ``set``. If any invalidation ran in between, the result it read
may predate that write and is not cached.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog

from config.settings import QueueConfig

logger = structlog.get_logger(__name__)

ACTIVE_KEY = "active"
STATS_KEY = "stats"


def history_key(item_id: str) -> str:
    return f"history:{item_id}"


def _key_class(key: str) -> str:
    return key.split(":", 1)[0]


@dataclass
class CacheEntry:
    """Cache entry with TTL."""

    data: Any
    cached_at: datetime
    ttl_seconds: int

    def is_expired(self, now: datetime) -> bool:
        return now >= self.cached_at + timedelta(seconds=self.ttl_seconds)


class QueueCache:
    """Simple in-memory cache. ``clock`` is injectable so tests can age entries."""

    def __init__(
        self,
        ttls: dict[str, int] = None,
        clock: Callable[[], datetime] = None,
    ) -> None:
        self._cache: dict[str, CacheEntry] = {}
        self._ttls = ttls or {ACTIVE_KEY: 300, STATS_KEY: 900, "history": 600}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._generation = 0
        self._log = logger.bind(component="queue_cache")

    @classmethod
    def from_config(cls, config: QueueConfig, clock: Callable[[], datetime] = None) -> "QueueCache":
        return cls(
            ttls={
                ACTIVE_KEY: config.active_list_ttl_s,
                STATS_KEY: config.statistics_ttl_s,
                "history": config.history_ttl_s,
            },
            clock=clock,
        )

    def ttl_for(self, key: str) -> int:
        return self._ttls.get(_key_class(key), 300)

    @property
    def generation(self) -> int:
        """Bumped by every invalidation."""
        return self._generation

    def get(self, key: str) -> Optional[Any]:
        entry = self._cache.get(key)
        if entry is None:
            self._log.debug("cache_miss", key=key)
            return None
        if entry.is_expired(self._clock()):
            self._log.debug("cache_expired", key=key)
            del self._cache[key]
            return None
        self._log.debug("cache_hit", key=key)
        return entry.data

    def set(self, key: str, data: Any, generation: int = None) -> bool:
        """
        Store ``data`` under ``key``. With ``generation``, the write is dropped
        when an invalidation happened since that generation was read.
        Returns whether the value was cached.
        """
        ttl = self.ttl_for(key)
        if ttl <= 0:
            return False
        if generation is not None and generation != self._generation:
            self._log.debug("cache_set_skipped", key=key, read_generation=generation,
                            generation=self._generation)
            return False
        self._cache[key] = CacheEntry(data=data, cached_at=self._clock(), ttl_seconds=ttl)
        self._log.debug("cache_set", key=key, ttl_seconds=ttl)
        return True

    def invalidate(self, *keys: str) -> None:
        self._generation += 1
        for key in keys:
            self._cache.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        self._generation += 1
        doomed = [k for k in self._cache if k.startswith(prefix)]
        for k in doomed:
            del self._cache[k]
        return len(doomed)

    def invalidate_item(self, item_id: str) -> None:
        """Drop everything a write to ``item_id`` makes stale. Statistics are kept."""
        self.invalidate(ACTIVE_KEY, history_key(item_id))

    def clear(self) -> None:
        count = len(self._cache)
        self._generation += 1
        self._cache.clear()
        self._log.info("cache_cleared", entries_cleared=count)
