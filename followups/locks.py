"""
Per-item ownership for mutations.

Every mutating QueueStore operation holds the item's lock for the whole
read-modify-write. Different items never contend. Two policies:

  wait   queue behind the current holder, up to ``timeout_s``, then ConflictError
  fail   ConflictError immediately if the item is busy
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator

from models.errors import ConflictError

logger = structlog.get_logger()


class ItemLockRegistry:

    def __init__(self, policy: str = "wait", timeout_s: float = 5.0):
        if policy not in ("wait", "fail"):
            raise ValueError(f"Unknown lock policy: {policy}")
        self.policy = policy
        self.timeout_s = timeout_s
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    def is_locked(self, item_id: str) -> bool:
        lock = self._locks.get(item_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, item_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(item_id, asyncio.Lock())
        self._waiters[item_id] = self._waiters.get(item_id, 0) + 1
        try:
            if self.policy == "fail" and lock.locked():
                logger.info("item_lock_busy", item_id=item_id, policy=self.policy)
                raise ConflictError(f"Item {item_id} is being modified",
                                    details={"item_id": item_id})
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout_s)
            except asyncio.TimeoutError:
                logger.warning("item_lock_timeout", item_id=item_id, timeout_s=self.timeout_s)
                raise ConflictError(
                    f"Timed out after {self.timeout_s}s waiting for item {item_id}",
                    details={"item_id": item_id, "timeout_s": self.timeout_s},
                ) from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[item_id] -= 1
            if self._waiters[item_id] == 0:
                # Last reference gone
                del self._waiters[item_id]
                if not lock.locked():
                    self._locks.pop(item_id, None)
