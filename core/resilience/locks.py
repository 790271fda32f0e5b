"""
Keyed locks: serialize work per record.

One asyncio.Lock per key (reservation id, promo code, product id). Two
callers on the same key queue up; callers on different keys never contend.
Locks are dropped once nobody holds or awaits them, so the table stays the
size of the in-flight work.
"""
from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator
import asyncio


class KeyedLock:
    """Per-key mutual exclusion for a single event loop."""

    def __init__(self, name: str = "keyed"):
        self.name = name
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    @property
    def active_keys(self) -> int:
        return len(self._locks)
