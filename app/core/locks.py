from __future__ import annotations

import asyncio
import weakref
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Hashable


class KeyedLock:
    """
    One asyncio.Lock per key, created on demand.

    `hold(*keys)` takes every requested lock in sorted order, so two callers
    locking the same pair of keys can never deadlock each other.
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[Hashable, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, *keys: Hashable) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                lock = self._lock_for(key)
                await lock.acquire()
                stack.callback(lock.release)
            yield
