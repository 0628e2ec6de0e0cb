"""Per-key asyncio locks.

Used to linearize read-modify-write sequences per account id and per job id
within a process. Cross-process safety comes from the database (conditional
updates, row locks and unique indexes); these locks keep a single process
from racing itself and from tripping SQLite's writer lock.
"""

import asyncio
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class KeyedLocks:
    """A registry of asyncio locks keyed by an arbitrary hashable.

    Locks are held weakly, so a key's lock disappears once nobody is holding
    or waiting on it.
    """

    def __init__(self, name: str = "locks"):
        self.name = name
        self._locks: "weakref.WeakValueDictionary[Hashable, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def get(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self.get(key)
        async with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)
