"""
Keyed Lock
==========
One asyncio.Lock per key, created on first use and dropped as soon as no
task holds or waits on it, so the table never grows with the number of
job runs seen.

asyncio.Lock wakes waiters in FIFO order. Handlers that acquire the key
lock before any other await therefore apply same-key events in delivery
order.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Hashable


class KeyedLock:
    """Mutual exclusion per key. Single event loop only."""

    def __init__(self) -> None:
        # key → [lock, number of holders + waiters]
        self._entries: dict[Hashable, list] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        entry = self._entries.get(key)
        if entry is None:
            entry = [asyncio.Lock(), 0]
            self._entries[key] = entry
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[key]

    def locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry[0].locked()

    def __len__(self) -> int:
        return len(self._entries)
