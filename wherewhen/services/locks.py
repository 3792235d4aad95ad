import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager


class KeyedLock:
    """One asyncio lock per aggregate key, created on demand.

    Mutations of the same aggregate are serialized; different keys proceed in
    parallel. Entries are dropped once nobody holds or waits on them.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, *keys: Hashable) -> AsyncIterator[None]:
        # Sorted acquisition order so multi-key holders cannot deadlock
        ordered = sorted(set(keys), key=str)
        registered: list[Hashable] = []
        held: list[Hashable] = []
        try:
            for key in ordered:
                lock = self._locks.setdefault(key, asyncio.Lock())
                self._users[key] = self._users.get(key, 0) + 1
                registered.append(key)
                await lock.acquire()
                held.append(key)
            yield
        finally:
            for key in reversed(held):
                self._locks[key].release()
            for key in registered:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
