from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple

Key = Tuple[str, str]


class SubjectLocks:
    """Short-lived mutual exclusion keyed by ``(subject, resource)``.

    Entries are dropped as soon as nobody holds or waits on them, so the map only
    contains keys with work in progress.
    """

    def __init__(self) -> None:
        self._locks: Dict[Key, asyncio.Lock] = {}
        self._users: Dict[Key, int] = {}

    @asynccontextmanager
    async def hold(self, subject: str, resource: str) -> AsyncIterator[None]:
        key = (subject, resource)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            n = self._users.get(key, 1) - 1
            if n <= 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)
            else:
                self._users[key] = n

    def held(self, subject: str, resource: str) -> bool:
        lock = self._locks.get((subject, resource))
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)


CONTACT_LOCKS = SubjectLocks()
