"""Per-instance mutual exclusion."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class InstanceLocks:
    """Registry of ``asyncio.Lock`` objects keyed by instance id.

    A lock exists only while some task holds it or waits for it, so the
    registry does not grow with the number of instances ever touched.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, instance_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = self._locks[instance_id] = asyncio.Lock()
        self._users[instance_id] = self._users.get(instance_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[instance_id] -= 1
            if not self._users[instance_id]:
                del self._users[instance_id]
                del self._locks[instance_id]

    def locked(self, instance_id: str) -> bool:
        lock = self._locks.get(instance_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
