"""Per-tenant advisory locks for sync and mutation entry points."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

logger = logging.getLogger(__name__)


class TenantLockManager:
    """Registry of ``asyncio.Lock`` objects keyed by resolved tenant id.

    Locks are created on demand and dropped once no task holds or waits on
    them. Only coordinates tasks inside one process.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}
        self._guard = asyncio.Lock()
        self.logger = logger.getChild('tenant_locks')

    async def _acquire_ref(self, key: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    async def _release_ref(self, key: str) -> None:
        async with self._guard:
            remaining = self._users.get(key, 1) - 1
            if remaining <= 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)
            else:
                self._users[key] = remaining

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = await self._acquire_ref(key)
        try:
            if lock.locked():
                self.logger.debug(f"Waiting for lock on tenant {key}")
            async with lock:
                yield
        finally:
            await self._release_ref(key)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
