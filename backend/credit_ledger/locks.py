"""
Per-pool serialization

In-process asyncio locks keyed by pool, layered on top of the conditional
updates in MongoDB. The storage-level compare-and-set is what guarantees
correctness across processes; the locks keep same-process callers from
burning CAS retries against each other.

A key's lock lives only while some caller holds or waits for it.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict


def pool_key(pool: str, pool_id: str) -> str:
    """Canonical lock key, e.g. org:<id>, member:<id>, personal:<id>."""
    prefix = {"organization": "org"}.get(pool, pool)
    return f"{prefix}:{pool_id}"


class PoolLocks:
    """Registry of one asyncio.Lock per pool key in use."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _forget(self, key: str):
        users = self._users[key] - 1
        if users:
            self._users[key] = users
        else:
            del self._users[key]
            self._locks.pop(key, None)

    @asynccontextmanager
    async def hold(self, *keys: str):
        """Acquire several pool locks in a stable order (no lock-order deadlocks)."""
        ordered = sorted(set(keys))
        for key in ordered:
            self._users[key] = self._users.get(key, 0) + 1

        acquired = []
        try:
            for key in ordered:
                lock = self.get(key)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._forget(key)


# Shared by every service in the process
_pool_locks = PoolLocks()


def get_pool_locks() -> PoolLocks:
    return _pool_locks
