"""
Per-Resource Serialization
--------------------------
Keyed lock arena and per-key sequence gates. Work for different resources
proceeds in parallel; work for the same resource is serialized without a
global lock.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional


class KeyedLocks:
    """Arena of asyncio locks indexed by resource key."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    def _ref(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] = self._refs.get(key, 0) + 1
        return lock

    def _unref(self, key: str) -> None:
        remaining = self._refs.get(key, 1) - 1
        if remaining <= 0:
            self._refs.pop(key, None)
            self._locks.pop(key, None)
        else:
            self._refs[key] = remaining

    @asynccontextmanager
    async def hold(self, key: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        """
        Hold the lock for ``key``, waiting up to ``timeout`` seconds to get it.

        Raises:
            asyncio.TimeoutError: The lock was not acquired in time
        """
        lock = self._ref(key)
        try:
            if timeout is None:
                await lock.acquire()
            else:
                await asyncio.wait_for(lock.acquire(), timeout)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._unref(key)

    async def try_acquire(self, key: str) -> bool:
        """Take the lock only if it is free right now."""
        lock = self._locks.get(key)
        if lock is not None and lock.locked():
            return False
        lock = self._ref(key)
        # An unlocked asyncio.Lock is acquired without suspending
        await lock.acquire()
        return True

    def release(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is None or not lock.locked():
            return
        lock.release()
        self._unref(key)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class SequenceGate:
    """
    Per-key ticket ordering.

    Tickets are issued in arrival order; a holder of ticket ``n`` may only
    apply its work after ticket ``n - 1`` has completed for the same key,
    regardless of which finished its preparation first.
    """

    def __init__(self):
        self._issued: Dict[str, int] = {}
        self._applied: Dict[str, int] = {}
        self._condition = asyncio.Condition()

    def ticket(self, key: str) -> int:
        issued = self._issued.get(key, 0) + 1
        self._issued[key] = issued
        return issued

    def is_latest(self, key: str, ticket: int) -> bool:
        return self._issued.get(key, 0) == ticket

    async def wait_turn(self, key: str, ticket: int) -> None:
        async with self._condition:
            await self._condition.wait_for(lambda: self._applied.get(key, 0) >= ticket - 1)

    async def complete(self, key: str, ticket: int) -> None:
        async with self._condition:
            if ticket > self._applied.get(key, 0):
                self._applied[key] = ticket
            self._condition.notify_all()

    @asynccontextmanager
    async def turn(self, key: str, ticket: int) -> AsyncIterator[None]:
        """Wait for the ticket's turn, and always release the next ticket afterwards."""
        await self.wait_turn(key, ticket)
        try:
            yield
        finally:
            await self.complete(key, ticket)
