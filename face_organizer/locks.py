"""
Per-user mutual exclusion for state-changing operations.

Two inserts for the same user must not both decide to create a person for
the same face, so every write takes that user's lock. Different users never
share a lock.
"""
import asyncio
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator


class UserLockRegistry:
    """
    Hands out one asyncio.Lock per user id.

    Locks are held weakly: once no coroutine holds or waits on a user's lock
    it is dropped, so idle users do not accumulate entries.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        # The local reference keeps the lock alive while held
        lock = self.get(user_id)
        async with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)
