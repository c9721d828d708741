"""
Per-chat serialization for metadata read-merge-write.

Onboarding, project and memory updates for one chat run under the same
asyncio.Lock, so two messages arriving close together cannot both act on
stale state. Locks live in process memory only.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from agent_core.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ChatLockRegistry:
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, thread_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[thread_id] = lock

        self._waiters[thread_id] = self._waiters.get(thread_id, 0) + 1
        if lock.locked():
            logger.debug("Waiting for chat lock", thread_id=thread_id)
        try:
            async with lock:
                yield
        finally:
            self._waiters[thread_id] -= 1
            # Drop idle locks so the registry does not grow with every thread seen
            if self._waiters[thread_id] == 0:
                del self._waiters[thread_id]
                self._locks.pop(thread_id, None)

    def is_locked(self, thread_id: str) -> bool:
        lock = self._locks.get(thread_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
