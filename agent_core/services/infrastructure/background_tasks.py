"""
Supervised fire-and-forget tasks.

Work that must not hold up the reply path (memory enrichment) is started
here. Tasks are retained until they finish; failures are logged and
counted, never raised to the caller.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

from agent_core.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class BackgroundTaskSupervisor:
    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        self.started = 0
        self.succeeded = 0
        self.failed = 0

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        self.started += 1
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task cancelled", task_name=task.get_name())
            self.failed += 1
            return

        error = task.exception()
        if error is not None:
            self.failed += 1
            logger.error(
                "Background task failed",
                task_name=task.get_name(),
                error=str(error),
                error_type=type(error).__name__,
            )
        else:
            self.succeeded += 1

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def stats(self) -> dict[str, int]:
        return {
            "started": self.started,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "pending": self.pending,
        }

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight tasks; used on shutdown and in tests."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Background tasks cancelled on drain", count=len(pending))
