"""Detached background tasks for fire-and-forget side effects."""

import asyncio
from collections.abc import Coroutine
from typing import Any

from micromanager.utils.logging import get_logger

logger = get_logger(__name__)


class DetachedTasks:
    """Spawns coroutines that the caller never awaits.

    Task references are held until completion so they are not garbage collected
    mid-flight. Failures are reported on the log only.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop and return immediately."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug(f"Detached task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Detached task {task.get_name()} failed: {error!r}")

    async def drain(self) -> None:
        """Wait for all outstanding tasks (used on shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)
