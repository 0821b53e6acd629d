"""
Fire-and-forget background work.

Side effects that must never change an already computed response
(audit writes, API key usage metadata) are scheduled here. Failures
are logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """
    Holds strong references to scheduled tasks until they finish.

    asyncio only keeps weak references to tasks, so an unreferenced
    task can be garbage collected mid-flight.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str = "background") -> asyncio.Task | None:
        """
        Schedule a coroutine without awaiting it.

        Returns None (and closes the coroutine) when there is no running
        event loop, e.g. when called from synchronous code.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug(f"No running loop - dropped background task '{name}'")
            return None

        task = loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Background task '{task.get_name()}' failed: {error!r}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled task (used on shutdown and in tests)."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        # Let done-callbacks run
        await asyncio.sleep(0)
