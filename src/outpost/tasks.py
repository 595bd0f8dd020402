"""Fire-and-forget background work, decoupled from request lifetimes.

Tasks are held by strong reference until they finish so the event loop
can't garbage-collect them mid-flight. A failed task is logged to the
dispatcher's logger and nowhere else; nothing is raised back to the code
that spawned it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Dispatcher for detached coroutines."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task | None:
        """Schedule ``coro`` on its own task and return immediately."""
        if self._closed:
            coro.close()
            self._log.warning("Background tasks shut down, dropping %s", name)
            return None
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            self._log.info("Background task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            self._log.error(
                "Background task %s failed: %s",
                task.get_name(),
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait for every task spawned so far. Failures are not re-raised."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stop accepting work, give running tasks ``timeout`` seconds, cancel the rest."""
        self._closed = True
        if not self._tasks:
            return
        _, still_running = await asyncio.wait(list(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("Cancelled %d background task(s) at shutdown", len(still_running))
