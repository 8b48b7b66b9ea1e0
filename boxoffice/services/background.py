"""
Detached in-process work: post-commit notifications and fulfillments that
outlive the webhook acknowledgment budget.

Tasks are held by strong reference until they finish, and failures are
logged rather than lost with an unawaited coroutine.
"""
from __future__ import annotations

import asyncio
from typing import Any, Coroutine

from boxoffice.core.logging import get_logger

logger = get_logger(__name__)


class BackgroundDispatcher:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        return self.track(task)

    def track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %s",
                task.get_name(),
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight tasks, including ones they spawn (shutdown, tests)."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return
            await asyncio.wait(set(self._tasks), timeout=remaining)


dispatcher = BackgroundDispatcher()
