"""Tracked background continuations.

The completion webhook answers before aggregation runs. Work scheduled here
is spawned as an ``asyncio.Task`` whose handle is kept until it finishes, so
failures are always logged and shutdown can wait for in-flight work.

Usage:
    runner = BackgroundRunner()
    runner.spawn(aggregate(...), name="metrics", task_id=task.id)
    ...
    await runner.drain(timeout=30)   # on shutdown
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundRunner:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._labels: dict[asyncio.Task, tuple[str, str | None]] = {}
        self.completed = 0
        self.failed = 0

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str, task_id: str | None = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=f"{name}:{task_id}" if task_id else name)
        self._tasks.add(task)
        self._labels[task] = (name, task_id)
        task.add_done_callback(self._on_done)
        logger.debug("Spawned background %s", task.get_name(), extra={"task_id": task_id})
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        name, task_id = self._labels.pop(task, (task.get_name(), None))
        if task.cancelled():
            logger.warning("Background %s cancelled", name, extra={"task_id": task_id})
            self.failed += 1
            return
        exc = task.exception()
        if exc is not None:
            self.failed += 1
            logger.error(
                "Background %s failed: %s: %s",
                name,
                type(exc).__name__,
                exc,
                exc_info=exc,
                extra={"task_id": task_id},
            )
        else:
            self.completed += 1

    async def drain(self, timeout: float | None = None) -> int:
        """Wait for in-flight work; cancel whatever is left after ``timeout``.

        Returns the number of tasks that had to be cancelled.
        """
        if not self._tasks:
            return 0
        pending = set(self._tasks)
        logger.info("Draining %d background task(s)", len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("Cancelled %d background task(s) at shutdown", len(still_running))
        return len(still_running)
