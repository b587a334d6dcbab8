"""Tasks that must keep running after their HTTP response has been sent."""

from __future__ import annotations

import asyncio
from typing import Awaitable

import structlog

from ..common.metrics import GLOBAL_REGISTRY, Gauge


LOGGER = structlog.get_logger("springcache.edge.background")

PENDING_TASKS = GLOBAL_REGISTRY.register(
    Gauge("springcache_edge_background_tasks", "Background tasks still running after their response")
)


class BackgroundRunner:
    """Owns fire-and-forget work spawned by request handlers.

    A task lives until it completes or the application shuts down. Shutdown
    waits up to ``grace_seconds`` for pending tasks and cancels the rest;
    work lost that way is re-triggered by the next cache miss.
    """

    def __init__(self, grace_seconds: float = 30.0) -> None:
        self._grace = max(0.0, grace_seconds)
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable[object], *, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        PENDING_TASKS.inc()
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        PENDING_TASKS.dec()
        if task.cancelled():
            LOGGER.warning("background_task_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("background_task_failed", task=task.get_name(), error=str(exc), error_type=type(exc).__name__)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for pending tasks, cancelling whatever is left after the timeout."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _, still_running = await asyncio.wait(tasks, timeout=self._grace if timeout is None else timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            LOGGER.warning("background_tasks_dropped", count=len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
