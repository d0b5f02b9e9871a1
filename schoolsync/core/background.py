"""
Detached and periodic asyncio tasks.

Notification fan-out runs after the HTTP response is sent, so it is spawned
as a detached task: the caller never awaits it, a strong reference is held
until it finishes, and any exception is logged from the done-callback instead
of surfacing as "Task exception was never retrieved".
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

import structlog

log = structlog.get_logger()


class TaskGroup:
    """Owns detached tasks so they can be drained on shutdown."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        """Schedule ``coro`` without awaiting it."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error(
                "background.task_failed",
                group=self._name,
                task=task.get_name(),
                error=str(exc),
                exc_info=exc,
            )

    async def drain(self, timeout: float) -> None:
        """Wait up to ``timeout`` seconds for pending tasks, then cancel the rest."""
        if not self._tasks:
            return
        pending = set(self._tasks)
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            log.warning("background.drain_cancelled", group=self._name, count=len(still_pending))
            await asyncio.gather(*still_pending, return_exceptions=True)


class PeriodicJob:
    """Runs ``func`` every ``interval`` seconds until stopped.

    Failures are logged and the loop keeps going.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Awaitable[Any]]) -> None:
        self.name = name
        self.interval = interval
        self._func = func
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"periodic:{self.name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run_once(self) -> Any:
        try:
            return await self._func()
        except Exception as exc:
            log.error("periodic.job_failed", job=self.name, error=str(exc), exc_info=True)
            return None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()
