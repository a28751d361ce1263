"""
CertChain — Detached Tasks

Best-effort side effects (verification audit writes) run as background
tasks the caller never awaits. They are never *unobserved*: every failure
is logged, counted, and forwarded to an optional operator error channel.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from typing import Any

import structlog

logger = structlog.get_logger("certchain.core.tasks")

ErrorChannel = Callable[[str, BaseException], None]


class DetachedTaskRunner:
    """
    Spawns tracked background tasks.

    Unlike bare ``asyncio.create_task``, this:
    * Keeps a strong reference so the task isn't garbage-collected.
    * Logs and counts failures instead of silently dropping them.
    * Reports failures to ``error_channel`` (e.g. an alerting hook).
    * Can be drained on shutdown so pending audit writes are not lost.
    """

    def __init__(self, error_channel: ErrorChannel | None = None) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._error_channel = error_channel
        self._failures = 0
        self._completed = 0
        self._logger = logger.bind(component="detached_tasks")

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str = "") -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name or None)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            self._logger.warning("background_task_cancelled", task_name=task.get_name())
            return
        exc = task.exception()
        if exc is None:
            self._completed += 1
            return
        self._failures += 1
        self._logger.error(
            "background_task_failed",
            task_name=task.get_name(),
            error=str(exc),
            error_type=type(exc).__name__,
        )
        if self._error_channel is not None:
            try:
                self._error_channel(task.get_name(), exc)
            except Exception as channel_exc:
                self._logger.error("error_channel_failed", error=str(channel_exc))

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every pending task. Failures are already reported."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            self._logger.warning("background_tasks_abandoned", count=len(still_pending))
            for task in still_pending:
                task.cancel()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def completed(self) -> int:
        return self._completed
