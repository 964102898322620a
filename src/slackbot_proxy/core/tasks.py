"""Ownership of fire-and-forget asyncio tasks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from .logging import log_event
from .metrics import METRICS

log = logging.getLogger("slackbot_proxy.tasks")


class DetachedTasks:
    """Registry for background tasks the caller does not await.

    Running tasks are referenced until they finish so they cannot be garbage
    collected mid-flight. Failures are logged from a done callback instead of
    surfacing as "exception was never retrieved" warnings.
    """

    def __init__(self, svc: str = "proxy") -> None:
        self.svc = svc
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        METRICS.increment_counter("detached_task_failures_total")
        log.warning("Detached task %s failed: %s", task.get_name(), exc)
        log_event(
            self.svc,
            "tasks.detached",
            "detached task failed",
            level="ERROR",
            task=task.get_name(),
            error=repr(exc),
        )

    async def drain(self) -> None:
        """Wait for every running task; their failures are already logged."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float) -> int:
        """Let running tasks finish for up to ``timeout`` seconds, then cancel the rest.

        Returns how many tasks were still running when the timeout expired.
        """

        if self._tasks:
            await asyncio.wait(list(self._tasks), timeout=timeout)
        leftover = len(self._tasks)
        await self.cancel_all()
        return leftover

    async def cancel_all(self) -> None:
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:  # failure already reported by _on_done
                continue
