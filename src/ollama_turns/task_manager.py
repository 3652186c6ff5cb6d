"""Lifecycle tracking for the stream task and fire-and-forget side tasks."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track named and anonymous asyncio tasks so they can be cancelled together.

    Named tasks occupy a slot (``"active_stream"``); registering a new task
    under an existing name replaces it without cancelling the old one.
    Anonymous tasks (title generation) remove themselves when done and have
    their exceptions logged instead of lost.
    """

    def __init__(self) -> None:
        self._named: dict[str, asyncio.Task[Any]] = {}
        self._anonymous: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop and track the resulting task."""
        task = asyncio.create_task(coro)
        self.add(task, name=name)
        return task

    def add(self, task: asyncio.Task[Any], name: str | None = None) -> None:
        if name is not None:
            self._named[name] = task
        else:
            self._anonymous.add(task)
            task.add_done_callback(self._anonymous.discard)
            task.add_done_callback(self._log_anonymous_exception)

    def _log_anonymous_exception(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning(
                "task.anonymous.exception",
                extra={
                    "event": "task.anonymous.exception",
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    def get(self, name: str) -> asyncio.Task[Any] | None:
        return self._named.get(name)

    def discard(self, name: str, task: asyncio.Task[Any] | None = None) -> None:
        """Stop tracking a named task without cancelling it.

        When ``task`` is given the slot is only cleared if it still holds that
        exact task.
        """
        if task is not None and self._named.get(name) is not task:
            return
        self._named.pop(name, None)

    async def cancel(self, name: str) -> None:
        """Cancel a named task and wait until it has finished unwinding."""
        task = self._named.pop(name, None)
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait({task})

    async def cancel_all(self) -> None:
        pending = [t for t in list(self._named.values()) + list(self._anonymous) if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
        self._named.clear()
        self._anonymous.clear()

    async def await_all(self) -> None:
        """Wait for every tracked task without cancelling any of them."""
        pending = [t for t in list(self._named.values()) + list(self._anonymous) if not t.done()]
        if pending:
            await asyncio.wait(pending)
