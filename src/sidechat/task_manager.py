"""Lifecycle tracking for background asyncio tasks keyed by name."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track named background tasks so they can be cancelled as a group.

    Finished tasks drop out of tracking on their own; an exception that
    escapes a task is logged rather than lost with the task object.
    """

    def __init__(self, label: str = "task") -> None:
        self._label = label
        self._named: dict[str, asyncio.Task[Any]] = {}

    def __len__(self) -> int:
        return sum(1 for task in self._named.values() if not task.done())

    def __contains__(self, name: object) -> bool:
        return name in self._named

    def spawn(self, name: str, coro: Any) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop and track it under ``name``.

        A previous task with the same name is cancelled first.
        """
        previous = self._named.pop(name, None)
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.get_running_loop().create_task(coro, name=f"{self._label}:{name}")
        self._named[name] = task
        task.add_done_callback(lambda done, key=name: self._on_done(key, done))
        return task

    def _on_done(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._named.get(name) is task:
            del self._named[name]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning(
                "task.exception",
                extra={
                    "event": "task.exception",
                    "label": self._label,
                    "task": name,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    def get(self, name: str) -> asyncio.Task[Any] | None:
        """Return the tracked task or ``None`` once it finished or was never added."""
        return self._named.get(name)

    async def cancel(self, name: str) -> bool:
        """Cancel a named task and await it. Returns True when something was cancelled."""
        task = self._named.pop(name, None)
        if task is None or task.done():
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return True

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        tasks = [task for task in self._named.values() if not task.done()]
        self._named.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
