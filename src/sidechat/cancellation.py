"""Cooperative cancellation token shared by every step of one generation."""

from __future__ import annotations

import asyncio

from .exceptions import GenerationCancelled


class CancellationToken:
    """One-shot signal checked at each suspension point of a generation.

    A token is never reset; the session creates a fresh one per task.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "Stopped by user") -> None:
        """Signal the token. Repeated calls keep the first reason."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled(self._reason)

    async def wait(self) -> None:
        """Block until the token is signaled."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless signaled first.

        Returns True when the sleep was cut short by cancellation.
        """
        if self._event.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True
