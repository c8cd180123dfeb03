"""Publish/subscribe channel between the session and whatever renders it.

Usage:
    bus = EventBus()

    async def on_outcome(event):
        render(event.data["outcome"])

    bus.subscribe(GENERATION_OUTCOME, on_outcome)
    await bus.publish(GENERATION_OUTCOME, {"outcome": outcome})
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import inspect
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


@dataclass
class Event:
    """Event data container."""

    name: str
    data: dict[str, Any]
    source: str | None = None


class EventBus:
    """Deliver named events to sync or async handlers in subscription order."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable]] = {}

    def subscribe(self, event_name: str, handler: Callable) -> None:
        """Subscribe to an event.

        Args:
            event_name: Event to listen for (e.g., "generation.outcome")
            handler: Sync or async callable receiving the ``Event``
        """
        self._subscribers.setdefault(event_name, []).append(handler)
        LOGGER.debug(
            "events.subscribed",
            extra={"event": "events.subscribed", "event_name": event_name},
        )

    def unsubscribe(self, event_name: str, handler: Callable) -> None:
        handlers = self._subscribers.get(event_name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, event_name: str) -> int:
        return len(self._subscribers.get(event_name, []))

    async def publish(
        self, event_name: str, data: dict[str, Any], source: str | None = None
    ) -> None:
        """Publish an event to all subscribers.

        A failing handler is logged and skipped; the remaining handlers and
        the publisher are unaffected.
        """
        event = Event(name=event_name, data=data, source=source)
        for handler in list(self._subscribers.get(event_name, [])):
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception:  # noqa: BLE001 - a broken presenter must not break generation.
                LOGGER.exception(
                    "events.handler.failed",
                    extra={"event": "events.handler.failed", "event_name": event_name},
                )

    def clear(self, event_name: str | None = None) -> None:
        """Clear subscribers for ``event_name``, or all of them."""
        if event_name:
            self._subscribers.pop(event_name, None)
        else:
            self._subscribers.clear()
