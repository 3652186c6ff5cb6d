"""Publish/subscribe bus for session lifecycle notifications.

Usage:
    bus = EventBus()

    async def on_failed(event):
        print(event.data["error"])

    bus.subscribe(SESSION_FAILED, on_failed)
    await bus.publish(SESSION_FAILED, {"error": "Could not connect."})
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)

SESSION_STARTED = "session.started"
SESSION_COMPLETED = "session.completed"
SESSION_FAILED = "session.failed"
SESSION_CANCELLED = "session.cancelled"
CHAT_TITLED = "chat.titled"


@dataclass
class Event:
    """Event data container."""

    name: str
    data: dict[str, Any]
    source: str | None = None


class EventBus:
    """Deliver events to sync or async handlers registered by name.

    A failing handler is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable[[Event], Any]]] = {}

    def subscribe(self, event_name: str, handler: Callable[[Event], Any]) -> None:
        self._subscribers.setdefault(event_name, []).append(handler)

    def unsubscribe(self, event_name: str, handler: Callable[[Event], Any]) -> None:
        handlers = self._subscribers.get(event_name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def publish(
        self, event_name: str, data: dict[str, Any], source: str | None = None
    ) -> None:
        event = Event(name=event_name, data=data, source=source)
        for handler in list(self._subscribers.get(event_name, [])):
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as exc:  # noqa: BLE001 - subscribers must not break publishers.
                LOGGER.error(
                    "events.handler.failed",
                    extra={
                        "event": "events.handler.failed",
                        "event_name": event_name,
                        "error": str(exc),
                    },
                )

    def clear(self, event_name: str | None = None) -> None:
        if event_name:
            self._subscribers.pop(event_name, None)
        else:
            self._subscribers.clear()
