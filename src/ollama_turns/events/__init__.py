"""Event bus used to announce streaming session lifecycle changes."""

from .bus import (
    CHAT_TITLED,
    SESSION_CANCELLED,
    SESSION_COMPLETED,
    SESSION_FAILED,
    SESSION_STARTED,
    Event,
    EventBus,
)

__all__ = [
    "CHAT_TITLED",
    "SESSION_CANCELLED",
    "SESSION_COMPLETED",
    "SESSION_FAILED",
    "SESSION_STARTED",
    "Event",
    "EventBus",
]
