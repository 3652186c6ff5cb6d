"""Top-level package for ollama-turns."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .actions import ChatActions, EditBranchPolicy
    from .config import ensure_config_dir, load_config
    from .context import build_context
    from .exceptions import OllamaTurnsError
    from .models import Chat, Message, ResponseAttempt, Turn
    from .session import StreamingSessionController
    from .store import ConversationStore
    from .transport import OllamaTransport
    from .versions import DisplayedVersions

__all__ = [
    "Chat",
    "ChatActions",
    "ConversationStore",
    "DisplayedVersions",
    "EditBranchPolicy",
    "Message",
    "OllamaTransport",
    "OllamaTurnsError",
    "ResponseAttempt",
    "StreamingSessionController",
    "Turn",
    "build_context",
    "ensure_config_dir",
    "load_config",
]

_EXPORTS = {
    "Chat": "models",
    "Message": "models",
    "ResponseAttempt": "models",
    "Turn": "models",
    "ChatActions": "actions",
    "EditBranchPolicy": "actions",
    "ConversationStore": "store",
    "DisplayedVersions": "versions",
    "OllamaTransport": "transport",
    "OllamaTurnsError": "exceptions",
    "StreamingSessionController": "session",
    "build_context": "context",
    "ensure_config_dir": "config",
    "load_config": "config",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``import ollama_turns`` stays cheap."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from importlib import import_module

    return getattr(import_module(f".{module_name}", __name__), name)
