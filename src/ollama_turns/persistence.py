"""Snapshot persistence for the chat collection and the selected model."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
import json
import logging
import os
from pathlib import Path
import re
from typing import Any

from .exceptions import PersistenceError, PersistenceFormatError
from .models import Chat, ResponseAttempt, Turn
from .versions import DisplayedVersions

LOGGER = logging.getLogger(__name__)

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class PersistedState:
    chats: tuple[Chat, ...] = ()
    selected_model: str = ""


def _slugify(title: str) -> str:
    slug = _SLUG_PATTERN.sub("-", title.lower()).strip("-")
    return slug[:48] or "chat"


def _settle_live_attempts(chat: Chat) -> Chat:
    """Finalize attempts saved mid-stream: keep text as an answer, drop empty ones."""
    turns: list[Turn] = []
    changed = False
    for turn in chat.turns:
        responses: list[ResponseAttempt] = []
        for attempt in turn.responses:
            message = attempt.assistant_message
            if not message.is_live:
                responses.append(attempt)
                continue
            changed = True
            if message.content.strip():
                responses.append(attempt.with_message(replace(message, temporary_id=None)))
        turns.append(replace(turn, responses=tuple(responses)))
    return replace(chat, turns=tuple(turns)) if changed else chat


class ChatPersistence:
    """Read and write the whole chat collection as one JSON document.

    The document is ``{"chats": [...], "selectedModel": "..."}``; a bare list
    of chats is still accepted on load. Writes are best effort: a failing save
    is logged and never interrupts the caller.
    """

    def __init__(self, enabled: bool, state_path: str) -> None:
        self.enabled = enabled
        self.state_path = Path(state_path).expanduser()

    def _enforce_permissions(self, path: Path, mode: int = 0o600) -> None:
        """Set POSIX permissions on a file or directory; failures are logged."""
        if os.name != "posix":
            return
        try:
            path.chmod(mode)
        except OSError as exc:
            LOGGER.warning(
                "persistence.permissions.failed",
                extra={
                    "event": "persistence.permissions.failed",
                    "path": str(path),
                    "error": str(exc),
                },
            )

    def _ensure_parent(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._enforce_permissions(path.parent, 0o700)

    @staticmethod
    def decode(payload: Any) -> PersistedState:
        """Turn a decoded JSON document into chats plus the selected model.

        Raises :class:`PersistenceFormatError` when the document has the
        wrong shape, including a first chat without ``turns`` (the flat
        message layout this project no longer reads).
        """
        selected_model = ""
        if isinstance(payload, dict):
            raw_chats = payload.get("chats", [])
            model_value = payload.get("selectedModel", "")
            if isinstance(model_value, str):
                selected_model = model_value.strip()
        else:
            raw_chats = payload
        if not isinstance(raw_chats, list):
            raise PersistenceFormatError("Saved chats must be a list.")
        if raw_chats and (not isinstance(raw_chats[0], dict) or "turns" not in raw_chats[0]):
            raise PersistenceFormatError("Saved chats use an incompatible layout.")
        try:
            chats = tuple(_settle_live_attempts(Chat.from_dict(item)) for item in raw_chats)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise PersistenceFormatError(f"Saved chat is invalid: {exc}") from exc
        return PersistedState(chats=chats, selected_model=selected_model)

    @staticmethod
    def encode(chats: Iterable[Chat], selected_model: str = "") -> dict[str, Any]:
        return {
            "chats": [chat.to_dict() for chat in chats],
            "selectedModel": selected_model,
        }

    def load(self) -> PersistedState:
        """Load the saved state; unreadable or incompatible data yields an empty state."""
        if not self.enabled or not self.state_path.exists():
            return PersistedState()
        try:
            payload = json.loads(self.state_path.read_text(encoding="utf-8"))
            return self.decode(payload)
        except (OSError, ValueError, PersistenceFormatError) as exc:
            LOGGER.warning(
                "persistence.load.discarded",
                extra={
                    "event": "persistence.load.discarded",
                    "path": str(self.state_path),
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            return PersistedState()

    def save(self, chats: Iterable[Chat], selected_model: str = "") -> bool:
        """Write a full snapshot; returns False when nothing was written."""
        if not self.enabled:
            return False
        try:
            self._ensure_parent(self.state_path)
            temp_path = self.state_path.with_suffix(self.state_path.suffix + ".tmp")
            temp_path.write_text(
                json.dumps(self.encode(chats, selected_model), ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            self._enforce_permissions(temp_path)
            temp_path.replace(self.state_path)
        except OSError as exc:
            LOGGER.warning(
                "persistence.save.failed",
                extra={
                    "event": "persistence.save.failed",
                    "path": str(self.state_path),
                    "error": str(exc),
                },
            )
            return False
        return True

    def export_markdown(
        self,
        chat: Chat,
        versions: DisplayedVersions | None = None,
        directory: str | Path | None = None,
    ) -> Path:
        """Export the displayed path of ``chat`` as a Markdown transcript."""
        target_dir = (
            Path(directory).expanduser() if directory is not None else self.state_path.parent
        )
        displayed = versions or DisplayedVersions()
        lines = [f"# {chat.title}", ""]
        for number, turn in enumerate(chat.turns, start=1):
            attempt = displayed.attempt_for(turn)
            if attempt is None:
                continue
            heading = f"## Turn {number}"
            if len(turn.responses) > 1:
                heading += f" (version {displayed.index_for(turn) + 1}/{len(turn.responses)})"
            if turn.turn_id in chat.orphaned_turn_ids:
                heading += " [orphaned]"
            lines.extend([heading, "", "**User**", "", attempt.prompt_used.strip(), ""])
            reply = attempt.assistant_message
            label = "**Assistant (error)**" if reply.is_error else "**Assistant**"
            lines.extend([label, "", reply.content.strip(), ""])

        stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        target = target_dir / f"{stamp}-{_slugify(chat.title)}.md"
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            target.write_text("\n".join(lines).strip() + "\n", encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Could not export chat: {exc}") from exc
        self._enforce_permissions(target)
        return target
