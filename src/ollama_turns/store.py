"""Conversation store: pure transforms over the chat collection.

Each transform takes the current ``tuple[Chat, ...]`` and returns a new one.
A lookup miss is a no-op that returns the *same* tuple object, so callers can
detect "nothing changed" with an identity check. Nothing here raises on a
missing id; callers verify existence before relying on side effects.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import replace
import logging
from typing import Any

from .models import DEFAULT_TITLE_PATTERN, Chat, Message, ResponseAttempt, Turn, new_id

LOGGER = logging.getLogger(__name__)

Chats = tuple[Chat, ...]
StoreListener = Callable[[Chats], None]


def _update_chat(chats: Chats, chat_id: str, update: Callable[[Chat], Chat]) -> Chats:
    for index, chat in enumerate(chats):
        if chat.id == chat_id:
            updated = update(chat)
            if updated is chat:
                return chats
            return chats[:index] + (updated,) + chats[index + 1 :]
    return chats


def _update_turn(
    chats: Chats, chat_id: str, turn_id: str, update: Callable[[Turn], Turn]
) -> Chats:
    def _apply(chat: Chat) -> Chat:
        index = chat.turn_index(turn_id)
        if index == -1:
            return chat
        turn = chat.turns[index]
        updated = update(turn)
        if updated is turn:
            return chat
        return replace(chat, turns=chat.turns[:index] + (updated,) + chat.turns[index + 1 :])

    return _update_chat(chats, chat_id, _apply)


def find_chat(chats: Chats, chat_id: str | None) -> Chat | None:
    if chat_id is None:
        return None
    for chat in chats:
        if chat.id == chat_id:
            return chat
    return None


def next_default_title(chats: Iterable[Chat]) -> str:
    """Return ``Chat {n}`` with n one above the highest default-title suffix."""
    highest = 0
    for chat in chats:
        match = DEFAULT_TITLE_PATTERN.match(chat.title)
        if match:
            highest = max(highest, int(match.group(1)))
    return f"Chat {highest + 1}"


def create_chat(chats: Chats) -> Chat:
    """Build a new empty chat; it is not part of the collection until added."""
    return Chat(id=new_id(), title=next_default_title(chats))


def add_chat(chats: Chats, chat: Chat) -> Chats:
    if find_chat(chats, chat.id) is not None:
        return chats
    return chats + (chat,)


def append_turn(chats: Chats, chat_id: str, turn: Turn) -> Chats:
    return _update_chat(chats, chat_id, lambda chat: replace(chat, turns=chat.turns + (turn,)))


def append_attempt(
    chats: Chats, chat_id: str, turn_id: str, attempt: ResponseAttempt
) -> Chats:
    return _update_turn(
        chats,
        chat_id,
        turn_id,
        lambda turn: replace(turn, responses=turn.responses + (attempt,)),
    )


def replace_assistant_message(
    chats: Chats,
    chat_id: str,
    turn_id: str,
    attempt_id: str,
    message: Message,
    expected_temporary_id: str | None = None,
) -> Chats:
    """Swap the assistant message of one attempt.

    With ``expected_temporary_id`` the write is rejected unless the attempt's
    current message still carries that temporary id.
    """

    def _apply(turn: Turn) -> Turn:
        index = turn.attempt_index(attempt_id)
        if index == -1:
            return turn
        attempt = turn.responses[index]
        if (
            expected_temporary_id is not None
            and attempt.assistant_message.temporary_id != expected_temporary_id
        ):
            return turn
        if attempt.assistant_message == message:
            return turn
        responses = (
            turn.responses[:index] + (attempt.with_message(message),) + turn.responses[index + 1 :]
        )
        return replace(turn, responses=responses)

    return _update_turn(chats, chat_id, turn_id, _apply)


def truncate_attempts(chats: Chats, chat_id: str, turn_id: str, keep_count: int) -> Chats:
    """Keep only the first ``keep_count`` attempts of a turn."""
    keep = max(0, keep_count)

    def _apply(turn: Turn) -> Turn:
        if len(turn.responses) <= keep:
            return turn
        return replace(turn, responses=turn.responses[:keep])

    return _update_turn(chats, chat_id, turn_id, _apply)


def remove_attempt(
    chats: Chats,
    chat_id: str,
    turn_id: str,
    attempt_id: str,
    expected_temporary_id: str | None = None,
) -> Chats:
    """Drop a single attempt; the turn itself is kept even if left empty."""

    def _apply(turn: Turn) -> Turn:
        index = turn.attempt_index(attempt_id)
        if index == -1:
            return turn
        if (
            expected_temporary_id is not None
            and turn.responses[index].assistant_message.temporary_id
            != expected_temporary_id
        ):
            return turn
        return replace(turn, responses=turn.responses[:index] + turn.responses[index + 1 :])

    return _update_turn(chats, chat_id, turn_id, _apply)


def truncate_turns(chats: Chats, chat_id: str, keep_count: int) -> Chats:
    """Keep only the first ``keep_count`` turns of a chat."""
    keep = max(0, keep_count)

    def _apply(chat: Chat) -> Chat:
        if len(chat.turns) <= keep:
            return chat
        kept = chat.turns[:keep]
        kept_ids = {turn.turn_id for turn in kept}
        orphans = tuple(tid for tid in chat.orphaned_turn_ids if tid in kept_ids)
        return replace(chat, turns=kept, orphaned_turn_ids=orphans)

    return _update_chat(chats, chat_id, _apply)


def mark_orphaned(chats: Chats, chat_id: str, turn_ids: Iterable[str]) -> Chats:
    """Flag turns as unreachable from the conversation's current context."""
    new_ids = list(turn_ids)

    def _apply(chat: Chat) -> Chat:
        known = {turn.turn_id for turn in chat.turns}
        merged = list(chat.orphaned_turn_ids)
        for turn_id in new_ids:
            if turn_id in known and turn_id not in merged:
                merged.append(turn_id)
        if len(merged) == len(chat.orphaned_turn_ids):
            return chat
        return replace(chat, orphaned_turn_ids=tuple(merged))

    return _update_chat(chats, chat_id, _apply)


def remove_chat(chats: Chats, chat_id: str) -> Chats:
    if find_chat(chats, chat_id) is None:
        return chats
    return tuple(chat for chat in chats if chat.id != chat_id)


def rename_chat(chats: Chats, chat_id: str, title: str) -> Chats:
    """Rename a chat; a blank title falls back to ``Chat {id}``."""
    normalized = title.strip() or f"Chat {chat_id}"

    def _apply(chat: Chat) -> Chat:
        if chat.title == normalized:
            return chat
        return replace(chat, title=normalized)

    return _update_chat(chats, chat_id, _apply)


class ConversationStore:
    """Hold the canonical chat collection and notify listeners on change.

    All writes go through :meth:`apply` with one of the pure transforms above.
    Listeners (the persistence snapshot, a UI) run synchronously after each
    effective change; a failing listener is logged and never breaks the write.
    """

    def __init__(self, chats: Iterable[Chat] = ()) -> None:
        self._chats: Chats = tuple(chats)
        self._listeners: list[StoreListener] = []

    @property
    def chats(self) -> Chats:
        return self._chats

    def get(self, chat_id: str | None) -> Chat | None:
        return find_chat(self._chats, chat_id)

    def subscribe(self, listener: StoreListener) -> None:
        self._listeners.append(listener)

    def apply(self, transform: Callable[..., Chats], *args: Any, **kwargs: Any) -> bool:
        """Run ``transform(chats, *args, **kwargs)``; return whether anything changed."""
        updated = transform(self._chats, *args, **kwargs)
        if updated is self._chats:
            return False
        self._chats = updated
        for listener in list(self._listeners):
            try:
                listener(updated)
            except Exception as exc:  # noqa: BLE001 - listeners are best effort.
                LOGGER.warning(
                    "store.listener.failed",
                    extra={
                        "event": "store.listener.failed",
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
        return True
