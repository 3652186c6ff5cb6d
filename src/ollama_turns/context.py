"""Assemble the role-tagged message list submitted to the backend."""

from __future__ import annotations

from collections.abc import Collection

from .models import Chat, Message


def build_context(
    chat: Chat,
    upto_turn_index: int,
    trailing_prompt: str,
    skip_turn_ids: Collection[str] = (),
) -> list[Message]:
    """Return context for the turns before ``upto_turn_index`` plus a new prompt.

    Each earlier turn contributes its *last* attempt (the settled one, not the
    displayed one) as a user/assistant pair. A turn whose last attempt errored,
    or that has no attempts, contributes nothing. Turns listed in
    ``skip_turn_ids`` (orphaned branches) are left out as well.
    """
    messages: list[Message] = []
    for turn in chat.turns[: max(0, upto_turn_index)]:
        if turn.turn_id in skip_turn_ids:
            continue
        attempt = turn.last_attempt
        if attempt is None or attempt.assistant_message.is_error:
            continue
        messages.append(Message(role="user", content=attempt.prompt_used))
        messages.append(attempt.assistant_message)
    messages.append(Message(role="user", content=trailing_prompt))
    return messages
