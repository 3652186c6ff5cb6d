"""Immutable conversation entities: chats, turns, response attempts, messages.

Every entity is a frozen dataclass and sequences are tuples, so a transform
always produces new objects and a reference held by an in-flight stream never
observes a half-applied change.

The dict shape produced by ``to_dict`` is the persisted layout::

    {"id", "title", "turns": [{"turnId", "responses": [
        {"attemptId", "promptUsed",
         "assistantMessage": {"role", "content", "id"?, "isError"?}}]}]}
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import re
from typing import Any, Literal
from uuid import uuid4

Role = Literal["user", "assistant"]

DEFAULT_TITLE_PATTERN = re.compile(r"^Chat (\d+)$")


def new_id(prefix: str = "") -> str:
    """Return a fresh unique token, optionally prefixed (``turn-…``)."""
    token = uuid4().hex
    return f"{prefix}-{token}" if prefix else token


def is_default_title(title: str) -> bool:
    return DEFAULT_TITLE_PATTERN.match(title) is not None


@dataclass(frozen=True)
class Message:
    """A role-tagged message.

    ``temporary_id`` marks an assistant message still being written by a live
    stream; ``is_error`` marks a terminal failed attempt.
    """

    role: Role
    content: str = ""
    temporary_id: str | None = None
    is_error: bool = False

    @property
    def is_live(self) -> bool:
        return self.temporary_id is not None

    def to_api(self) -> dict[str, str]:
        """Return the ``{role, content}`` pair sent to the backend."""
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.temporary_id is not None:
            payload["id"] = self.temporary_id
        if self.is_error:
            payload["isError"] = True
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        role = data.get("role")
        temporary_id = data.get("id")
        return cls(
            role="user" if role == "user" else "assistant",
            content=str(data.get("content") or ""),
            temporary_id=str(temporary_id) if temporary_id else None,
            is_error=bool(data.get("isError", False)),
        )


def pending_message() -> Message:
    """Return the empty assistant message a new attempt starts with."""
    return Message(role="assistant", content="")


@dataclass(frozen=True)
class ResponseAttempt:
    """One generation trial for one prompt."""

    attempt_id: str
    prompt_used: str
    assistant_message: Message = field(default_factory=pending_message)

    @property
    def is_finalized(self) -> bool:
        return not self.assistant_message.is_live and not self.assistant_message.is_error

    @classmethod
    def pending(cls, prompt: str) -> ResponseAttempt:
        return cls(attempt_id=new_id(), prompt_used=prompt)

    def with_message(self, message: Message) -> ResponseAttempt:
        return replace(self, assistant_message=message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attemptId": self.attempt_id,
            "promptUsed": self.prompt_used,
            "assistantMessage": self.assistant_message.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResponseAttempt:
        message = data.get("assistantMessage")
        return cls(
            attempt_id=str(data.get("attemptId") or new_id()),
            prompt_used=str(data.get("promptUsed") or ""),
            assistant_message=Message.from_dict(message)
            if isinstance(message, dict)
            else pending_message(),
        )


@dataclass(frozen=True)
class Turn:
    """One user-prompt slot holding its attempts in chronological order."""

    turn_id: str
    responses: tuple[ResponseAttempt, ...] = ()

    @property
    def last_attempt(self) -> ResponseAttempt | None:
        return self.responses[-1] if self.responses else None

    def attempt_index(self, attempt_id: str) -> int:
        for index, attempt in enumerate(self.responses):
            if attempt.attempt_id == attempt_id:
                return index
        return -1

    def to_dict(self) -> dict[str, Any]:
        return {
            "turnId": self.turn_id,
            "responses": [attempt.to_dict() for attempt in self.responses],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Turn:
        raw_responses = data.get("responses")
        responses = tuple(
            ResponseAttempt.from_dict(item)
            for item in (raw_responses if isinstance(raw_responses, list) else [])
            if isinstance(item, dict)
        )
        return cls(turn_id=str(data.get("turnId") or new_id("turn")), responses=responses)


@dataclass(frozen=True)
class Chat:
    """A conversation: an ordered sequence of turns.

    ``orphaned_turn_ids`` lists turns left behind by an edit-resubmit under the
    ``keep`` branch policy; they stay in the tree but no longer feed context.
    """

    id: str
    title: str
    turns: tuple[Turn, ...] = ()
    orphaned_turn_ids: tuple[str, ...] = ()

    def turn_index(self, turn_id: str) -> int:
        for index, turn in enumerate(self.turns):
            if turn.turn_id == turn_id:
                return index
        return -1

    def find_turn(self, turn_id: str) -> Turn | None:
        index = self.turn_index(turn_id)
        return self.turns[index] if index != -1 else None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "turns": [turn.to_dict() for turn in self.turns],
        }
        if self.orphaned_turn_ids:
            payload["orphanedTurnIds"] = list(self.orphaned_turn_ids)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Chat:
        raw_turns = data.get("turns")
        turns = tuple(
            Turn.from_dict(item)
            for item in (raw_turns if isinstance(raw_turns, list) else [])
            if isinstance(item, dict)
        )
        raw_orphans = data.get("orphanedTurnIds")
        orphans = tuple(
            str(item) for item in (raw_orphans if isinstance(raw_orphans, list) else [])
        )
        chat_id = str(data.get("id") or new_id())
        title = data.get("title")
        return cls(
            id=chat_id,
            title=title if isinstance(title, str) and title else f"Chat {chat_id}",
            turns=turns,
            orphaned_turn_ids=orphans,
        )
