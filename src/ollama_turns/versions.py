"""Per-turn display pointers selecting which attempt of a turn is shown."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from .models import Chat, ResponseAttempt, Turn


class DisplayedVersions:
    """Map ``turn_id -> attempt index`` used for presentation only.

    Entries may go stale when attempts are removed, so every read clamps the
    stored index into ``[0, len(responses) - 1]``. A missing entry means "the
    last attempt".
    """

    def __init__(self, initial: Mapping[str, int] | None = None) -> None:
        self._indices: dict[str, int] = dict(initial or {})

    def __contains__(self, turn_id: object) -> bool:
        return turn_id in self._indices

    def as_dict(self) -> dict[str, int]:
        return dict(self._indices)

    def show(self, turn_id: str, index: int) -> None:
        self._indices[turn_id] = int(index)

    def show_last(self, turn: Turn) -> None:
        """Point the turn at its newest attempt."""
        self._indices[turn.turn_id] = max(0, len(turn.responses) - 1)

    def forget(self, turn_ids: Iterable[str]) -> None:
        for turn_id in turn_ids:
            self._indices.pop(turn_id, None)

    def forget_chat(self, chat: Chat) -> None:
        self.forget(turn.turn_id for turn in chat.turns)

    def index_for(self, turn: Turn) -> int:
        """Return the clamped displayed index, or -1 for a turn without attempts."""
        if not turn.responses:
            return -1
        last = len(turn.responses) - 1
        raw = self._indices.get(turn.turn_id, last)
        return min(max(raw, 0), last)

    def attempt_for(self, turn: Turn) -> ResponseAttempt | None:
        index = self.index_for(turn)
        return turn.responses[index] if index != -1 else None
