"""Tests for displayed-version pointers."""

from __future__ import annotations

import unittest

from ollama_turns.models import Chat, ResponseAttempt, Turn
from ollama_turns.versions import DisplayedVersions


def _turn(turn_id: str, attempts: int) -> Turn:
    return Turn(
        turn_id=turn_id,
        responses=tuple(
            ResponseAttempt(attempt_id=f"{turn_id}-a{i}", prompt_used="q") for i in range(attempts)
        ),
    )


class DisplayedVersionsTests(unittest.TestCase):
    def test_missing_entry_means_last_attempt(self) -> None:
        versions = DisplayedVersions()
        self.assertEqual(versions.index_for(_turn("t1", 3)), 2)

    def test_out_of_range_pointer_is_clamped(self) -> None:
        turn = _turn("t1", 2)
        versions = DisplayedVersions({"t1": 5})
        self.assertEqual(versions.index_for(turn), 1)
        self.assertEqual(versions.attempt_for(turn).attempt_id, "t1-a1")

        versions.show("t1", -3)
        self.assertEqual(versions.index_for(turn), 0)

    def test_turn_without_attempts(self) -> None:
        versions = DisplayedVersions({"t1": 0})
        empty = _turn("t1", 0)
        self.assertEqual(versions.index_for(empty), -1)
        self.assertIsNone(versions.attempt_for(empty))

    def test_show_last_and_forget_chat(self) -> None:
        first, second = _turn("t1", 3), _turn("t2", 1)
        versions = DisplayedVersions()
        versions.show_last(first)
        versions.show("t2", 0)
        self.assertEqual(versions.as_dict(), {"t1": 2, "t2": 0})

        versions.forget_chat(Chat(id="c", title="Chat 1", turns=(first, second)))
        self.assertNotIn("t1", versions)
        self.assertEqual(versions.as_dict(), {})


if __name__ == "__main__":
    unittest.main()
