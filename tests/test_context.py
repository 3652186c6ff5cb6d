"""Tests for context assembly."""

from __future__ import annotations

import unittest

from ollama_turns.context import build_context
from ollama_turns.models import Chat, Message, ResponseAttempt, Turn


def _attempt(prompt: str, answer: str, is_error: bool = False) -> ResponseAttempt:
    return ResponseAttempt(
        attempt_id=f"{prompt}-{answer}",
        prompt_used=prompt,
        assistant_message=Message(role="assistant", content=answer, is_error=is_error),
    )


class BuildContextTests(unittest.TestCase):
    def setUp(self) -> None:
        self.chat = Chat(
            id="c1",
            title="Chat 1",
            turns=(
                Turn(turn_id="t1", responses=(_attempt("p1", "a1"),)),
                Turn(turn_id="t2", responses=(_attempt("p2", "failed", is_error=True),)),
                Turn(turn_id="t3", responses=(_attempt("p3", "a3"),)),
            ),
        )

    def test_errored_turn_is_excluded_from_prefix(self) -> None:
        context = build_context(self.chat, 2, "p3")
        self.assertEqual(
            context,
            [
                Message(role="user", content="p1"),
                Message(role="assistant", content="a1"),
                Message(role="user", content="p3"),
            ],
        )

    def test_uses_last_attempt_not_displayed_one(self) -> None:
        turn = Turn(turn_id="t1", responses=(_attempt("old", "first"), _attempt("new", "second")))
        chat = Chat(id="c", title="Chat 1", turns=(turn,))
        context = build_context(chat, 1, "next")
        self.assertEqual([m.content for m in context], ["new", "second", "next"])

    def test_first_turn_gets_only_the_prompt(self) -> None:
        self.assertEqual(build_context(self.chat, 0, "hi"), [Message(role="user", content="hi")])

    def test_skipped_and_empty_turns_contribute_nothing(self) -> None:
        chat = Chat(
            id="c",
            title="Chat 1",
            turns=self.chat.turns + (Turn(turn_id="t4"),),
        )
        context = build_context(chat, 4, "p5", skip_turn_ids={"t1"})
        self.assertEqual([m.content for m in context], ["p3", "a3", "p5"])


if __name__ == "__main__":
    unittest.main()
