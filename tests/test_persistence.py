"""Tests for chat snapshot persistence and Markdown export."""

from __future__ import annotations

import json
import os
from pathlib import Path
import stat
import tempfile
import unittest

from ollama_turns.context import build_context
from ollama_turns.models import Chat, Message, ResponseAttempt, Turn
from ollama_turns.persistence import ChatPersistence
from ollama_turns.versions import DisplayedVersions


def _chat() -> Chat:
    turn = Turn(
        turn_id="t1",
        responses=(
            ResponseAttempt(
                attempt_id="a1",
                prompt_used="What is a tide?",
                assistant_message=Message(role="assistant", content="Timeout", is_error=True),
            ),
            ResponseAttempt(
                attempt_id="a2",
                prompt_used="What is a tide?",
                assistant_message=Message(role="assistant", content="A rise of the sea."),
            ),
        ),
    )
    return Chat(id="c1", title="Ocean Q&A", turns=(turn,))


class ChatPersistenceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)
        self.path = self.base / "state" / "state.json"
        self.persistence = ChatPersistence(enabled=True, state_path=str(self.path))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_save_then_load(self) -> None:
        self.assertTrue(self.persistence.save([_chat()], "llama3.2"))
        state = self.persistence.load()
        self.assertEqual(state.chats, (_chat(),))
        self.assertEqual(state.selected_model, "llama3.2")

        payload = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(payload["selectedModel"], "llama3.2")
        self.assertEqual(payload["chats"][0]["turns"][0]["turnId"], "t1")

    @unittest.skipUnless(os.name == "posix", "POSIX permissions only")
    def test_snapshot_is_private(self) -> None:
        self.persistence.save([_chat()])
        self.assertEqual(stat.S_IMODE(self.path.stat().st_mode), 0o600)
        self.assertEqual(stat.S_IMODE(self.path.parent.stat().st_mode), 0o700)

    def test_bare_list_layout_is_accepted(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text(json.dumps([_chat().to_dict()]), encoding="utf-8")
        state = self.persistence.load()
        self.assertEqual(state.chats[0].title, "Ocean Q&A")
        self.assertEqual(state.selected_model, "")

    def test_flat_message_layout_is_discarded(self) -> None:
        self.path.parent.mkdir(parents=True)
        legacy = {"chats": [{"id": "1", "title": "Old", "messages": [{"role": "user"}]}]}
        self.path.write_text(json.dumps(legacy), encoding="utf-8")
        with self.assertLogs("ollama_turns.persistence", level="WARNING") as logs:
            state = self.persistence.load()
        self.assertEqual(state.chats, ())
        self.assertIn("persistence.load.discarded", logs.output[0])

    def test_corrupt_json_is_discarded(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json", encoding="utf-8")
        with self.assertLogs("ollama_turns.persistence", level="WARNING"):
            self.assertEqual(self.persistence.load().chats, ())

    def test_undecodable_bytes_are_discarded(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_bytes(b'{"chats": [\xff\xfe]}')
        with self.assertLogs("ollama_turns.persistence", level="WARNING") as logs:
            state = self.persistence.load()
        self.assertEqual(state.chats, ())
        self.assertIn("persistence.load.discarded", logs.output[0])

    def test_attempts_saved_mid_stream_are_settled_on_load(self) -> None:
        live_text = ResponseAttempt(
            attempt_id="a1",
            prompt_used="Hi",
            assistant_message=Message(
                role="assistant", content="Half an ans", temporary_id="bot-1"
            ),
        )
        live_empty = ResponseAttempt(
            attempt_id="a2",
            prompt_used="Again",
            assistant_message=Message(role="assistant", content="", temporary_id="bot-2"),
        )
        chat = Chat(
            id="c1",
            title="Chat 1",
            turns=(
                Turn(turn_id="t1", responses=(live_text,)),
                Turn(turn_id="t2", responses=(live_empty,)),
            ),
        )
        self.persistence.save([chat])

        loaded = self.persistence.load().chats[0]
        self.assertEqual(
            loaded.turns[0].responses[0].assistant_message,
            Message(role="assistant", content="Half an ans"),
        )
        self.assertEqual(loaded.turns[1].responses, ())
        self.assertEqual(
            build_context(loaded, 2, "Next"),
            [
                Message(role="user", content="Hi"),
                Message(role="assistant", content="Half an ans"),
                Message(role="user", content="Next"),
            ],
        )

    def test_disabled_persistence_reads_and_writes_nothing(self) -> None:
        disabled = ChatPersistence(enabled=False, state_path=str(self.path))
        self.assertFalse(disabled.save([_chat()]))
        self.assertFalse(self.path.exists())
        self.assertEqual(disabled.load().chats, ())

    def test_save_failure_is_logged_not_raised(self) -> None:
        blocker = self.base / "blocker"
        blocker.write_text("file, not a directory", encoding="utf-8")
        broken = ChatPersistence(enabled=True, state_path=str(blocker / "state.json"))
        with self.assertLogs("ollama_turns.persistence", level="WARNING") as logs:
            self.assertFalse(broken.save([_chat()]))
        self.assertIn("persistence.save.failed", logs.output[0])

    def test_export_markdown_uses_displayed_versions(self) -> None:
        versions = DisplayedVersions({"t1": 0})
        output = self.persistence.export_markdown(_chat(), versions, directory=self.base / "out")
        content = output.read_text(encoding="utf-8")
        self.assertTrue(output.name.endswith("-ocean-q-a.md"))
        self.assertIn("# Ocean Q&A", content)
        self.assertIn("## Turn 1 (version 1/2)", content)
        self.assertIn("**Assistant (error)**", content)
        self.assertIn("Timeout", content)
        self.assertNotIn("A rise of the sea.", content)

        latest = self.persistence.export_markdown(_chat(), directory=self.base / "out2")
        self.assertIn("A rise of the sea.", latest.read_text(encoding="utf-8"))


if __name__ == "__main__":
    unittest.main()
