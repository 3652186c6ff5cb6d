"""Tests for the logging bootstrap and structured log events."""

from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path
import unittest

import structlog

from ollama_turns.logging_utils import configure_logging
from ollama_turns.state import SessionState, SessionStateMachine


def _record(name: str, msg: str = "ok") -> logging.LogRecord:
    return logging.LogRecord(
        name=name,
        level=logging.WARNING,
        pathname="",
        lineno=0,
        msg=msg,
        args=(),
        exc_info=None,
    )


class ConfigureLoggingTests(unittest.TestCase):
    """Validate configure_logging() handler setup behavior."""

    def setUp(self) -> None:
        root = logging.getLogger()
        self._original_level = root.level
        self._original_handlers = list(root.handlers)

    def tearDown(self) -> None:
        root = logging.getLogger()
        for handler in root.handlers:
            if handler not in self._original_handlers:
                handler.close()
        root.setLevel(self._original_level)
        root.handlers.clear()
        root.handlers.extend(self._original_handlers)

    def _stream_handlers(self) -> list[logging.Handler]:
        return [
            h
            for h in logging.getLogger().handlers
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        ]

    def test_structured_mode_uses_structlog_formatter(self) -> None:
        configure_logging({"level": "DEBUG", "structured": True, "log_to_file": False})
        formatters = [h.formatter for h in logging.getLogger().handlers]
        self.assertTrue(
            any(isinstance(f, structlog.stdlib.ProcessorFormatter) for f in formatters)
        )

    def test_plain_mode_uses_stdlib_formatter(self) -> None:
        configure_logging({"level": "INFO", "structured": False, "log_to_file": False})
        formatters = [h.formatter for h in logging.getLogger().handlers]
        self.assertFalse(
            any(isinstance(f, structlog.stdlib.ProcessorFormatter) for f in formatters)
        )
        self.assertEqual(logging.getLogger().level, logging.INFO)

    def test_stderr_only_shows_app_records_at_warning(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        handler = self._stream_handlers()[0]
        self.assertEqual(handler.level, logging.WARNING)
        self.assertTrue(handler.filter(_record("ollama_turns.session")))
        self.assertFalse(handler.filter(_record("httpx")))

    def test_noisy_libraries_set_to_warning(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        for name in ("httpx", "httpcore", "ollama"):
            self.assertEqual(logging.getLogger(name).level, logging.WARNING)

    def test_structured_file_output_carries_event_fields(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            log_path = Path(tmp) / "logs" / "app.log"
            configure_logging(
                {
                    "level": "DEBUG",
                    "structured": True,
                    "log_to_file": True,
                    "log_file_path": str(log_path),
                }
            )
            machine = SessionStateMachine()
            machine.transition_to(SessionState.STARTING)
            for handler in logging.getLogger().handlers:
                handler.flush()

            lines = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
            transition = next(
                item for item in lines if item.get("event") == "session.state.transition"
            )
            self.assertEqual(transition["logger"], "ollama_turns.state")
            self.assertEqual(transition["level"], "debug")


if __name__ == "__main__":
    unittest.main()
