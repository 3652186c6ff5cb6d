"""Tests for domain exception hierarchy."""

from __future__ import annotations

import unittest

from ollama_turns.exceptions import (
    ActionTargetMissing,
    ConfigValidationError,
    EditTargetMissing,
    EmptyModelResponse,
    NoModelSelected,
    OllamaTurnsError,
    PersistenceError,
    PersistenceFormatError,
    RegenerateTargetMissing,
    RetryTargetMissing,
    StreamParseError,
    TransportError,
    TransportHTTPError,
    TransportUnreachable,
    UserCancelled,
)


class ExceptionHierarchyTests(unittest.TestCase):
    """Validate exception inheritance contract."""

    def test_every_kind_is_a_domain_error(self) -> None:
        for kind in (
            ConfigValidationError,
            NoModelSelected,
            UserCancelled,
            EmptyModelResponse,
            PersistenceFormatError,
            TransportHTTPError,
            RetryTargetMissing,
        ):
            self.assertTrue(issubclass(kind, OllamaTurnsError), kind)
        self.assertTrue(issubclass(OllamaTurnsError, RuntimeError))

    def test_transport_family(self) -> None:
        for kind in (TransportUnreachable, TransportHTTPError, StreamParseError):
            self.assertTrue(issubclass(kind, TransportError))
        self.assertFalse(issubclass(UserCancelled, TransportError))

    def test_action_family(self) -> None:
        for kind in (EditTargetMissing, RetryTargetMissing, RegenerateTargetMissing):
            self.assertTrue(issubclass(kind, ActionTargetMissing))
        self.assertTrue(issubclass(PersistenceFormatError, PersistenceError))

    def test_http_error_carries_status(self) -> None:
        error = TransportHTTPError("Server error: 500", status_code=500)
        self.assertEqual(str(error), "Server error: 500")
        self.assertEqual(error.status_code, 500)
        self.assertIsNone(TransportHTTPError("x").status_code)


if __name__ == "__main__":
    unittest.main()
