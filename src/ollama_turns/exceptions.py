"""Domain exception hierarchy for the turn-based Ollama chat client."""

from __future__ import annotations


class OllamaTurnsError(RuntimeError):
    """Base class for all domain-level chat errors."""


class ConfigValidationError(OllamaTurnsError):
    """Raised when configuration cannot be validated safely."""


class TransportError(OllamaTurnsError):
    """Base class for failures reported by the stream transport."""


class TransportUnreachable(TransportError):
    """Raised when the Ollama host cannot be reached."""


class TransportHTTPError(TransportError):
    """Raised when the Ollama host answers with a non-success status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamParseError(TransportError):
    """Raised when a streamed line cannot be decoded."""


class NoModelSelected(OllamaTurnsError):
    """Raised when a session is requested without a target model."""


class UserCancelled(OllamaTurnsError):
    """Signals a user-initiated cancellation; never shown as an error."""


class EmptyModelResponse(OllamaTurnsError):
    """Raised when a stream completes without any content."""


class ActionTargetMissing(OllamaTurnsError):
    """Raised when an action cannot find the turn or attempt it targets."""


class EditTargetMissing(ActionTargetMissing):
    """Raised when the turn being edited no longer exists."""


class RetryTargetMissing(ActionTargetMissing):
    """Raised when no errored attempt is available to retry."""


class RegenerateTargetMissing(ActionTargetMissing):
    """Raised when the turn or attempt to regenerate does not exist."""


class PersistenceError(OllamaTurnsError):
    """Raised when persistence operations fail."""


class PersistenceFormatError(PersistenceError):
    """Raised when a persisted payload cannot be decoded safely."""
