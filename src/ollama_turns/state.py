"""Streaming session state machine with validated transitions."""

from __future__ import annotations

from enum import Enum
import logging

LOGGER = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle of the single streaming session."""

    IDLE = "IDLE"
    STARTING = "STARTING"
    STREAMING = "STREAMING"
    COMPLETING = "COMPLETING"
    CANCELLING = "CANCELLING"
    FAILING = "FAILING"


_ALLOWED: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.STARTING}),
    SessionState.STARTING: frozenset(
        {SessionState.STREAMING, SessionState.CANCELLING, SessionState.FAILING}
    ),
    SessionState.STREAMING: frozenset(
        {SessionState.COMPLETING, SessionState.CANCELLING, SessionState.FAILING}
    ),
    SessionState.COMPLETING: frozenset({SessionState.IDLE}),
    SessionState.CANCELLING: frozenset({SessionState.IDLE}),
    SessionState.FAILING: frozenset({SessionState.IDLE}),
}


class InvalidTransition(RuntimeError):
    """Raised when a transition is not allowed from the current state."""


class SessionStateMachine:
    """Track the session state and reject transitions outside the lifecycle.

    Every state change happens on the single event-loop thread between
    suspension points, so no lock is taken.
    """

    def __init__(self) -> None:
        self._state = SessionState.IDLE

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        """True while a session holds the single-flight slot."""
        return self._state is not SessionState.IDLE

    def can_transition(self, new_state: SessionState) -> bool:
        return new_state in _ALLOWED[self._state]

    def transition_to(self, new_state: SessionState) -> SessionState:
        """Move to ``new_state``; raise :class:`InvalidTransition` if not allowed."""
        if not self.can_transition(new_state):
            raise InvalidTransition(
                f"Cannot move session from {self._state.value} to {new_state.value}."
            )
        old_state = self._state
        self._state = new_state
        LOGGER.debug(
            "session.state.transition",
            extra={
                "event": "session.state.transition",
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )
        return self._state

    def transition_if(self, expected_state: SessionState, new_state: SessionState) -> bool:
        """Transition only when the current state matches ``expected_state``."""
        if self._state is not expected_state or not self.can_transition(new_state):
            return False
        self.transition_to(new_state)
        return True
