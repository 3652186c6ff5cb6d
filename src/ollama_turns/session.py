"""Streaming session controller: single-flight streams written into the store.

At most one session is live process-wide. A session is identified by a
:class:`StreamCorrelation` that pins the exact attempt its fragments may write
to. Every write first checks that the session is still the live one (the
staleness guard), and the store write itself is rejected unless the target
message still carries the session's temporary id.

Lifecycle::

    IDLE -> STARTING -> STREAMING -> COMPLETING | CANCELLING | FAILING -> IDLE
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
import logging
from typing import Any

from .events import (
    CHAT_TITLED,
    SESSION_CANCELLED,
    SESSION_COMPLETED,
    SESSION_FAILED,
    SESSION_STARTED,
    EventBus,
)
from .exceptions import EmptyModelResponse, NoModelSelected, OllamaTurnsError
from .models import Message, is_default_title, new_id
from .state import SessionState, SessionStateMachine
from .store import ConversationStore, remove_attempt, rename_chat, replace_assistant_message
from .task_manager import TaskManager
from .titles import FALLBACK_TITLE, pick_title_model
from .transport import CancellationToken, OllamaTransport

LOGGER = logging.getLogger(__name__)

ACTIVE_STREAM = "active_stream"
NO_MODEL_MESSAGE = "No model selected."
EMPTY_RESPONSE_MESSAGE = "Model did not respond."


@dataclass(frozen=True)
class StreamCorrelation:
    """Identifies the one attempt a live stream is allowed to write to."""

    chat_id: str
    turn_id: str
    attempt_id: str
    temporary_id: str
    epoch: int


@dataclass
class _Session:
    correlation: StreamCorrelation
    model: str
    cancel: CancellationToken = field(default_factory=CancellationToken)
    accumulated: str = ""
    task: asyncio.Task[Any] | None = None


class StreamingSessionController:
    """Own the single session slot and drive the transport into the store."""

    def __init__(
        self,
        store: ConversationStore,
        transport: OllamaTransport,
        *,
        task_manager: TaskManager | None = None,
        events: EventBus | None = None,
        generate_titles: bool = True,
        title_model_hints: Sequence[str] = (),
    ) -> None:
        self.store = store
        self.transport = transport
        self.tasks = task_manager or TaskManager()
        self.events = events or EventBus()
        self.generate_titles = generate_titles
        self.title_model_hints = tuple(title_model_hints)
        self.available_models: list[str] = []
        self.error = ""
        self._machine = SessionStateMachine()
        self._session: _Session | None = None
        self._live_epoch: int | None = None
        self._epoch = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def state(self) -> SessionState:
        return self._machine.state

    @property
    def is_loading(self) -> bool:
        return self._machine.is_active

    @property
    def active(self) -> StreamCorrelation | None:
        """The live correlation token, or ``None`` when no stream may write."""
        session = self._session
        if session is None or self._live_epoch != session.correlation.epoch:
            return None
        return session.correlation

    def report_error(self, message: str) -> None:
        self.error = message

    def clear_error(self) -> None:
        self.error = ""

    async def start(
        self,
        chat_id: str,
        turn_id: str,
        attempt_id: str,
        context: Sequence[Message],
        model: str,
    ) -> StreamCorrelation | None:
        """Start streaming into an existing pending attempt.

        Any live session is cancelled first. Returns ``None`` when the target
        attempt vanished while the previous session was being cancelled.
        """
        normalized_model = model.strip()
        if not normalized_model:
            self.report_error(NO_MODEL_MESSAGE)
            raise NoModelSelected(NO_MODEL_MESSAGE)

        while self._session is not None:
            await self.cancel()

        self._machine.transition_to(SessionState.STARTING)
        self._idle.clear()
        self._epoch += 1
        correlation = StreamCorrelation(
            chat_id=chat_id,
            turn_id=turn_id,
            attempt_id=attempt_id,
            temporary_id=new_id("bot"),
            epoch=self._epoch,
        )
        session = _Session(correlation=correlation, model=normalized_model)
        self._session = session
        self._live_epoch = correlation.epoch
        self.clear_error()

        pending = Message(role="assistant", content="", temporary_id=correlation.temporary_id)
        written = self.store.apply(
            replace_assistant_message, chat_id, turn_id, attempt_id, pending
        )
        if not written:
            LOGGER.warning(
                "session.start.target_missing",
                extra={
                    "event": "session.start.target_missing",
                    "chat_id": chat_id,
                    "turn_id": turn_id,
                    "attempt_id": attempt_id,
                },
            )
            self._machine.transition_to(SessionState.CANCELLING)
            self._finish(session)
            return None

        session.task = self.tasks.spawn(self._run(session, list(context)), name=ACTIVE_STREAM)
        self._machine.transition_to(SessionState.STREAMING)
        LOGGER.info(
            "session.started",
            extra={
                "event": "session.started",
                "model": normalized_model,
                "chat_id": chat_id,
                "turn_id": turn_id,
                "epoch": correlation.epoch,
            },
        )
        await self.events.publish(
            SESSION_STARTED,
            {"chat_id": chat_id, "turn_id": turn_id, "attempt_id": attempt_id},
            source="session",
        )
        return correlation

    async def cancel(self) -> bool:
        """Cancel the live session, salvaging partial content.

        Returns False when nothing was cancelled.
        """
        session = self._session
        if session is None:
            return False
        if self._machine.state not in (SessionState.STARTING, SessionState.STREAMING):
            # Another caller is already tearing this session down.
            await self._idle.wait()
            return False

        self._machine.transition_to(SessionState.CANCELLING)
        self._live_epoch = None
        session.cancel.cancel()
        if session.task is not None and session.task is not asyncio.current_task():
            if self.tasks.get(ACTIVE_STREAM) is session.task:
                await self.tasks.cancel(ACTIVE_STREAM)
            else:
                session.task.cancel()
                await asyncio.wait({session.task})

        self._salvage(session)
        self._finish(session)
        await self.events.publish(
            SESSION_CANCELLED,
            {
                "chat_id": session.correlation.chat_id,
                "turn_id": session.correlation.turn_id,
                "kept_partial": bool(session.accumulated.strip()),
            },
            source="session",
        )
        return True

    async def cancel_for_chat(self, chat_id: str) -> bool:
        """Cancel the live session only if it writes into ``chat_id``."""
        session = self._session
        if session is None or session.correlation.chat_id != chat_id:
            return False
        return await self.cancel()

    async def wait(self) -> None:
        """Wait until the current stream task, if any, has finished."""
        session = self._session
        if session is not None and session.task is not None:
            await asyncio.wait({session.task})

    async def shutdown(self) -> None:
        await self.cancel()
        await self.tasks.cancel_all()

    def _is_current(self, session: _Session) -> bool:
        return self._session is session and self._live_epoch == session.correlation.epoch

    async def _run(self, session: _Session, context: list[Message]) -> None:
        correlation = session.correlation
        try:
            async with aclosing(
                self.transport.stream_chat(session.model, context, session.cancel)
            ) as stream:
                async for event in stream:
                    if not self._is_current(session):
                        LOGGER.debug(
                            "session.event.stale",
                            extra={
                                "event": "session.event.stale",
                                "kind": event.kind,
                                "epoch": correlation.epoch,
                            },
                        )
                        break
                    if event.kind == "fragment":
                        self._apply_fragment(session, event.text)
                    elif event.kind == "complete":
                        self._complete(session, event.text)
                        await self._publish_outcome(session, SESSION_COMPLETED)
                        return
                    elif event.cancelled:
                        self._machine.transition_to(SessionState.CANCELLING)
                        self._live_epoch = None
                        self._salvage(session)
                        self._finish(session)
                        await self._publish_outcome(session, SESSION_CANCELLED)
                        return
                    else:
                        self._fail(session, event.error or OllamaTurnsError("Error streaming."))
                        await self._publish_outcome(session, SESSION_FAILED)
                        return

            if self._is_current(session):
                # Stream ended without a terminal event; treat what arrived as final.
                self._complete(session, session.accumulated)
                await self._publish_outcome(session, SESSION_COMPLETED)
        except asyncio.CancelledError:
            if self._is_current(session) and self._machine.state is SessionState.STREAMING:
                # Cancelled from outside cancel(), e.g. TaskManager.cancel_all().
                self._machine.transition_to(SessionState.CANCELLING)
                self._live_epoch = None
                self._salvage(session)
                self._finish(session)
            raise
        except OllamaTurnsError as exc:
            if self._is_current(session):
                self._fail(session, exc)
                await self._publish_outcome(session, SESSION_FAILED)
        finally:
            self.tasks.discard(ACTIVE_STREAM, session.task)

    def _apply_fragment(self, session: _Session, text: str) -> bool:
        """Append a fragment to the accumulator and mirror it into the store."""
        if not self._is_current(session):
            LOGGER.debug(
                "session.fragment.stale",
                extra={"event": "session.fragment.stale", "epoch": session.correlation.epoch},
            )
            return False
        correlation = session.correlation
        session.accumulated += text
        return self.store.apply(
            replace_assistant_message,
            correlation.chat_id,
            correlation.turn_id,
            correlation.attempt_id,
            Message(
                role="assistant",
                content=session.accumulated,
                temporary_id=correlation.temporary_id,
            ),
            expected_temporary_id=correlation.temporary_id,
        )

    def _write_final(self, session: _Session, message: Message) -> bool:
        correlation = session.correlation
        return self.store.apply(
            replace_assistant_message,
            correlation.chat_id,
            correlation.turn_id,
            correlation.attempt_id,
            message,
            expected_temporary_id=correlation.temporary_id,
        )

    def _complete(self, session: _Session, final_text: str) -> None:
        self._machine.transition_to(SessionState.COMPLETING)
        correlation = session.correlation
        if not final_text.strip():
            error = EmptyModelResponse(EMPTY_RESPONSE_MESSAGE)
            self._write_final(
                session, Message(role="assistant", content=str(error), is_error=True)
            )
            self.report_error(str(error))
            LOGGER.warning(
                "session.completed.empty",
                extra={"event": "session.completed.empty", "chat_id": correlation.chat_id},
            )
            self._finish(session)
            return

        finalized = self._write_final(session, Message(role="assistant", content=final_text))
        LOGGER.info(
            "session.completed",
            extra={
                "event": "session.completed",
                "chat_id": correlation.chat_id,
                "chars": len(final_text),
            },
        )
        if finalized:
            self._maybe_generate_title(session, final_text)
        self._finish(session)

    def _fail(self, session: _Session, error: OllamaTurnsError) -> None:
        self._machine.transition_to(SessionState.FAILING)
        partial = session.accumulated.strip()
        message = str(error) or "Error streaming."
        self._write_final(
            session,
            Message(role="assistant", content=partial or message, is_error=True),
        )
        self.report_error(message)
        LOGGER.warning(
            "session.failed",
            extra={
                "event": "session.failed",
                "chat_id": session.correlation.chat_id,
                "error_type": type(error).__name__,
                "error": message,
                "kept_partial": bool(partial),
            },
        )
        self._finish(session)

    def _salvage(self, session: _Session) -> None:
        """Keep non-empty partial output as an answer; otherwise roll the attempt back."""
        correlation = session.correlation
        if session.accumulated.strip():
            self._write_final(session, Message(role="assistant", content=session.accumulated))
        else:
            self.store.apply(
                remove_attempt,
                correlation.chat_id,
                correlation.turn_id,
                correlation.attempt_id,
                expected_temporary_id=correlation.temporary_id,
            )
        self.clear_error()
        LOGGER.info(
            "session.cancelled",
            extra={
                "event": "session.cancelled",
                "chat_id": correlation.chat_id,
                "kept_partial": bool(session.accumulated.strip()),
            },
        )

    def _finish(self, session: _Session) -> None:
        if self._session is session:
            self._session = None
            self._live_epoch = None
        self._machine.transition_to(SessionState.IDLE)
        self._idle.set()

    async def _publish_outcome(self, session: _Session, name: str) -> None:
        correlation = session.correlation
        await self.events.publish(
            name,
            {
                "chat_id": correlation.chat_id,
                "turn_id": correlation.turn_id,
                "attempt_id": correlation.attempt_id,
                "error": self.error,
            },
            source="session",
        )

    def _maybe_generate_title(self, session: _Session, final_text: str) -> None:
        """Fire a title request for the first attempt of a chat's first turn."""
        if not self.generate_titles:
            return
        correlation = session.correlation
        chat = self.store.get(correlation.chat_id)
        if chat is None or not is_default_title(chat.title):
            return
        turn_index = chat.turn_index(correlation.turn_id)
        if turn_index != 0:
            return
        turn = chat.turns[turn_index]
        if turn.attempt_index(correlation.attempt_id) != 0:
            return
        prompt = turn.responses[0].prompt_used
        title_model = pick_title_model(
            self.available_models, session.model, self.title_model_hints
        )
        self.tasks.spawn(self._generate_title(correlation.chat_id, title_model, prompt, final_text))

    async def _generate_title(
        self, chat_id: str, model: str, prompt: str, final_text: str
    ) -> None:
        try:
            title = await self.transport.generate_title(model, prompt, final_text)
        except Exception as exc:  # noqa: BLE001 - title failures leave the default title.
            LOGGER.warning(
                "title.generation.failed",
                extra={"event": "title.generation.failed", "error": str(exc)},
            )
            return
        if not title or title == FALLBACK_TITLE:
            return
        chat = self.store.get(chat_id)
        if chat is None or not is_default_title(chat.title):
            return
        self.store.apply(rename_chat, chat_id, title)
        LOGGER.info("chat.titled", extra={"event": "chat.titled", "chat_id": chat_id})
        await self.events.publish(CHAT_TITLED, {"chat_id": chat_id, "title": title})
