"""User intents translated into store mutations plus a streaming session.

Every streaming action follows the same pattern: validate the target before
touching anything, build context from the chat as it is *before* the
mutation, apply the mutation, then start the session.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
import logging

from .context import build_context
from .exceptions import (
    EditTargetMissing,
    NoModelSelected,
    OllamaTurnsError,
    RegenerateTargetMissing,
    RetryTargetMissing,
    TransportUnreachable,
)
from .models import Chat, ResponseAttempt, Turn, new_id
from .session import StreamCorrelation, StreamingSessionController
from .store import (
    ConversationStore,
    add_chat,
    append_attempt,
    append_turn,
    create_chat,
    mark_orphaned,
    remove_chat,
    rename_chat,
    truncate_attempts,
    truncate_turns,
)
from .versions import DisplayedVersions

LOGGER = logging.getLogger(__name__)

SELECT_MODEL_FIRST = "Please select a model first."
UNREACHABLE_MESSAGE = "Could not connect to Ollama."


class EditBranchPolicy(str, Enum):
    """What happens to the turns after an edited turn.

    ``KEEP`` leaves them in the tree, flagged as orphaned and excluded from
    later context. ``TRUNCATE`` deletes them.
    """

    KEEP = "keep"
    TRUNCATE = "truncate"


@dataclass(frozen=True)
class EditTarget:
    chat_id: str
    turn_index: int


class ChatActions:
    """Action handlers for send, edit, retry, regenerate, stop, delete, and switch."""

    def __init__(
        self,
        store: ConversationStore,
        sessions: StreamingSessionController,
        *,
        versions: DisplayedVersions | None = None,
        model: str = "",
        edit_policy: EditBranchPolicy = EditBranchPolicy.KEEP,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.versions = versions or DisplayedVersions()
        self.model = model.strip()
        self.edit_policy = edit_policy
        self.active_chat_id: str | None = None
        self.editing: EditTarget | None = None
        self.model_error = ""
        self._model_listeners: list[Callable[[str], None]] = []

    @property
    def active_chat(self) -> Chat | None:
        return self.store.get(self.active_chat_id)

    @property
    def is_loading(self) -> bool:
        return self.sessions.is_loading

    @property
    def error(self) -> str:
        return self.sessions.error

    @property
    def available_models(self) -> list[str]:
        return self.sessions.available_models

    @property
    def can_retry(self) -> bool:
        """True when the displayed attempt of the last turn is an error."""
        chat = self.active_chat
        if chat is None or not chat.turns:
            return False
        attempt = self.versions.attempt_for(chat.turns[-1])
        return attempt is not None and attempt.assistant_message.is_error

    def clear_errors(self) -> None:
        self.sessions.clear_error()
        self.model_error = ""

    # -- models -------------------------------------------------------------

    def on_model_selected(self, listener: Callable[[str], None]) -> None:
        self._model_listeners.append(listener)

    def select_model(self, name: str) -> None:
        self.model = name.strip()
        for listener in list(self._model_listeners):
            listener(self.model)

    async def load_models(self, preferred: str = "") -> list[str]:
        """Fetch the model list and pick the preferred model when available."""
        self.model_error = ""
        try:
            models = await self.sessions.transport.list_models()
        except TransportUnreachable:
            self.model_error = UNREACHABLE_MESSAGE
            models = []
        except OllamaTurnsError as exc:
            self.model_error = str(exc) or UNREACHABLE_MESSAGE
            models = []
        self.sessions.available_models = models
        if not models:
            self.model = ""
            return models

        for candidate in (preferred.strip(), self.model):
            if candidate and candidate in models:
                self.select_model(candidate)
                break
        else:
            self.select_model(models[0])
        return models

    # -- navigation ---------------------------------------------------------

    async def new_chat(self) -> Chat:
        """Create an empty chat with the next default title and make it active."""
        await self.sessions.cancel()
        self.clear_errors()
        self.editing = None
        chat = create_chat(self.store.chats)
        self.store.apply(add_chat, chat)
        self.active_chat_id = chat.id
        return chat

    async def select_chat(self, chat_id: str) -> None:
        """Switch the active chat; an unknown id behaves like leaving."""
        if chat_id == self.active_chat_id:
            return
        await self.sessions.cancel()
        self.clear_errors()
        self.editing = None
        self.active_chat_id = chat_id if self.store.get(chat_id) is not None else None

    async def leave_chat(self) -> None:
        await self.sessions.cancel()
        self.clear_errors()
        self.editing = None
        self.active_chat_id = None

    async def delete_chat(self, chat_id: str) -> bool:
        chat = self.store.get(chat_id)
        if chat is None:
            return False
        if chat_id == self.active_chat_id:
            await self.sessions.cancel_for_chat(chat_id)
        self.store.apply(remove_chat, chat_id)
        self.versions.forget_chat(chat)
        if chat_id == self.active_chat_id:
            self.active_chat_id = None
            self.editing = None
        return True

    def rename_chat(self, chat_id: str, title: str) -> bool:
        return self.store.apply(rename_chat, chat_id, title)

    def show_version(self, turn_id: str, index: int) -> None:
        self.versions.show(turn_id, index)

    # -- streaming actions --------------------------------------------------

    def _require_model(self, message: str = SELECT_MODEL_FIRST) -> str:
        if not self.model:
            self.sessions.report_error(message)
            raise NoModelSelected(message)
        return self.model

    def _report_missing(self, exc_type: type[OllamaTurnsError], message: str) -> OllamaTurnsError:
        self.sessions.report_error(message)
        LOGGER.warning(
            "actions.target_missing",
            extra={
                "event": "actions.target_missing",
                "error_type": exc_type.__name__,
                "chat_id": self.active_chat_id,
            },
        )
        return exc_type(message)

    async def _start(
        self, chat: Chat, turn_id: str, attempt: ResponseAttempt, turn_index: int
    ) -> StreamCorrelation | None:
        """Build context from ``chat`` (pre-mutation) and start the session."""
        context = build_context(chat, turn_index, attempt.prompt_used, chat.orphaned_turn_ids)
        return await self.sessions.start(
            chat.id, turn_id, attempt.attempt_id, context, self.model
        )

    async def send_first_message(self, text: str) -> StreamCorrelation | None:
        """Create a chat seeded with ``text`` and start streaming right away."""
        content = text.strip()
        if not content or self.is_loading:
            return None
        self._require_model()
        chat = await self.new_chat()
        attempt = ResponseAttempt.pending(content)
        turn = Turn(turn_id=new_id("turn"), responses=(attempt,))
        self.store.apply(append_turn, chat.id, turn)
        return await self._start(chat, turn.turn_id, attempt, 0)

    async def send(self, text: str) -> StreamCorrelation | None:
        """Send ``text`` as a new turn, or as an edit when edit mode is active."""
        content = text.strip()
        chat = self.active_chat
        if not content or chat is None or self.is_loading:
            return None
        self._require_model()
        if self.editing is not None and self.editing.chat_id == chat.id:
            return await self._send_edit(chat, self.editing, content)

        attempt = ResponseAttempt.pending(content)
        turn = Turn(turn_id=new_id("turn"), responses=(attempt,))
        self.store.apply(append_turn, chat.id, turn)
        return await self._start(chat, turn.turn_id, attempt, len(chat.turns))

    def begin_edit(self, turn_index: int) -> str | None:
        """Enter edit mode for a turn; returns the prompt to prefill."""
        chat = self.active_chat
        if chat is None or self.is_loading:
            return None
        if not 0 <= turn_index < len(chat.turns):
            raise self._report_missing(EditTargetMissing, "Failed to edit.")
        self.editing = EditTarget(chat_id=chat.id, turn_index=turn_index)
        attempt = self.versions.attempt_for(chat.turns[turn_index])
        return attempt.prompt_used if attempt is not None else ""

    def cancel_edit(self) -> None:
        self.editing = None

    async def _send_edit(
        self, chat: Chat, target: EditTarget, content: str
    ) -> StreamCorrelation | None:
        self.editing = None
        if not 0 <= target.turn_index < len(chat.turns):
            raise self._report_missing(EditTargetMissing, "Failed to edit.")

        turn = chat.turns[target.turn_index]
        attempt = ResponseAttempt.pending(content)
        self.store.apply(append_attempt, chat.id, turn.turn_id, attempt)

        later_ids = [t.turn_id for t in chat.turns[target.turn_index + 1 :]]
        if later_ids:
            if self.edit_policy is EditBranchPolicy.TRUNCATE:
                self.store.apply(truncate_turns, chat.id, target.turn_index + 1)
                self.versions.forget(later_ids)
            else:
                self.store.apply(mark_orphaned, chat.id, later_ids)
        self.versions.show(turn.turn_id, len(turn.responses))
        LOGGER.info(
            "actions.edit.resubmit",
            extra={
                "event": "actions.edit.resubmit",
                "chat_id": chat.id,
                "turn_index": target.turn_index,
                "policy": self.edit_policy.value,
                "later_turns": len(later_ids),
            },
        )
        return await self._start(chat, turn.turn_id, attempt, target.turn_index)

    async def retry(self) -> StreamCorrelation | None:
        """Retry the newest turn whose last attempt errored."""
        chat = self.active_chat
        if chat is None or self.is_loading:
            return None

        target_index = -1
        for index in range(len(chat.turns) - 1, -1, -1):
            last = chat.turns[index].last_attempt
            if last is not None and last.assistant_message.is_error:
                target_index = index
                break
        if target_index == -1:
            raise self._report_missing(RetryTargetMissing, "Could not perform retry.")
        self._require_model()

        turn = chat.turns[target_index]
        keep = len(turn.responses)
        while keep > 0 and turn.responses[keep - 1].assistant_message.is_error:
            keep -= 1
        prompt = turn.responses[-1].prompt_used
        attempt = ResponseAttempt.pending(prompt)
        self.store.apply(truncate_attempts, chat.id, turn.turn_id, keep)
        self.store.apply(append_attempt, chat.id, turn.turn_id, attempt)
        self.versions.show(turn.turn_id, keep)
        return await self._start(chat, turn.turn_id, attempt, target_index)

    async def regenerate(self, turn_id: str, attempt_index: int) -> StreamCorrelation | None:
        """Append a fresh attempt reusing the prompt of ``attempt_index``."""
        chat = self.active_chat
        if chat is None or self.is_loading:
            return None
        turn_index = chat.turn_index(turn_id)
        turn = chat.turns[turn_index] if turn_index != -1 else None
        if turn is None or not 0 <= attempt_index < len(turn.responses):
            raise self._report_missing(
                RegenerateTargetMissing, "Could not regenerate response."
            )
        self._require_model()

        attempt = ResponseAttempt.pending(turn.responses[attempt_index].prompt_used)
        self.store.apply(append_attempt, chat.id, turn_id, attempt)
        self.versions.show(turn_id, len(turn.responses))
        return await self._start(chat, turn_id, attempt, turn_index)

    async def stop(self) -> bool:
        return await self.sessions.cancel()
