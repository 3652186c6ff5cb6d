"""Composition root wiring config, store, persistence, transport, and sessions."""

from __future__ import annotations

import logging
import sys
from typing import Any

from .actions import ChatActions, EditBranchPolicy
from .config import load_config
from .events import EventBus
from .logging_utils import configure_logging
from .persistence import ChatPersistence
from .session import StreamingSessionController
from .store import Chats, ConversationStore
from .task_manager import TaskManager
from .transport import OllamaTransport

LOGGER = logging.getLogger(__name__)


class OllamaTurnsApp:
    """Own every long-lived collaborator for one process.

    Every effective store change and every model selection writes a full
    persistence snapshot.
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        *,
        transport: OllamaTransport | None = None,
        persistence: ChatPersistence | None = None,
        configure_logs: bool = True,
    ) -> None:
        self.config = config if config is not None else load_config()
        if configure_logs:
            configure_logging(self.config["logging"])
        LOGGER.info(
            "app.python",
            extra={
                "event": "app.python",
                "executable": sys.executable,
                "version": sys.version.split()[0],
            },
        )

        ollama_cfg = self.config["ollama"]
        persistence_cfg = self.config["persistence"]
        conversation_cfg = self.config["conversation"]

        self.persistence = persistence or ChatPersistence(
            enabled=bool(persistence_cfg["enabled"]),
            state_path=str(persistence_cfg["state_path"]),
        )
        saved = self.persistence.load()
        self.saved_model = saved.selected_model

        self.store = ConversationStore(saved.chats)
        self.transport = transport or OllamaTransport(
            host=str(ollama_cfg["host"]), timeout=int(ollama_cfg["timeout"])
        )
        self.events = EventBus()
        self.tasks = TaskManager()
        self.sessions = StreamingSessionController(
            self.store,
            self.transport,
            task_manager=self.tasks,
            events=self.events,
            generate_titles=bool(conversation_cfg["generate_titles"]),
            title_model_hints=list(ollama_cfg["title_model_hints"]),
        )
        self.actions = ChatActions(
            self.store,
            self.sessions,
            model=saved.selected_model or str(ollama_cfg["model"]),
            edit_policy=EditBranchPolicy(conversation_cfg["edit_branch_policy"]),
        )
        self.store.subscribe(self._save_snapshot)
        self.actions.on_model_selected(self._on_model_selected)
        LOGGER.info(
            "app.ready",
            extra={
                "event": "app.ready",
                "chats": len(saved.chats),
                "host": str(ollama_cfg["host"]),
            },
        )

    def _save_snapshot(self, chats: Chats) -> None:
        self.persistence.save(chats, self.actions.model)

    def _on_model_selected(self, _model: str) -> None:
        self._save_snapshot(self.store.chats)

    async def startup(self) -> list[str]:
        """Fetch the model catalog, keeping the saved selection when possible."""
        return await self.actions.load_models(preferred=self.saved_model)

    async def shutdown(self) -> None:
        await self.sessions.shutdown()
