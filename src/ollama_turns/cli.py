"""Interactive terminal REPL on top of the chat action handlers."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import logging
import threading

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .app import OllamaTurnsApp
from .commands import CommandRegistry
from .events import (
    CHAT_TITLED,
    SESSION_CANCELLED,
    SESSION_COMPLETED,
    SESSION_FAILED,
    Event,
)
from .exceptions import OllamaTurnsError
from .models import Chat
from .session import StreamingSessionController
from .store import Chats, find_chat

LOGGER = logging.getLogger(__name__)

BUSY_MESSAGE = "Still generating; use /stop to interrupt."


class StreamEcho:
    """Store listener printing the live attempt's new text as it arrives."""

    def __init__(self, console: Console, sessions: StreamingSessionController) -> None:
        self.console = console
        self.sessions = sessions
        self._key: tuple[str, int] | None = None
        self._printed = 0

    def __call__(self, chats: Chats) -> None:
        active = self.sessions.active
        if active is None:
            return
        key = (active.attempt_id, active.epoch)
        if key != self._key:
            self._key = key
            self._printed = 0
        chat = find_chat(chats, active.chat_id)
        turn = chat.find_turn(active.turn_id) if chat is not None else None
        if turn is None:
            return
        index = turn.attempt_index(active.attempt_id)
        if index == -1:
            return
        message = turn.responses[index].assistant_message
        if message.temporary_id != active.temporary_id:
            return
        if len(message.content) > self._printed:
            self.console.print(
                message.content[self._printed :], end="", markup=False, highlight=False
            )
            self._printed = len(message.content)


class ChatRepl:
    """Line-oriented front end: plain text sends, ``/commands`` drive actions."""

    def __init__(
        self,
        app: OllamaTurnsApp,
        console: Console | None = None,
        read_line: Callable[[], str] | None = None,
    ) -> None:
        self.app = app
        self.actions = app.actions
        self.console = console or Console()
        self._read_line = read_line or (lambda: input())
        self._lines: asyncio.Queue[str | None] = asyncio.Queue()
        self.commands = CommandRegistry()
        self._register_commands()
        app.store.subscribe(StreamEcho(self.console, app.sessions))
        app.events.subscribe(SESSION_COMPLETED, self._on_completed)
        app.events.subscribe(SESSION_FAILED, self._on_failed)
        app.events.subscribe(SESSION_CANCELLED, self._on_cancelled)
        app.events.subscribe(CHAT_TITLED, self._on_titled)

    def _register_commands(self) -> None:
        for name, handler, help_text in (
            ("new", self._cmd_new, "Start a new chat"),
            ("chats", self._cmd_chats, "List chats"),
            ("open", self._cmd_open, "Open chat N"),
            ("home", self._cmd_home, "Leave the current chat"),
            ("delete", self._cmd_delete, "Delete chat N"),
            ("rename", self._cmd_rename, "Rename the current chat"),
            ("edit", self._cmd_edit, "Edit the prompt of turn N"),
            ("cancel", self._cmd_cancel, "Leave edit mode"),
            ("retry", self._cmd_retry, "Retry the last failed turn"),
            ("regen", self._cmd_regen, "Regenerate turn N [from version A]"),
            ("show", self._cmd_show, "Show version A of turn N"),
            ("stop", self._cmd_stop, "Stop the running response"),
            ("models", self._cmd_models, "List available models"),
            ("model", self._cmd_model, "Select a model"),
            ("export", self._cmd_export, "Export the current chat to Markdown"),
            ("help", self._cmd_help, "Show commands"),
            ("quit", self._cmd_quit, "Exit"),
        ):
            self.commands.register(name, handler, help_text)

    # -- rendering ----------------------------------------------------------

    def _error(self, message: str) -> None:
        self.console.print(f"[red]{escape(message)}[/red]")

    def _info(self, message: str) -> None:
        self.console.print(f"[dim]{escape(message)}[/dim]")

    def render_chat(self, chat: Chat) -> None:
        self.console.print(f"[bold]{escape(chat.title)}[/bold]")
        versions = self.actions.versions
        for number, turn in enumerate(chat.turns, start=1):
            attempt = versions.attempt_for(turn)
            if attempt is None:
                continue
            orphaned = turn.turn_id in chat.orphaned_turn_ids
            style = "dim" if orphaned else "cyan"
            marker = " (orphaned)" if orphaned else ""
            self.console.print(
                f"[{style}]{number}. you{marker}:[/{style}] {escape(attempt.prompt_used)}"
            )
            reply = attempt.assistant_message
            label = "assistant"
            if len(turn.responses) > 1:
                label += f" {versions.index_for(turn) + 1}/{len(turn.responses)}"
            if reply.is_error:
                self.console.print(f"[red]{label}: {escape(reply.content)}[/red]")
            else:
                self.console.print(f"[green]{label}:[/green] {escape(reply.content)}")
        if self.actions.can_retry:
            self._info("Last response failed; /retry to try again.")

    def _render_active(self) -> None:
        chat = self.actions.active_chat
        if chat is not None:
            self.render_chat(chat)

    # -- session events -----------------------------------------------------

    def _on_completed(self, event: Event) -> None:
        self.console.print()
        if event.data.get("error"):
            self._error(str(event.data["error"]))

    def _on_failed(self, event: Event) -> None:
        self.console.print()
        self._error(str(event.data.get("error") or "Error streaming."))

    def _on_cancelled(self, _event: Event) -> None:
        self.console.print()
        self._info("Stopped.")

    def _on_titled(self, event: Event) -> None:
        self._info(f"Chat titled: {event.data.get('title', '')}")

    # -- commands -----------------------------------------------------------

    def _chat_at(self, raw: str) -> Chat | None:
        try:
            position = int(raw.strip())
        except ValueError:
            self._error("Expected a chat number.")
            return None
        chats = self.app.store.chats
        if not 1 <= position <= len(chats):
            self._error(f"No chat {position}.")
            return None
        return chats[position - 1]

    async def _cmd_new(self, _args: str) -> None:
        chat = await self.actions.new_chat()
        self._info(f"Started {chat.title}.")

    async def _cmd_chats(self, _args: str) -> None:
        chats = self.app.store.chats
        if not chats:
            self._info("No chats yet.")
            return
        table = Table(show_header=True)
        table.add_column("#", justify="right")
        table.add_column("Title")
        table.add_column("Turns", justify="right")
        for position, chat in enumerate(chats, start=1):
            title = chat.title + (" *" if chat.id == self.actions.active_chat_id else "")
            table.add_row(str(position), title, str(len(chat.turns)))
        self.console.print(table)

    async def _cmd_open(self, args: str) -> None:
        chat = self._chat_at(args)
        if chat is None:
            return
        await self.actions.select_chat(chat.id)
        self._render_active()

    async def _cmd_home(self, _args: str) -> None:
        await self.actions.leave_chat()
        self._info("Left chat. Type a message to start a new one.")

    async def _cmd_delete(self, args: str) -> None:
        chat = self._chat_at(args)
        if chat is not None and await self.actions.delete_chat(chat.id):
            self._info(f"Deleted {chat.title}.")

    async def _cmd_rename(self, args: str) -> None:
        chat = self.actions.active_chat
        if chat is None:
            self._error("Open a chat first.")
            return
        self.actions.rename_chat(chat.id, args)
        renamed = self.actions.active_chat
        if renamed is not None:
            self._info(f"Renamed to {renamed.title}.")

    async def _cmd_edit(self, args: str) -> None:
        try:
            turn_index = int(args.strip()) - 1
        except ValueError:
            self._error("Expected a turn number.")
            return
        prompt = self.actions.begin_edit(turn_index)
        if prompt is None:
            self._error(BUSY_MESSAGE if self.actions.is_loading else "Open a chat first.")
            return
        self._info(f"Editing turn {turn_index + 1}; the next message replaces:")
        self.console.print(prompt, markup=False, highlight=False)

    async def _cmd_cancel(self, _args: str) -> None:
        self.actions.cancel_edit()
        self._info("Edit cancelled.")

    async def _cmd_retry(self, _args: str) -> None:
        if await self.actions.retry() is None and self.actions.is_loading:
            self._error(BUSY_MESSAGE)

    async def _cmd_regen(self, args: str) -> None:
        chat = self.actions.active_chat
        parts = args.split()
        if chat is None or not parts:
            self._error("Usage: /regen N [A]")
            return
        try:
            turn_index = int(parts[0]) - 1
            attempt_index = int(parts[1]) - 1 if len(parts) > 1 else None
        except ValueError:
            self._error("Usage: /regen N [A]")
            return
        turn_id = chat.turns[turn_index].turn_id if 0 <= turn_index < len(chat.turns) else ""
        if attempt_index is None:
            turn = chat.find_turn(turn_id)
            attempt_index = self.actions.versions.index_for(turn) if turn is not None else -1
        if await self.actions.regenerate(turn_id, attempt_index) is None:
            self._error(BUSY_MESSAGE)

    async def _cmd_show(self, args: str) -> None:
        chat = self.actions.active_chat
        parts = args.split()
        if chat is None or len(parts) != 2:
            self._error("Usage: /show N A")
            return
        try:
            turn_index, attempt_index = int(parts[0]) - 1, int(parts[1]) - 1
        except ValueError:
            self._error("Usage: /show N A")
            return
        if not 0 <= turn_index < len(chat.turns):
            self._error(f"No turn {turn_index + 1}.")
            return
        self.actions.show_version(chat.turns[turn_index].turn_id, attempt_index)
        self.render_chat(chat)

    async def _cmd_stop(self, _args: str) -> None:
        if not await self.actions.stop():
            self._info("Nothing to stop.")

    async def _cmd_models(self, _args: str) -> None:
        models = await self.actions.load_models(preferred=self.actions.model)
        if self.actions.model_error:
            self._error(self.actions.model_error)
            return
        for name in models:
            marker = "*" if name == self.actions.model else " "
            self.console.print(f"{marker} {name}", markup=False, highlight=False)

    async def _cmd_model(self, args: str) -> None:
        name = args.strip()
        available = self.actions.available_models
        if not name or (available and name not in available):
            self._error(f"Unknown model {name!r}; see /models.")
            return
        self.actions.select_model(name)
        self._info(f"Using {name}.")

    async def _cmd_export(self, _args: str) -> None:
        chat = self.actions.active_chat
        if chat is None:
            self._error("Open a chat first.")
            return
        path = self.app.persistence.export_markdown(chat, self.actions.versions)
        self._info(f"Exported to {path}.")

    async def _cmd_help(self, _args: str) -> None:
        for command, help_text in self.commands.get_commands():
            self.console.print(f"[bold]{command}[/bold]  {escape(help_text)}")

    async def _cmd_quit(self, _args: str) -> bool:
        return False

    # -- main loop ----------------------------------------------------------

    async def handle_line(self, line: str) -> bool:
        """Process one input line; returns False when the REPL should exit."""
        text = line.strip()
        if not text:
            return True
        try:
            if text.startswith("/"):
                if not self.commands.is_command(text):
                    self._error(f"Unknown command {text.split()[0]}; try /help.")
                    return True
                return await self.commands.execute(text) is not False
            if self.actions.is_loading:
                self._error(BUSY_MESSAGE)
            elif self.actions.active_chat is None:
                await self.actions.send_first_message(text)
            else:
                await self.actions.send(text)
        except OllamaTurnsError as exc:
            LOGGER.info(
                "cli.action.failed",
                extra={"event": "cli.action.failed", "error_type": type(exc).__name__},
            )
            self._error(str(exc))
        return True

    def _reader(self, loop: asyncio.AbstractEventLoop) -> None:
        while True:
            try:
                line: str | None = self._read_line()
            except (EOFError, KeyboardInterrupt):
                line = None
            loop.call_soon_threadsafe(self._lines.put_nowait, line)
            if line is None:
                return

    async def run(self) -> None:
        models = await self.app.startup()
        if self.actions.model_error:
            self._error(self.actions.model_error)
        elif models:
            self._info(f"Model: {self.actions.model}. Type /help for commands.")
        # Daemon thread so a pending input() never blocks interpreter exit.
        threading.Thread(
            target=self._reader, args=(asyncio.get_running_loop(),), daemon=True
        ).start()
        try:
            while True:
                line = await self._lines.get()
                if line is None or not await self.handle_line(line):
                    break
        finally:
            await self.app.shutdown()
