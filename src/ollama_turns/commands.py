"""Slash command registration and dispatch for the REPL."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
import logging

LOGGER = logging.getLogger(__name__)

CommandHandler = Callable[[str], Awaitable[bool | None]]


class CommandRegistry:
    """Map ``/name`` to an async handler receiving the rest of the line.

    A handler may return ``False`` to ask the REPL to stop; any other return
    value keeps it running.
    """

    def __init__(self) -> None:
        self._commands: dict[str, CommandHandler] = {}
        self._command_help: dict[str, str] = {}

    def register(self, name: str, handler: CommandHandler, help_text: str = "") -> None:
        normalized_name = name.lstrip("/")
        self._commands[normalized_name] = handler
        self._command_help[normalized_name] = help_text or f"Execute /{normalized_name}"
        LOGGER.debug("Registered command: /%s", normalized_name)

    def is_command(self, text: str) -> bool:
        if not text.startswith("/"):
            return False
        parts = text.split(maxsplit=1)
        return bool(parts) and parts[0][1:] in self._commands

    async def execute(self, command_line: str) -> bool | None:
        """Run a slash command line such as ``/open 2``.

        Raises ``KeyError`` for an unknown command.
        """
        parts = command_line.strip().split(maxsplit=1)
        command_name = parts[0][1:] if parts else ""
        args = parts[1] if len(parts) > 1 else ""

        handler = self._commands.get(command_name)
        if handler is None:
            raise KeyError(command_name)
        return await handler(args)

    def get_commands(self) -> list[tuple[str, str]]:
        """Return ``(command, help_text)`` pairs with the ``/`` prefix."""
        return [(f"/{name}", help_text) for name, help_text in self._command_help.items()]
