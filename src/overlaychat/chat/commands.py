"""Slash commands handled locally without contacting the model."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Literal, Sequence

from ..ai.ai_types import HostBridge
from ..ai.errors import describe_error

LOGGER = logging.getLogger(__name__)

COMMAND_PREFIX = "/"
OVERLAY_CORNERS: tuple[str, ...] = ("top-left", "top-right", "bottom-left", "bottom-right")
UNKNOWN_COMMAND_MESSAGE = "Unknown command. Try /help."


class ChatCommandType(str, Enum):
    """Commands understood by the chat input."""

    CLEAR = "clear"
    CORNER = "corner"
    HELP = "help"


@dataclass(slots=True)
class ParsedCommand:
    """Parsed representation of a slash command string."""

    name: str
    args: list[str]
    raw: str


@dataclass(slots=True)
class CommandResult:
    """Outcome of executing a command."""

    status: Literal["success", "error"]
    reply: str | None = None
    error: str | None = None
    clear_history: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @classmethod
    def success(cls, reply: str | None = None, *, clear_history: bool = False) -> "CommandResult":
        return cls(status="success", reply=reply, clear_history=clear_history)

    @classmethod
    def failure(cls, error: str) -> "CommandResult":
        return cls(status="error", error=error)


@dataclass(slots=True)
class CommandContext:
    """Collaborators available to command handlers."""

    host: HostBridge | None = None


CommandHandler = Callable[[Sequence[str], CommandContext], Awaitable[CommandResult]]


@dataclass(slots=True, frozen=True)
class ChatCommand:
    name: str
    usage: str
    description: str
    execute: CommandHandler


def is_command(text: str) -> bool:
    """Return ``True`` when ``text`` starts with the command prefix."""

    return (text or "").strip().startswith(COMMAND_PREFIX)


def parse_command(text: str) -> ParsedCommand | None:
    """Split ``/name arg1 arg2`` into its parts; ``None`` for ordinary chat text."""

    normalized = (text or "").strip()
    if not normalized.startswith(COMMAND_PREFIX):
        return None
    parts = normalized.split()
    name = parts[0][len(COMMAND_PREFIX):].lower()
    return ParsedCommand(name=name, args=parts[1:], raw=normalized)


# ------------------------------------------------------------------
# Built-in handlers
# ------------------------------------------------------------------


async def _clear_command(args: Sequence[str], context: CommandContext) -> CommandResult:
    return CommandResult.success(clear_history=True)


async def _corner_command(args: Sequence[str], context: CommandContext) -> CommandResult:
    if not args:
        return CommandResult.failure("Usage: /corner top-left")
    corner = args[0].lower()
    if corner not in OVERLAY_CORNERS:
        return CommandResult.failure(f'Unknown corner "{args[0]}". Use: {", ".join(OVERLAY_CORNERS)}.')
    if context.host is None:
        return CommandResult.failure("Overlay placement is not available.")
    await context.host.invoke("set_overlay_corner", {"corner": corner})
    return CommandResult.success(f"Overlay moved to {corner}.")


class CommandRegistry:
    """Lookup table from command name to handler.

    Example:
        registry = CommandRegistry.with_defaults()
        result = await registry.handle("/corner top-left", CommandContext(host=bridge))
    """

    def __init__(self) -> None:
        self._commands: dict[str, ChatCommand] = {}

    @classmethod
    def with_defaults(cls) -> "CommandRegistry":
        registry = cls()
        registry.register(
            ChatCommand(ChatCommandType.CLEAR.value, "/clear", "Clear the conversation.", _clear_command)
        )
        registry.register(
            ChatCommand(
                ChatCommandType.CORNER.value,
                "/corner top-left",
                f"Move the overlay to a screen corner ({', '.join(OVERLAY_CORNERS)}).",
                _corner_command,
            )
        )
        registry.register(
            ChatCommand(ChatCommandType.HELP.value, "/help", "List available commands.", registry._help_command)
        )
        return registry

    def register(self, command: ChatCommand) -> None:
        self._commands[command.name.lower()] = command

    def get(self, name: str) -> ChatCommand | None:
        return self._commands.get(name.lower())

    def list_commands(self) -> list[ChatCommand]:
        return list(self._commands.values())

    def help_text(self) -> str:
        lines = [f"{command.usage} - {command.description}" for command in self._commands.values()]
        return "Available commands:\n" + "\n".join(lines)

    async def _help_command(self, args: Sequence[str], context: CommandContext) -> CommandResult:
        return CommandResult.success(self.help_text())

    async def handle(self, text: str, context: CommandContext) -> CommandResult | None:
        """Execute ``text`` if it is a command; ``None`` means ordinary chat input."""

        parsed = parse_command(text)
        if parsed is None:
            return None
        command = self._commands.get(parsed.name)
        if command is None:
            return CommandResult.failure(UNKNOWN_COMMAND_MESSAGE)
        LOGGER.debug("Running command /%s %s", parsed.name, parsed.args)
        try:
            return await command.execute(parsed.args, context)
        except Exception as exc:
            LOGGER.warning("Command /%s failed: %s", parsed.name, exc)
            return CommandResult.failure(describe_error(exc, "Command failed."))


__all__ = [
    "COMMAND_PREFIX",
    "OVERLAY_CORNERS",
    "UNKNOWN_COMMAND_MESSAGE",
    "ChatCommandType",
    "ParsedCommand",
    "CommandResult",
    "CommandContext",
    "ChatCommand",
    "CommandRegistry",
    "is_command",
    "parse_command",
]
