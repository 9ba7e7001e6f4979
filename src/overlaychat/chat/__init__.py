"""Chat-input helpers: slash commands and input recall."""

from .commands import CommandContext, CommandRegistry, CommandResult, is_command, parse_command
from .input_history import InputHistory

__all__ = [
    "CommandContext",
    "CommandRegistry",
    "CommandResult",
    "InputHistory",
    "is_command",
    "parse_command",
]
