"""Standardized error types for chat turns.

Every failure that can end a turn is a :class:`ChatError` subclass with a
stable machine-readable code. The human-readable message is what the
orchestrator surfaces as ``last_error``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes attached to chat errors."""

    BACKEND_UNREACHABLE = "backend_unreachable"
    BACKEND_ERROR = "backend_error"
    EMPTY_RESPONSE = "empty_response"
    UNSUPPORTED_TOOL = "unsupported_tool"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"
    TOOL_LOOP_EXCEEDED = "tool_loop_exceeded"
    CONSENT_FAILED = "consent_failed"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class ChatError(Exception):
    """Base exception class for all turn-ending errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for logs and tool payloads."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return self.message


# -----------------------------------------------------------------------------
# Backend Errors
# -----------------------------------------------------------------------------

@dataclass
class BackendUnreachable(ChatError):
    """Transport-level failure before any chunk arrived."""

    error_code: str = field(default=ErrorCode.BACKEND_UNREACHABLE)
    message: str = field(default="Model backend unreachable.")
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class BackendError(ChatError):
    """The backend reported an explicit error on the chunk channel."""

    error_code: str = field(default=ErrorCode.BACKEND_ERROR)
    message: str = field(default="Model backend reported an error.")
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class EmptyResponse(ChatError):
    """A completion arrived with neither content nor reasoning."""

    error_code: str = field(default=ErrorCode.EMPTY_RESPONSE)
    message: str = field(default="No response from model.")
    details: dict[str, Any] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Tool Errors
# -----------------------------------------------------------------------------

@dataclass
class UnsupportedTool(ChatError):
    """The model requested a tool that is not registered."""

    error_code: str = field(default=ErrorCode.UNSUPPORTED_TOOL)
    message: str = field(default="Unsupported tool call.")
    details: dict[str, Any] = field(default_factory=dict)

    tool_name: str | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.tool_name:
            result["tool_name"] = self.tool_name
        return result


@dataclass
class ToolExecutionFailed(ChatError):
    """A tool's execute call raised."""

    error_code: str = field(default=ErrorCode.TOOL_EXECUTION_FAILED)
    message: str = field(default="Tool execution failed.")
    details: dict[str, Any] = field(default_factory=dict)

    tool_name: str | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.tool_name:
            result["tool_name"] = self.tool_name
        return result


@dataclass
class ToolLoopExceeded(ChatError):
    """The model kept requesting tools past the configured depth."""

    error_code: str = field(default=ErrorCode.TOOL_LOOP_EXCEEDED)
    message: str = field(default="Too many consecutive tool calls.")
    details: dict[str, Any] = field(default_factory=dict)

    max_depth: int = field(default=0)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["max_depth"] = self.max_depth
        return result


@dataclass
class ConsentFailed(ChatError):
    """The consent provider itself failed (as opposed to a denial)."""

    error_code: str = field(default=ErrorCode.CONSENT_FAILED)
    message: str = field(default="Unable to request consent.")
    details: dict[str, Any] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def describe_error(error: BaseException | str | None, fallback: str) -> str:
    """Return a user-facing message for an arbitrary failure."""
    if isinstance(error, BaseException):
        text = str(error).strip()
        return text or fallback
    if isinstance(error, str) and error.strip():
        return error.strip()
    return fallback


__all__ = [
    "ErrorCode",
    "ChatError",
    "BackendUnreachable",
    "BackendError",
    "EmptyResponse",
    "UnsupportedTool",
    "ToolExecutionFailed",
    "ToolLoopExceeded",
    "ConsentFailed",
    "describe_error",
]
