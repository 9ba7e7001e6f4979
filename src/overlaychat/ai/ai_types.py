"""Protocols for the collaborators the chat core consumes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from .orchestration.model_types import ChunkEvent

ChunkHandler = Callable[["ChunkEvent"], None]


@runtime_checkable
class ChatBackend(Protocol):
    """Local model backend.

    ``stream_chat`` is fire-and-forget: it returns once the request was
    accepted, and chunks arrive through handlers registered with
    ``subscribe`` keyed by ``correlation_id``.
    """

    async def stream_chat(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        *,
        correlation_id: str,
    ) -> None:
        ...

    async def chat(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> Mapping[str, Any]:
        ...

    def subscribe(self, handler: ChunkHandler) -> Callable[[], None]:
        ...


@dataclass(slots=True, frozen=True)
class ConsentDecision:
    """Answer from the consent provider."""

    approved: bool


class ConsentProvider(Protocol):
    """Asks the user whether a side-effecting tool may run."""

    def request_consent(self, tool_name: str) -> Awaitable[ConsentDecision]:
        ...


class CaptureHooks(Protocol):
    """Hide/show host UI around tools that must not capture the overlay itself."""

    def before_action(self) -> Awaitable[None] | None:
        ...

    def after_action(self) -> Awaitable[None] | None:
        ...


class ScreenCapture(Protocol):
    """Narrow capability over the host's screen-capture and OCR subsystem."""

    def capture_text(self) -> Awaitable[Mapping[str, Any]]:
        ...

    def capture_image(self) -> Awaitable[Mapping[str, Any]]:
        ...


class HostBridge(Protocol):
    """Invokes host-process commands (window placement and similar)."""

    def invoke(self, command: str, args: Mapping[str, Any] | None = None) -> Awaitable[Any]:
        ...


__all__ = [
    "ChunkHandler",
    "ChatBackend",
    "ConsentDecision",
    "ConsentProvider",
    "CaptureHooks",
    "ScreenCapture",
    "HostBridge",
]
