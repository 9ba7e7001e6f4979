"""Data classes shared by the decoder, dispatcher, and orchestrator."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Generic, Iterator, Literal, Mapping, Sequence, TypeVar, Union

LOGGER = logging.getLogger(__name__)

ChatRole = Literal["user", "assistant", "system", "tool"]
_ROLES: frozenset[str] = frozenset({"user", "assistant", "system", "tool"})

# Priority order for the reasoning side channel; resolved once at ingestion.
REASONING_ALIASES: tuple[str, ...] = ("reasoning", "thinking", "thoughts")

T = TypeVar("T")


# -----------------------------------------------------------------------------
# History messages
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolCall:
    """A single tool invocation requested by the model."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ToolCall":
        """Build a call from either the Ollama or the OpenAI wire shape."""

        function = payload.get("function") if isinstance(payload, Mapping) else None
        if not isinstance(function, Mapping):
            function = payload if isinstance(payload, Mapping) else {}
        raw_name = function.get("name")
        name = raw_name.strip() if isinstance(raw_name, str) and raw_name.strip() else "tool"
        call_id = payload.get("id") if isinstance(payload, Mapping) else None
        return cls(
            name=name,
            arguments=_coerce_arguments(function.get("arguments")),
            call_id=str(call_id) if call_id else None,
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "function": {"name": self.name, "arguments": dict(self.arguments)},
        }
        if self.call_id:
            payload["id"] = self.call_id
        return payload


def _coerce_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return {}
        try:
            parsed = json.loads(text)
        except ValueError:
            return {"raw": raw}
        if isinstance(parsed, Mapping):
            return dict(parsed)
        return {"raw": raw}
    return {}


@dataclass(slots=True)
class Message:
    """One role-tagged turn of the authoritative conversation history."""

    role: ChatRole
    content: str = ""
    tool_calls: list[ToolCall] | None = None
    tool_name: str | None = None
    images: list[str] | None = None

    def __post_init__(self) -> None:
        if self.role not in _ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")
        if self.role == "tool" and not self.tool_name:
            raise ValueError("Tool messages must name the tool they report on")
        if self.tool_calls and self.content:
            raise ValueError("Assistant tool-call messages must have empty content")

    @classmethod
    def user(cls, content: str, *, images: Sequence[str] | None = None) -> "Message":
        return cls(role="user", content=content, images=list(images) if images else None)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role="assistant", content=content)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role="system", content=content)

    @classmethod
    def tool_request(cls, calls: Sequence[ToolCall]) -> "Message":
        return cls(role="assistant", content="", tool_calls=list(calls))

    @classmethod
    def tool_result(cls, tool_name: str, payload: Any) -> "Message":
        content = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False, default=str)
        return cls(role="tool", content=content, tool_name=tool_name)

    def without_images(self) -> "Message":
        if not self.images:
            return self
        return replace(self, images=None)

    def to_payload(self) -> dict[str, Any]:
        """Serialize in the backend's native message shape."""

        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_payload() for call in self.tool_calls]
        if self.tool_name:
            payload["tool_name"] = self.tool_name
        if self.images:
            payload["images"] = list(self.images)
        return payload


# -----------------------------------------------------------------------------
# Display messages
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class DisplayMessage:
    """UI-facing rendering of a history entry plus streaming state."""

    role: ChatRole
    content: str = ""
    thinking: str | None = None
    thinking_duration_ms: int | None = None
    stream_token: int | None = None
    tool_activity_label: str | None = None
    history_index: int | None = None
    images: list[str] | None = None

    @property
    def is_streaming(self) -> bool:
        return self.stream_token is not None

    @classmethod
    def from_message(cls, message: Message, *, history_index: int | None = None) -> "DisplayMessage":
        return cls(
            role=message.role,
            content=message.content,
            history_index=history_index,
            images=list(message.images) if message.images else None,
        )


class DisplayList:
    """Ordered display list with at most one live streaming entry.

    Only the orchestrator owns an instance; the decoder mutates it through the
    stream methods and nothing else.
    """

    def __init__(self, on_change: Callable[[], None] | None = None) -> None:
        self._items: list[DisplayMessage] = []
        self._next_token = 0
        self._on_change = on_change

    def __iter__(self) -> Iterator[DisplayMessage]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def snapshot(self) -> tuple[DisplayMessage, ...]:
        return tuple(self._items)

    def append(self, message: DisplayMessage) -> None:
        self._items.append(message)
        self._changed()

    def open_stream(self) -> int:
        """Create the streaming placeholder and return its token."""

        self._drop_live_streams()
        self._next_token += 1
        token = self._next_token
        self._items.append(DisplayMessage(role="assistant", content="", stream_token=token))
        self._changed()
        return token

    def update_stream(self, token: int, *, content: str, thinking: str | None) -> bool:
        index = self._index_of(token)
        if index is None:
            return False
        current = self._items[index]
        self._items[index] = replace(current, content=content, thinking=thinking)
        self._changed()
        return True

    def discard_stream(self, token: int | None) -> bool:
        if token is None:
            return False
        index = self._index_of(token)
        if index is None:
            return False
        del self._items[index]
        self._changed()
        return True

    def discard_streams(self) -> int:
        removed = self._drop_live_streams()
        if removed:
            self._changed()
        return removed

    def finalize_stream(self, token: int | None, message: DisplayMessage) -> None:
        """Replace the streaming entry with its frozen counterpart."""

        frozen = replace(message, stream_token=None)
        index = self._index_of(token) if token is not None else None
        if index is None:
            self._items.append(frozen)
        else:
            self._items[index] = frozen
        self._changed()

    def truncate_after_history_index(self, history_index: int) -> None:
        """Keep entries up to the one mirroring ``history_index``."""

        cut = None
        for position, item in enumerate(self._items):
            if item.history_index == history_index:
                cut = position + 1
        if cut is None:
            return
        if cut < len(self._items):
            del self._items[cut:]
            self._changed()

    def clear(self) -> None:
        if not self._items:
            return
        self._items.clear()
        self._changed()

    def _drop_live_streams(self) -> int:
        before = len(self._items)
        self._items = [item for item in self._items if item.stream_token is None]
        return before - len(self._items)

    def _index_of(self, token: int | None) -> int | None:
        for position, item in enumerate(self._items):
            if item.stream_token == token:
                return position
        return None

    def _changed(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change()
        except Exception:  # pragma: no cover - listener failures are cosmetic
            LOGGER.debug("Display change listener failed", exc_info=True)


# -----------------------------------------------------------------------------
# Tool usage
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolUsage:
    """Transient tool status exposed for UI feedback."""

    in_progress: bool = False
    name: str | None = None
    last_used_at: float | None = None


# -----------------------------------------------------------------------------
# Backend chunks
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ChunkMessage:
    """Assistant fragment carried by one chunk."""

    content: str | None = None
    reasoning: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ChunkMessage":
        content = payload.get("content")
        reasoning = None
        for alias in REASONING_ALIASES:
            value = payload.get(alias)
            if isinstance(value, str) and value:
                reasoning = value
                break
        raw_calls = payload.get("tool_calls") or []
        calls = [ToolCall.from_payload(call) for call in raw_calls if isinstance(call, Mapping)]
        return cls(
            content=content if isinstance(content, str) else None,
            reasoning=reasoning,
            tool_calls=calls,
        )

    @property
    def has_signal(self) -> bool:
        return bool(self.content or self.reasoning)


@dataclass(slots=True)
class ChunkEvent:
    """One event on the chunk channel, keyed by stream correlation id."""

    correlation_id: str
    done: bool = False
    message: ChunkMessage | None = None
    error: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ChunkEvent":
        """Normalize a transport payload.

        Accepts the nested shape ``{stream_id, chunk: {done, message}, error}``
        as well as a flat ``{correlation_id, done, message, error}``.
        """

        correlation_id = payload.get("correlation_id") or payload.get("stream_id") or ""
        body = payload.get("chunk")
        if not isinstance(body, Mapping):
            body = payload
        raw_message = body.get("message")
        error = payload.get("error") or body.get("error")
        return cls(
            correlation_id=str(correlation_id),
            done=bool(body.get("done")),
            message=ChunkMessage.from_payload(raw_message) if isinstance(raw_message, Mapping) else None,
            error=str(error) if error else None,
        )


# -----------------------------------------------------------------------------
# Turn results
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class AssistantReply:
    """Normal completion of one decoder run."""

    message: Message
    thinking: str | None = None
    thinking_duration_ms: int | None = None
    stream_token: int | None = None


@dataclass(slots=True)
class ToolCallBatch:
    """Decoder run that ended with the model requesting tools."""

    calls: list[ToolCall]
    thinking_duration_ms: int | None = None


StreamResult = Union[AssistantReply, ToolCallBatch]


class Stale:
    """Marker outcome: the epoch moved while the operation was in flight."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "STALE"


STALE = Stale()


@dataclass(slots=True)
class Ok(Generic[T]):
    value: T


@dataclass(slots=True)
class Err:
    error: BaseException


Outcome = Union[Stale, Ok[T], Err]


__all__ = [
    "ChatRole",
    "REASONING_ALIASES",
    "ToolCall",
    "Message",
    "DisplayMessage",
    "DisplayList",
    "ToolUsage",
    "ChunkMessage",
    "ChunkEvent",
    "AssistantReply",
    "ToolCallBatch",
    "StreamResult",
    "Stale",
    "STALE",
    "Ok",
    "Err",
    "Outcome",
]
