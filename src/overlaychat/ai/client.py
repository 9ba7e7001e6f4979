"""Local model backends and the chunk-event channel they publish to."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, OpenAIError, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .ai_types import ChunkHandler
from .errors import BackendError, BackendUnreachable
from .orchestration.model_types import ChunkEvent, ChunkMessage, ToolCall

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure a backend client."""

    base_url: str = DEFAULT_BASE_URL
    api_key: str = "ollama"
    request_timeout: float | None = 12.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    debug_logging: bool = False


# -----------------------------------------------------------------------------
# Chunk channel
# -----------------------------------------------------------------------------


class ChunkBus:
    """Fan-out channel for chunk events; subscribers filter by correlation id."""

    def __init__(self) -> None:
        self._handlers: list[ChunkHandler] = []

    def subscribe(self, handler: ChunkHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: ChunkEvent) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                LOGGER.warning("Chunk handler failed for %s", event.correlation_id, exc_info=True)

    def publish_payload(self, payload: Mapping[str, Any]) -> ChunkEvent:
        """Normalize a raw transport payload and publish it."""

        event = ChunkEvent.from_payload(payload)
        self.publish(event)
        return event

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)


# -----------------------------------------------------------------------------
# Shared helpers
# -----------------------------------------------------------------------------


def describe_transport_error(exc: BaseException) -> str:
    """Normalize common failure modes into short user-facing reasons."""

    if isinstance(exc, (httpx.TimeoutException, APITimeoutError)):
        return "timeout while connecting to backend"
    if isinstance(exc, (httpx.ConnectError, APIConnectionError)):
        return "connection refused by backend"
    if isinstance(exc, APIStatusError):
        body = exc.response.text if exc.response is not None else ""
        return f"non-200 from backend: {exc.status_code} {body}".strip()
    return f"request error: {exc}"


def _status_error(status_code: int, body: str) -> BackendUnreachable:
    detail = f"non-200 from backend: {status_code} {body}".strip()
    return BackendUnreachable(message=detail, details={"status_code": status_code})


def encode_image(reference: str) -> tuple[str, str]:
    """Return ``(mime_type, base64_data)`` for a file path or pre-encoded data."""

    path = Path(reference)
    try:
        is_file = path.is_file()
    except OSError:
        is_file = False
    if not is_file:
        return "image/png", reference
    mime_type = mimetypes.guess_type(path.name)[0] or "image/png"
    return mime_type, base64.b64encode(path.read_bytes()).decode("ascii")


def _log_payload(payload: Mapping[str, Any]) -> None:
    try:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        LOGGER.debug("Chat payload (unserializable): %s", payload)
    else:
        LOGGER.debug("Chat payload:\n%s", serialized)


class _BackendBase:
    """Retry policy, bus wiring, and background pump bookkeeping."""

    _retry_exceptions: tuple[type[BaseException], ...] = ()

    def __init__(self, settings: ClientSettings, *, bus: ChunkBus | None = None) -> None:
        self._settings = settings
        self._bus = bus or ChunkBus()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def bus(self) -> ChunkBus:
        return self._bus

    def subscribe(self, handler: ChunkHandler) -> Callable[[], None]:
        return self._bus.subscribe(handler)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(self._retry_exceptions),
        )

    def _spawn(self, coro: Any) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every background stream pump to finish."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _cancel_pumps(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()


# -----------------------------------------------------------------------------
# Ollama native API
# -----------------------------------------------------------------------------


class OllamaClient(_BackendBase):
    """Talks to Ollama's ``/api/chat`` endpoint over httpx.

    ``stream_chat`` returns once the backend answered with a 200; the NDJSON
    body is then pumped onto the chunk bus by a background task. Connect and
    timeout failures before that point are retried with tenacity.
    """

    _retry_exceptions = (httpx.TimeoutException, httpx.ConnectError)

    def __init__(
        self,
        settings: ClientSettings,
        *,
        bus: ChunkBus | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(settings, bus=bus)
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/"),
            timeout=httpx.Timeout(settings.request_timeout, read=None),
        )

    async def stream_chat(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        *,
        correlation_id: str,
    ) -> None:
        payload = self._build_payload(model, messages, tools, stream=True)
        LOGGER.debug("Starting Ollama stream %s via %s (%s messages)", correlation_id, model, len(messages))
        response = await self._send(payload, stream=True)
        self._spawn(self._pump(response, correlation_id))

    async def chat(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> Mapping[str, Any]:
        payload = self._build_payload(model, messages, tools, stream=False)
        response = await self._send(payload, stream=False)
        try:
            data = response.json()
        except ValueError as exc:
            raise BackendError(message=f"invalid backend response: {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackendError(message="invalid backend response: expected an object")
        if data.get("error"):
            raise BackendError(message=str(data["error"]))
        return data

    async def health_check(self) -> None:
        """Raise :class:`BackendUnreachable` unless ``GET /api/tags`` answers 200."""

        try:
            response = await self._client.get("/api/tags")
        except httpx.HTTPError as exc:
            detail = describe_transport_error(exc)
            LOGGER.warning("Backend health check failed: %s", detail)
            raise BackendUnreachable(message=detail) from exc
        if response.status_code != 200:
            error = _status_error(response.status_code, response.text)
            LOGGER.warning("Backend health check failed: %s", error.message)
            raise error

    async def list_models(self) -> List[str]:
        response = await self._client.get("/api/tags")
        response.raise_for_status()
        data = response.json()
        return [str(item.get("name")) for item in data.get("models", []) if item.get("name")]

    async def aclose(self) -> None:
        await self._cancel_pumps()
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_payload(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None,
        *,
        stream: bool,
    ) -> Dict[str, Any]:
        if not messages:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [self._coerce_message(message) for message in messages],
            "stream": stream,
        }
        if tools:
            payload["tools"] = list(tools)
        if self._settings.debug_logging:
            _log_payload(payload)
        return payload

    @staticmethod
    def _coerce_message(message: Mapping[str, Any]) -> Dict[str, Any]:
        converted = dict(message)
        images = converted.get("images")
        if images:
            converted["images"] = [encode_image(str(image))[1] for image in images]
        return converted

    async def _send(self, payload: Mapping[str, Any], *, stream: bool) -> httpx.Response:
        try:
            async for attempt in self._retrying():
                with attempt:
                    request = self._client.build_request("POST", "/api/chat", json=payload)
                    response = await self._client.send(request, stream=stream)
                    if response.status_code != 200:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        await response.aclose()
                        raise _status_error(response.status_code, body)
                    return response
        except httpx.HTTPError as exc:
            detail = describe_transport_error(exc)
            LOGGER.debug("Ollama request failed: %s", detail)
            raise BackendUnreachable(message=detail) from exc
        raise BackendUnreachable()

    async def _pump(self, response: httpx.Response, correlation_id: str) -> None:
        try:
            async for line in response.aiter_lines():
                line = line.strip()
                if not line:
                    continue
                try:
                    chunk = json.loads(line)
                except ValueError:
                    LOGGER.debug("Skipping unparsable stream line for %s", correlation_id)
                    continue
                if not isinstance(chunk, Mapping):
                    continue
                event = self._bus.publish_payload({"stream_id": correlation_id, "chunk": chunk})
                if event.done or event.error:
                    return
            self._bus.publish(ChunkEvent(correlation_id=correlation_id, error="stream ended before completion"))
        except httpx.HTTPError as exc:
            detail = describe_transport_error(exc)
            LOGGER.debug("Ollama stream %s failed: %s", correlation_id, detail)
            self._bus.publish(ChunkEvent(correlation_id=correlation_id, error=detail))
        except Exception as exc:
            LOGGER.exception("Ollama stream %s failed unexpectedly", correlation_id)
            self._bus.publish(ChunkEvent(correlation_id=correlation_id, error=describe_transport_error(exc)))
        finally:
            await response.aclose()


# -----------------------------------------------------------------------------
# OpenAI-compatible API
# -----------------------------------------------------------------------------


class OpenAICompatClient(_BackendBase):
    """Talks to an OpenAI-compatible ``/v1`` endpoint through the openai SDK.

    Messages are converted from the native shape (tool names, file-path
    images) to the chat-completions shape (tool call ids, image parts).
    """

    _retry_exceptions = (APIConnectionError, RateLimitError)

    def __init__(
        self,
        settings: ClientSettings,
        *,
        bus: ChunkBus | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        super().__init__(settings, bus=bus)
        self._client = client or AsyncOpenAI(
            api_key=settings.api_key,
            base_url=openai_base_url(settings.base_url),
            timeout=settings.request_timeout,
            max_retries=0,
        )

    async def stream_chat(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        *,
        correlation_id: str,
    ) -> None:
        payload = self._build_payload(model, messages, tools, stream=True)
        LOGGER.debug("Starting completion stream %s via %s (%s messages)", correlation_id, model, len(messages))
        stream = await self._create(payload)
        self._spawn(self._pump(stream, correlation_id))

    async def chat(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> Mapping[str, Any]:
        payload = self._build_payload(model, messages, tools, stream=False)
        completion = await self._create(payload)
        choices = getattr(completion, "choices", None) or []
        if not choices:
            raise BackendError(message="invalid backend response: no choices")
        message = choices[0].message
        result: Dict[str, Any] = {"role": "assistant", "content": getattr(message, "content", None) or ""}
        reasoning = _reasoning_of(message)
        if reasoning:
            result["reasoning"] = reasoning
        tool_calls = getattr(message, "tool_calls", None) or []
        if tool_calls:
            result["tool_calls"] = [
                {
                    "id": getattr(call, "id", None),
                    "function": {"name": call.function.name, "arguments": call.function.arguments},
                }
                for call in tool_calls
            ]
        return {"message": result, "done": True}

    async def health_check(self) -> None:
        try:
            await self._client.models.list()
        except OpenAIError as exc:
            detail = describe_transport_error(exc)
            LOGGER.warning("Backend health check failed: %s", detail)
            raise BackendUnreachable(message=detail) from exc

    async def list_models(self) -> List[str]:
        response = await self._client.models.list()
        return [item.id for item in response.data if getattr(item, "id", None)]

    async def aclose(self) -> None:
        await self._cancel_pumps()
        await self._client.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_payload(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None,
        *,
        stream: bool,
    ) -> Dict[str, Any]:
        if not messages:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": model,
            "messages": to_openai_messages(messages),
            "stream": stream,
        }
        if tools:
            payload["tools"] = list(tools)
        if self._settings.debug_logging:
            _log_payload(payload)
        return payload

    async def _create(self, payload: Mapping[str, Any]) -> Any:
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await self._client.chat.completions.create(**payload)
        except OpenAIError as exc:
            detail = describe_transport_error(exc)
            LOGGER.debug("Completion request failed: %s", detail)
            raise BackendUnreachable(message=detail) from exc
        raise BackendUnreachable()

    async def _pump(self, stream: Any, correlation_id: str) -> None:
        pending: dict[int, dict[str, Any]] = {}
        try:
            async for chunk in stream:
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                choice = choices[0]
                delta = getattr(choice, "delta", None)
                if delta is not None:
                    content = getattr(delta, "content", None)
                    reasoning = _reasoning_of(delta)
                    for call in getattr(delta, "tool_calls", None) or []:
                        _accumulate_tool_call(pending, call)
                    if content or reasoning:
                        self._bus.publish(
                            ChunkEvent(
                                correlation_id=correlation_id,
                                message=ChunkMessage(content=content, reasoning=reasoning),
                            )
                        )
                if getattr(choice, "finish_reason", None):
                    self._publish_finish(correlation_id, pending)
                    return
            if pending:
                self._publish_finish(correlation_id, pending)
                return
            self._bus.publish(ChunkEvent(correlation_id=correlation_id, error="stream ended before completion"))
        except (OpenAIError, httpx.HTTPError) as exc:
            detail = describe_transport_error(exc)
            LOGGER.debug("Completion stream %s failed: %s", correlation_id, detail)
            self._bus.publish(ChunkEvent(correlation_id=correlation_id, error=detail))
        except Exception as exc:
            LOGGER.exception("Completion stream %s failed unexpectedly", correlation_id)
            self._bus.publish(ChunkEvent(correlation_id=correlation_id, error=describe_transport_error(exc)))

    def _publish_finish(self, correlation_id: str, pending: Mapping[int, Mapping[str, Any]]) -> None:
        if pending:
            calls = [ToolCall.from_payload(pending[index]) for index in sorted(pending)]
            self._bus.publish(
                ChunkEvent(correlation_id=correlation_id, message=ChunkMessage(tool_calls=calls))
            )
            return
        self._bus.publish(ChunkEvent(correlation_id=correlation_id, done=True))


def openai_base_url(base_url: str) -> str:
    """Append ``/v1`` to a bare server root."""

    root = (base_url or DEFAULT_BASE_URL).rstrip("/")
    return root if root.endswith("/v1") else f"{root}/v1"


def _reasoning_of(message: Any) -> str | None:
    for attribute in ("reasoning", "reasoning_content", "thinking"):
        value = getattr(message, attribute, None)
        if isinstance(value, str) and value:
            return value
    return None


def _accumulate_tool_call(pending: dict[int, dict[str, Any]], delta: Any) -> None:
    index = getattr(delta, "index", None)
    if index is None:
        index = len(pending)
    entry = pending.setdefault(index, {"id": None, "function": {"name": "", "arguments": ""}})
    call_id = getattr(delta, "id", None)
    if call_id:
        entry["id"] = call_id
    function = getattr(delta, "function", None)
    if function is None:
        return
    name = getattr(function, "name", None)
    if name:
        entry["function"]["name"] = name
    arguments = getattr(function, "arguments", None)
    if arguments:
        entry["function"]["arguments"] += arguments


def to_openai_messages(messages: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Convert native messages to chat-completions messages.

    Tool results are matched to the preceding assistant tool calls in order;
    calls without an id get a synthetic one.
    """

    converted: List[Dict[str, Any]] = []
    pending_ids: list[str] = []
    call_counter = 0
    for message in messages:
        role = message.get("role")
        if role == "assistant" and message.get("tool_calls"):
            calls = []
            pending_ids = []
            for call in message["tool_calls"]:
                function = call.get("function") or {}
                call_counter += 1
                call_id = str(call.get("id") or f"call_{call_counter}")
                pending_ids.append(call_id)
                arguments = function.get("arguments")
                calls.append(
                    {
                        "id": call_id,
                        "type": "function",
                        "function": {
                            "name": function.get("name", "tool"),
                            "arguments": arguments if isinstance(arguments, str) else json.dumps(arguments or {}),
                        },
                    }
                )
            converted.append({"role": "assistant", "content": message.get("content") or None, "tool_calls": calls})
            continue
        if role == "tool":
            call_id = pending_ids.pop(0) if pending_ids else f"call_{call_counter or 1}"
            converted.append({"role": "tool", "tool_call_id": call_id, "content": message.get("content", "")})
            continue
        images = message.get("images")
        if images:
            parts: List[Dict[str, Any]] = [{"type": "text", "text": message.get("content", "")}]
            for image in images:
                mime_type, data = encode_image(str(image))
                parts.append({"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{data}"}})
            converted.append({"role": role, "content": parts})
            continue
        converted.append({"role": role, "content": message.get("content", "")})
    return converted


def create_backend(kind: str, settings: ClientSettings, *, bus: ChunkBus | None = None) -> OllamaClient | OpenAICompatClient:
    """Build the backend named by ``kind`` (``"ollama"`` or ``"openai"``)."""

    normalized = (kind or "ollama").strip().lower()
    if normalized == "ollama":
        return OllamaClient(settings, bus=bus)
    if normalized in {"openai", "openai-compatible", "openai_compat"}:
        return OpenAICompatClient(settings, bus=bus)
    raise ValueError(f"Unknown backend '{kind}'. Use 'ollama' or 'openai'.")


__all__ = [
    "ClientSettings",
    "ChunkBus",
    "OllamaClient",
    "OpenAICompatClient",
    "create_backend",
    "describe_transport_error",
    "encode_image",
    "openai_base_url",
    "to_openai_messages",
]
