"""Drive one backend request to a terminal result or detect that it went stale."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from ..ai_types import ChatBackend
from ..errors import BackendError, BackendUnreachable, ChatError, EmptyResponse, describe_error
from . import thinking as thinking_text
from .epoch import RequestEpochTracker
from .model_types import (
    STALE,
    AssistantReply,
    ChunkEvent,
    ChunkMessage,
    DisplayList,
    Err,
    Message,
    Ok,
    Outcome,
    StreamResult,
    ToolCallBatch,
)

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(slots=True)
class _StreamState:
    """Accumulators for a single streaming call."""

    started_at: float
    content: str = ""
    reasoning: str | None = None
    thinking_duration_ms: int | None = None
    token: int | None = None


class StreamDecoder:
    """Consumes chunk events for one in-flight request.

    The decoder owns nothing beyond the request it is running. It mutates the
    display list only through its stream methods and never touches History;
    the caller decides what to do with the resolved outcome.

    Example:
        decoder = StreamDecoder(backend, epochs, display)
        outcome = await decoder.decode(messages, epoch, started_at, model="llama3")
    """

    def __init__(
        self,
        backend: ChatBackend,
        epochs: RequestEpochTracker,
        display: DisplayList,
        *,
        streaming: bool = True,
        show_thinking: bool = True,
        clock: Clock = time.monotonic,
    ) -> None:
        self._backend = backend
        self._epochs = epochs
        self._display = display
        self.streaming = streaming
        self.show_thinking = show_thinking
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    async def decode(
        self,
        messages: Sequence[Message],
        epoch: int,
        started_at: float,
        *,
        model: str,
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> Outcome[StreamResult]:
        """Run the request in the configured mode (streaming or request/response)."""

        if self.streaming:
            return await self.run(messages, epoch, started_at, model=model, tools=tools)
        return await self.request(messages, epoch, started_at, model=model, tools=tools)

    # ------------------------------------------------------------------
    # Streaming mode
    # ------------------------------------------------------------------

    async def run(
        self,
        messages: Sequence[Message],
        epoch: int,
        started_at: float,
        *,
        model: str,
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> Outcome[StreamResult]:
        """Stream one request and resolve with its terminal outcome.

        Args:
            messages: Full message list to send.
            epoch: Epoch captured by the caller when the request started.
            started_at: Clock reading used for first-signal latency.
            model: Model identifier.
            tools: Function-calling specs, or ``None`` to send no tools.

        Returns:
            ``STALE`` when the epoch moved, ``Ok(AssistantReply | ToolCallBatch)``
            on completion, or ``Err`` with a :class:`ChatError`.
        """

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Outcome[StreamResult]] = loop.create_future()
        state = _StreamState(started_at=started_at)
        correlation_id = f"stream-{uuid.uuid4().hex}"

        def _resolve(outcome: Outcome[StreamResult]) -> None:
            if not future.done():
                future.set_result(outcome)

        def _on_chunk(event: ChunkEvent) -> None:
            if future.done():
                return
            if not self._epochs.is_current(epoch):
                self._abandon(state, correlation_id)
                _resolve(STALE)
                return
            if event.correlation_id != correlation_id:
                return
            outcome = self._apply(event, state)
            if outcome is not None:
                _resolve(outcome)

        def _on_epoch(_current: int) -> None:
            if future.done() or self._epochs.is_current(epoch):
                return
            self._abandon(state, correlation_id)
            _resolve(STALE)

        unsubscribe = self._backend.subscribe(_on_chunk)
        remove_listener = self._epochs.add_listener(_on_epoch)
        LOGGER.debug("Starting stream %s (model=%s, messages=%s)", correlation_id, model, len(messages))
        try:
            try:
                await self._backend.stream_chat(
                    model,
                    [message.to_payload() for message in messages],
                    list(tools) if tools else None,
                    correlation_id=correlation_id,
                )
            except Exception as exc:
                if not future.done():
                    if self._epochs.is_current(epoch):
                        self._display.discard_stream(state.token)
                        _resolve(Err(_unreachable(exc)))
                    else:
                        self._abandon(state, correlation_id)
                        _resolve(STALE)
            outcome = await future
            if not self._epochs.is_current(epoch):
                self._abandon(state, correlation_id)
                return STALE
            return outcome
        finally:
            unsubscribe()
            remove_listener()
            if not future.done():
                self._display.discard_stream(state.token)

    def _apply(self, event: ChunkEvent, state: _StreamState) -> Outcome[StreamResult] | None:
        if event.error:
            self._display.discard_stream(state.token)
            LOGGER.debug("Stream %s reported error: %s", event.correlation_id, event.error)
            return Err(BackendError(message=event.error, details={"correlation_id": event.correlation_id}))

        message = event.message
        if message is not None:
            if message.has_signal and state.thinking_duration_ms is None:
                state.thinking_duration_ms = self._elapsed_ms(state.started_at)
            if message.reasoning:
                state.reasoning = thinking_text.merge_incremental(state.reasoning, message.reasoning)
            if message.tool_calls:
                self._display.discard_stream(state.token)
                return Ok(ToolCallBatch(calls=list(message.tool_calls), thinking_duration_ms=state.thinking_duration_ms))
            if message.content:
                state.content += message.content
            self._render(state)

        if event.done:
            outcome = self._finish(state.content, state.reasoning, state.thinking_duration_ms, state.token)
            if isinstance(outcome, Err):
                self._display.discard_stream(state.token)
            return outcome
        return None

    def _render(self, state: _StreamState) -> None:
        visible, extracted = thinking_text.extract_inline_reasoning(state.content)
        reasoning = thinking_text.choose_reasoning(
            thinking_text.normalize(state.reasoning),
            thinking_text.normalize(extracted),
        )
        if state.token is None:
            if not visible and not reasoning:
                return
            state.token = self._display.open_stream()
        self._display.update_stream(
            state.token,
            content=visible,
            thinking=reasoning if self.show_thinking else None,
        )

    def _abandon(self, state: _StreamState, correlation_id: str) -> None:
        LOGGER.debug("Discarding stale stream %s", correlation_id)
        self._display.discard_stream(state.token)

    # ------------------------------------------------------------------
    # Request/response mode
    # ------------------------------------------------------------------

    async def request(
        self,
        messages: Sequence[Message],
        epoch: int,
        started_at: float,
        *,
        model: str,
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> Outcome[StreamResult]:
        """Single round trip through ``backend.chat`` with the same finalization rules."""

        LOGGER.debug("Sending chat request (model=%s, messages=%s)", model, len(messages))
        try:
            response = await self._backend.chat(
                model,
                [message.to_payload() for message in messages],
                list(tools) if tools else None,
            )
        except Exception as exc:
            if not self._epochs.is_current(epoch):
                return STALE
            return Err(_unreachable(exc))
        if not self._epochs.is_current(epoch):
            LOGGER.debug("Discarding stale chat response")
            return STALE

        raw = response.get("message") if isinstance(response, Mapping) else None
        if not isinstance(raw, Mapping):
            return Err(BackendError(message="Invalid response from model backend."))
        message = ChunkMessage.from_payload(raw)
        duration = self._elapsed_ms(started_at)
        if message.tool_calls:
            return Ok(ToolCallBatch(calls=list(message.tool_calls), thinking_duration_ms=duration))
        return self._finish(message.content or "", message.reasoning, duration, None)

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _finish(
        self,
        content: str,
        reasoning: str | None,
        thinking_duration_ms: int | None,
        token: int | None,
    ) -> Outcome[StreamResult]:
        cleaned, extracted = thinking_text.extract_inline_reasoning(content)
        chosen = thinking_text.choose_reasoning(
            thinking_text.normalize(reasoning),
            thinking_text.normalize(extracted),
        )
        if not cleaned and not chosen:
            return Err(EmptyResponse())
        return Ok(
            AssistantReply(
                message=Message.assistant(cleaned),
                thinking=chosen,
                thinking_duration_ms=thinking_duration_ms,
                stream_token=token,
            )
        )

    def _elapsed_ms(self, started_at: float) -> int:
        return max(0, int(round((self._clock() - started_at) * 1000)))


def _unreachable(exc: BaseException) -> ChatError:
    if isinstance(exc, ChatError):
        return exc
    return BackendUnreachable(
        message=describe_error(exc, "Model backend unreachable."),
        details={"exception": type(exc).__name__},
    )


__all__ = ["StreamDecoder"]
