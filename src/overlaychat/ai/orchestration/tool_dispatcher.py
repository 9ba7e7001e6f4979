"""Tool Dispatcher: executes model-requested tool calls and resubmits.

One dispatcher run owns the "stream -> tool calls -> execute -> re-stream"
loop for a single turn. It never bumps the epoch; it only checks it. History
is appended through the host (the orchestrator), never mutated directly.
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, Sequence

from ..ai_types import CaptureHooks, ConsentProvider
from ..errors import (
    ConsentFailed,
    ToolExecutionFailed,
    ToolLoopExceeded,
    UnsupportedTool,
    describe_error,
)
from ..tools.tool_registry import ToolOutput, ToolRegistration, ToolRegistry
from .epoch import RequestEpochTracker
from .model_types import (
    STALE,
    AssistantReply,
    Err,
    Message,
    Ok,
    Outcome,
    ToolCall,
    ToolCallBatch,
    ToolUsage,
)
from .stream_decoder import StreamDecoder

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_DEPTH = 8
IMAGE_INSTRUCTION = (
    "Use the image to answer the user's last request. "
    "Respond in markdown. Do not include the screenshot in the response."
)


def format_tool_name(name: str | None) -> str:
    if not name:
        return "tool"
    return name.replace("_", " ")


def tool_activity_label(name: str | None) -> str:
    return f"Using {format_tool_name(name)}."


# -----------------------------------------------------------------------------
# Host Protocol
# -----------------------------------------------------------------------------


class ToolTurnHost(Protocol):
    """Operations the orchestrator exposes to a running dispatcher."""

    def append_history(self, epoch: int, messages: Sequence[Message]) -> bool:
        """Append to History if ``epoch`` is still current; return whether it did."""
        ...

    def request_messages(self, extra: Sequence[Message] = ()) -> list[Message]:
        """Return the full request (system prompt + History + ``extra``)."""
        ...

    def update_tool_usage(self, epoch: int, usage: ToolUsage) -> None:
        ...

    def mark_tool_used(self, finished_at: float) -> None:
        """Stamp ``last_used_at`` without touching the in-progress flag."""
        ...

    def set_tool_activity(self, epoch: int, label: str | None) -> None:
        ...


# -----------------------------------------------------------------------------
# Batch results
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class _CallResult:
    """Tool message payload plus optional follow-up attachments."""

    payload: Mapping[str, Any] | str
    images: list[str] = field(default_factory=list)
    image_label: str | None = None


@dataclass(slots=True)
class _BatchResult:
    history: list[Message]
    extra: list[Message]
    prefers_vision: bool = False


# -----------------------------------------------------------------------------
# Tool Dispatcher
# -----------------------------------------------------------------------------


class ToolDispatcher:
    """Executes tool-call batches and re-invokes the decoder until plain text arrives.

    Example:
        dispatcher = ToolDispatcher(registry, decoder, epochs, consent=provider)
        outcome = await dispatcher.run(batch, epoch=epoch, host=orchestrator, model="llama3")
    """

    def __init__(
        self,
        registry: ToolRegistry,
        decoder: StreamDecoder,
        epochs: RequestEpochTracker,
        *,
        consent: ConsentProvider | None = None,
        hooks: CaptureHooks | None = None,
        max_tool_depth: int = DEFAULT_MAX_TOOL_DEPTH,
        vision_model: str | None = None,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._decoder = decoder
        self._epochs = epochs
        self._consent = consent
        self._hooks = hooks
        self.max_tool_depth = max(1, int(max_tool_depth))
        self.vision_model = vision_model
        self._wall_clock = wall_clock

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(
        self,
        batch: ToolCallBatch,
        *,
        epoch: int,
        host: ToolTurnHost,
        model: str,
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> Outcome[AssistantReply]:
        """Execute ``batch`` and every batch the follow-ups produce.

        Returns:
            ``Ok(AssistantReply)`` once the model answers in text, ``STALE`` when
            the epoch moved, or ``Err`` for turn-fatal failures. Tool usage is
            reset and stamped on every exit path.
        """

        current = batch
        depth = 0
        tool_name = _first_tool_name(current.calls)
        started = False
        try:
            while True:
                if not self._epochs.is_current(epoch):
                    return STALE
                depth += 1
                if depth > self.max_tool_depth:
                    LOGGER.warning("Tool loop exceeded %s consecutive batches", self.max_tool_depth)
                    return Err(
                        ToolLoopExceeded(
                            message=f"Stopped after {self.max_tool_depth} consecutive tool calls.",
                            max_depth=self.max_tool_depth,
                        )
                    )

                tool_name = _first_tool_name(current.calls)
                host.update_tool_usage(epoch, ToolUsage(in_progress=True, name=tool_name))
                started = True
                host.set_tool_activity(epoch, tool_activity_label(tool_name))
                LOGGER.debug("Dispatching tool batch %s (depth=%s)", [call.name for call in current.calls], depth)

                executed = await self._execute_batch(current.calls, epoch=epoch)
                if not isinstance(executed, Ok):
                    return executed
                result = executed.value
                if not host.append_history(epoch, result.history):
                    return STALE

                follow_model = model
                if result.prefers_vision and self.vision_model:
                    follow_model = self.vision_model
                outcome = await self._decoder.decode(
                    host.request_messages(result.extra),
                    epoch,
                    self._decoder.now(),
                    model=follow_model,
                    tools=tools,
                )
                if not isinstance(outcome, Ok):
                    return outcome
                if isinstance(outcome.value, ToolCallBatch):
                    current = outcome.value
                    continue
                return outcome
        finally:
            if started:
                finished_at = self._wall_clock()
                if self._epochs.is_current(epoch):
                    host.update_tool_usage(
                        epoch, ToolUsage(in_progress=False, name=tool_name, last_used_at=finished_at)
                    )
                else:
                    # stale exits stamp only; a newer turn owns the in-progress flag
                    host.mark_tool_used(finished_at)

    # ------------------------------------------------------------------
    # Batch execution
    # ------------------------------------------------------------------

    async def _execute_batch(self, calls: Sequence[ToolCall], *, epoch: int) -> Outcome[_BatchResult]:
        history: list[Message] = [Message.tool_request(calls)]
        extra: list[Message] = []
        prefers_vision = False

        for call in calls:
            registration = self._registry.get_registration(call.name)
            if registration is None:
                LOGGER.debug("Model requested unknown tool %s", call.name)
                return Err(UnsupportedTool(message=f"Unsupported tool call: {call.name}.", tool_name=call.name))

            outcome = await self._execute_call(registration, call, epoch=epoch)
            if not isinstance(outcome, Ok):
                return outcome
            result = outcome.value
            history.append(Message.tool_result(call.name, result.payload))
            if result.images:
                label = result.image_label or "Image attached."
                extra.append(Message.user(f"{label} {IMAGE_INSTRUCTION}", images=result.images))
                prefers_vision = prefers_vision or registration.prefers_vision_model

        return Ok(_BatchResult(history=history, extra=extra, prefers_vision=prefers_vision))

    async def _execute_call(
        self,
        registration: ToolRegistration,
        call: ToolCall,
        *,
        epoch: int,
    ) -> Outcome[_CallResult]:
        display_name = format_tool_name(registration.name).capitalize()
        if not registration.enabled or (registration.requires_consent and self._consent is None):
            return Ok(_CallResult(payload={"error": "disabled", "message": f"{display_name} tool is disabled."}))

        problems = registration.validate_arguments(call.arguments)
        if problems:
            LOGGER.debug("Invalid arguments for %s: %s", call.name, problems)
            return Ok(_CallResult(payload={"error": "invalid_arguments", "message": "; ".join(problems)}))

        if registration.requires_consent and self._consent is not None:
            try:
                decision = await self._consent.request_consent(registration.name)
            except Exception as exc:
                if not self._epochs.is_current(epoch):
                    return STALE
                return Err(ConsentFailed(message=describe_error(exc, "Unable to request consent.")))
            if not self._epochs.is_current(epoch):
                LOGGER.debug("Consent for %s resolved after cancel; skipping tool", call.name)
                return STALE
            if not decision.approved:
                return Ok(
                    _CallResult(
                        payload={"error": "declined", "message": f"User declined {format_tool_name(call.name)}."}
                    )
                )

        if not self._epochs.is_current(epoch):
            return STALE
        try:
            output = await self._invoke(registration, call)
        except Exception as exc:
            if not self._epochs.is_current(epoch):
                return STALE
            LOGGER.exception("Tool %s failed", call.name)
            return Err(
                ToolExecutionFailed(
                    message=describe_error(exc, f"{display_name} tool failed."),
                    tool_name=call.name,
                )
            )
        if not self._epochs.is_current(epoch):
            return STALE
        return Ok(_CallResult(payload=output.payload, images=list(output.images), image_label=output.image_label))

    async def _invoke(self, registration: ToolRegistration, call: ToolCall) -> ToolOutput:
        if registration.suppress_ui:
            await self._run_hook("before_action")
        try:
            result = registration.impl(**call.arguments)
            if inspect.isawaitable(result):
                result = await result
            return ToolOutput.coerce(result)
        finally:
            if registration.suppress_ui:
                await self._run_hook("after_action")

    async def _run_hook(self, name: str) -> None:
        hook = getattr(self._hooks, name, None) if self._hooks is not None else None
        if hook is None:
            return
        try:
            result = hook()
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.warning("Capture hook %s failed", name, exc_info=True)


def _first_tool_name(calls: Sequence[ToolCall]) -> str:
    for call in calls:
        if call.name:
            return call.name
    return "tool"


__all__ = [
    "DEFAULT_MAX_TOOL_DEPTH",
    "IMAGE_INSTRUCTION",
    "ToolDispatcher",
    "ToolTurnHost",
    "format_tool_name",
    "tool_activity_label",
]
