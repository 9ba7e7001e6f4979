"""Conversation Orchestrator: the single owner of History and the display list."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from enum import Enum
from typing import Any, Callable, Mapping, Sequence

from ...chat.commands import CommandContext, CommandRegistry, CommandResult
from ..ai_types import CaptureHooks, ChatBackend, ConsentProvider, HostBridge
from ..errors import describe_error
from ..tools.tool_registry import ToolRegistry
from .epoch import RequestEpochTracker
from .model_types import (
    AssistantReply,
    DisplayList,
    DisplayMessage,
    Err,
    Message,
    Ok,
    Outcome,
    Stale,
    ToolCallBatch,
    ToolUsage,
)
from .stream_decoder import StreamDecoder
from .tool_dispatcher import DEFAULT_MAX_TOOL_DEPTH, ToolDispatcher

LOGGER = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "Model backend unreachable."

ChangeListener = Callable[["ConversationOrchestrator"], None]


class ChatState(str, Enum):
    """Orchestrator states; ``DISPATCHING`` is a sub-state of sending."""

    IDLE = "idle"
    SENDING = "sending"
    DISPATCHING = "dispatching"


class ConversationOrchestrator:
    """Top-level chat state machine exposed to the UI layer.

    Every turn captures an epoch when it starts. Continuations check that
    epoch before touching History, so anything that resolves after
    :meth:`cancel`, :meth:`regenerate_last` or :meth:`clear` is dropped.
    A failed or cancelled turn rolls History back to the point right after
    its user message.

    Example:
        orchestrator = ConversationOrchestrator(backend, registry, model="llama3")
        await orchestrator.submit("What is on my screen?")
        print(orchestrator.history[-1].content)
    """

    def __init__(
        self,
        backend: ChatBackend,
        registry: ToolRegistry | None = None,
        *,
        model: str,
        vision_model: str | None = None,
        system_prompt: str | None = None,
        consent: ConsentProvider | None = None,
        hooks: CaptureHooks | None = None,
        host: HostBridge | None = None,
        commands: CommandRegistry | None = None,
        streaming: bool = True,
        show_thinking: bool = True,
        tools_enabled: bool = True,
        max_tool_depth: int = DEFAULT_MAX_TOOL_DEPTH,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.model = model
        self.system_prompt = system_prompt
        self.tools_enabled = tools_enabled
        self._registry = registry or ToolRegistry()
        self._commands = commands if commands is not None else CommandRegistry.with_defaults()
        self._command_context = CommandContext(host=host)
        self._epochs = RequestEpochTracker()
        self._display = DisplayList(on_change=self._notify)
        self._decoder = StreamDecoder(
            backend,
            self._epochs,
            self._display,
            streaming=streaming,
            show_thinking=show_thinking,
            clock=clock,
        )
        self._dispatcher = ToolDispatcher(
            self._registry,
            self._decoder,
            self._epochs,
            consent=consent,
            hooks=hooks,
            max_tool_depth=max_tool_depth,
            vision_model=vision_model,
            wall_clock=wall_clock,
        )
        self._history: list[Message] = []
        self._wall_clock = wall_clock
        self._state = ChatState.IDLE
        self._last_error: str | None = None
        self._tool_usage = ToolUsage()
        self._tool_activity: str | None = None
        self._checkpoint = 0
        self._listeners: list[ChangeListener] = []

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def history(self) -> tuple[Message, ...]:
        return tuple(self._history)

    @property
    def display_messages(self) -> tuple[DisplayMessage, ...]:
        return self._display.snapshot()

    @property
    def state(self) -> ChatState:
        return self._state

    @property
    def is_sending(self) -> bool:
        return self._state is not ChatState.IDLE

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def tool_usage(self) -> ToolUsage:
        return self._tool_usage

    @property
    def epoch(self) -> int:
        return self._epochs.current

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Call ``listener`` after every observable change; returns a remover."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # ------------------------------------------------------------------
    # Caller operations
    # ------------------------------------------------------------------

    async def submit(self, text: str) -> None:
        """Send ``text`` as a new user turn, or run it as a slash command."""

        trimmed = (text or "").strip()
        if not trimmed or self.is_sending:
            return

        command_result = await self._commands.handle(trimmed, self._command_context)
        if command_result is not None:
            self._apply_command(trimmed, command_result)
            return

        self._last_error = None
        epoch = self._epochs.bump()
        index = len(self._history)
        user_message = Message.user(trimmed)
        self._history.append(user_message)
        self._display.append(DisplayMessage.from_message(user_message, history_index=index))
        await self._run_turn(epoch)

    def cancel(self) -> None:
        """Abandon the in-flight turn; its late results are discarded."""

        if not self.is_sending:
            return
        epoch = self._epochs.cancel()
        LOGGER.debug("Cancelled turn; epoch now %s", epoch)
        self._display.discard_streams()
        del self._history[self._checkpoint:]
        if self._tool_usage.in_progress:
            self._tool_usage = replace(self._tool_usage, in_progress=False, last_used_at=self._wall_clock())
        self._tool_activity = None
        self._last_error = None
        self._state = ChatState.IDLE
        self._notify()

    async def regenerate_last(self) -> None:
        """Drop the last reply and resend the most recent user turn."""

        if self.is_sending:
            return
        index = self._last_user_index()
        if index is None:
            return
        del self._history[index + 1:]
        self._display.truncate_after_history_index(index)
        self._last_error = None
        epoch = self._epochs.bump()
        LOGGER.debug("Regenerating turn %s under epoch %s", index, epoch)
        await self._run_turn(epoch)

    def clear(self) -> None:
        """Empty History and the display list."""

        if self.is_sending:
            self.cancel()
        if not self._history and not len(self._display) and self._last_error is None:
            return
        self._history.clear()
        self._display.clear()
        self._checkpoint = 0
        self._last_error = None
        self._notify()

    # ------------------------------------------------------------------
    # Tool dispatcher host operations
    # ------------------------------------------------------------------

    def append_history(self, epoch: int, messages: Sequence[Message]) -> bool:
        if not self._epochs.is_current(epoch):
            return False
        self._history.extend(messages)
        self._notify()
        return True

    def request_messages(self, extra: Sequence[Message] = ()) -> list[Message]:
        """Build a request: system prompt, History, then ``extra``.

        Images are only sent with ``extra``; History entries go without them.
        """

        messages: list[Message] = []
        if self.system_prompt:
            messages.append(Message.system(self.system_prompt))
        messages.extend(message.without_images() for message in self._history)
        messages.extend(extra)
        return messages

    def update_tool_usage(self, epoch: int, usage: ToolUsage) -> None:
        if not self._epochs.is_current(epoch):
            return
        self._tool_usage = usage
        self._notify()

    def mark_tool_used(self, finished_at: float) -> None:
        self._tool_usage = replace(self._tool_usage, last_used_at=finished_at)
        self._notify()

    def set_tool_activity(self, epoch: int, label: str | None) -> None:
        if self._epochs.is_current(epoch):
            self._tool_activity = label

    # ------------------------------------------------------------------
    # Turn execution
    # ------------------------------------------------------------------

    async def _run_turn(self, epoch: int) -> None:
        self._checkpoint = len(self._history)
        self._tool_activity = None
        self._state = ChatState.SENDING
        self._notify()

        outcome: Outcome[Any]
        try:
            outcome = await self._decoder.decode(
                self.request_messages(),
                epoch,
                self._decoder.now(),
                model=self.model,
                tools=self._tool_specs(),
            )
            if isinstance(outcome, Ok) and isinstance(outcome.value, ToolCallBatch):
                if not self._epochs.is_current(epoch):
                    return
                self._state = ChatState.DISPATCHING
                self._notify()
                outcome = await self._dispatcher.run(
                    outcome.value,
                    epoch=epoch,
                    host=self,
                    model=self.model,
                    tools=self._tool_specs(),
                )
        except Exception as exc:
            LOGGER.exception("Chat turn failed unexpectedly")
            outcome = Err(exc)
        finally:
            if self._epochs.is_current(epoch) and self._state is not ChatState.IDLE:
                self._state = ChatState.IDLE

        if isinstance(outcome, Stale) or not self._epochs.is_current(epoch):
            LOGGER.debug("Dropping stale turn result for epoch %s", epoch)
            return
        if isinstance(outcome, Err):
            self._fail(outcome.error)
            return
        self._commit(outcome.value)

    def _commit(self, reply: AssistantReply) -> None:
        index = len(self._history)
        self._history.append(reply.message)
        display = DisplayMessage(
            role="assistant",
            content=reply.message.content,
            thinking=reply.thinking if self._decoder.show_thinking else None,
            thinking_duration_ms=reply.thinking_duration_ms,
            tool_activity_label=self._tool_activity,
            history_index=index,
        )
        self._display.finalize_stream(reply.stream_token, display)
        self._tool_activity = None
        self._notify()

    def _fail(self, error: BaseException) -> None:
        del self._history[self._checkpoint:]
        self._display.discard_streams()
        self._tool_activity = None
        self._last_error = describe_error(error, DEFAULT_ERROR_MESSAGE)
        LOGGER.debug("Turn failed: %s", self._last_error)
        self._notify()

    def _tool_specs(self) -> list[Mapping[str, Any]] | None:
        if not self.tools_enabled:
            return None
        return self._registry.to_tool_specs() or None

    def _last_user_index(self) -> int | None:
        for position in range(len(self._history) - 1, -1, -1):
            if self._history[position].role == "user":
                return position
        return None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _apply_command(self, raw: str, result: CommandResult) -> None:
        if not result.ok:
            self._last_error = result.error or "Command failed."
            self._notify()
            return
        self._last_error = None
        if result.clear_history:
            self.clear()
            return
        if result.reply:
            self._display.append(DisplayMessage(role="user", content=raw))
            self._display.append(DisplayMessage(role="assistant", content=result.reply))
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                LOGGER.warning("Orchestrator listener failed", exc_info=True)


__all__ = ["ChatState", "ConversationOrchestrator", "DEFAULT_ERROR_MESSAGE"]
