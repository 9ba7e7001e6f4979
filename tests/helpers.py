"""Fakes shared by the chat-core tests."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping, Sequence

from overlaychat.ai.ai_types import ConsentDecision
from overlaychat.ai.client import ChunkBus
from overlaychat.ai.orchestration.model_types import ChunkEvent

PENDING = object()


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 100.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class ScriptedBackend:
    """Backend that replays queued chunk scripts onto a :class:`ChunkBus`.

    Each ``stream_chat`` call consumes one script: a list of chunk bodies is
    published synchronously, an exception is raised, and ``PENDING`` records
    the correlation id without publishing so a test can push chunks later.
    """

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.bus = ChunkBus()
        self.clock = clock
        self.scripts: list[Any] = []
        self.chat_responses: list[Any] = []
        self.requests: list[dict[str, Any]] = []
        self.pending_ids: list[str] = []

    # Script helpers ------------------------------------------------------
    def queue_stream(self, *chunks: Mapping[str, Any], delay: float = 0.0) -> None:
        self.scripts.append((delay, list(chunks)))

    def queue_reply(self, content: str, *, reasoning: str | None = None, delay: float = 0.0) -> None:
        message: dict[str, Any] = {"role": "assistant", "content": content}
        if reasoning is not None:
            message["thinking"] = reasoning
        self.queue_stream({"message": message, "done": True}, delay=delay)

    def queue_tool_calls(self, *calls: tuple[str, Mapping[str, Any]]) -> None:
        payload = [{"function": {"name": name, "arguments": dict(arguments)}} for name, arguments in calls]
        self.queue_stream({"message": {"role": "assistant", "content": "", "tool_calls": payload}})

    def queue_failure(self, exc: BaseException) -> None:
        self.scripts.append(exc)

    def queue_pending(self) -> None:
        self.scripts.append(PENDING)

    def push(self, correlation_id: str, chunk: Mapping[str, Any]) -> None:
        self.bus.publish_payload({"stream_id": correlation_id, "chunk": dict(chunk)})

    # ChatBackend ---------------------------------------------------------
    def subscribe(self, handler):
        return self.bus.subscribe(handler)

    async def stream_chat(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        *,
        correlation_id: str,
    ) -> None:
        self.requests.append(
            {
                "model": model,
                "messages": [dict(message) for message in messages],
                "tools": tools,
                "correlation_id": correlation_id,
            }
        )
        if not self.scripts:
            raise AssertionError("No scripted stream left")
        script = self.scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        if script is PENDING:
            self.pending_ids.append(correlation_id)
            return
        delay, chunks = script
        if delay and self.clock is not None:
            self.clock.advance(delay)
        for chunk in chunks:
            self.push(correlation_id, chunk)

    async def chat(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> Mapping[str, Any]:
        self.requests.append({"model": model, "messages": [dict(m) for m in messages], "tools": tools})
        response = self.chat_responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class RecordingConsent:
    """Consent provider returning queued answers and recording every request."""

    def __init__(self, *answers: bool) -> None:
        self.answers = list(answers)
        self.requests: list[str] = []

    async def request_consent(self, tool_name: str) -> ConsentDecision:
        self.requests.append(tool_name)
        approved = self.answers.pop(0) if self.answers else True
        return ConsentDecision(approved=approved)


class GatedConsent:
    """Consent provider that blocks until the test releases it."""

    def __init__(self) -> None:
        self.requested = asyncio.Event()
        self.release = asyncio.Event()
        self.approved = True

    async def request_consent(self, tool_name: str) -> ConsentDecision:
        self.requested.set()
        await self.release.wait()
        return ConsentDecision(approved=self.approved)


async def settle(rounds: int = 10) -> None:
    """Let pending tasks run until they block on something real."""

    for _ in range(rounds):
        await asyncio.sleep(0)


def collect_events(bus: ChunkBus) -> list[ChunkEvent]:
    events: list[ChunkEvent] = []
    bus.subscribe(events.append)
    return events
