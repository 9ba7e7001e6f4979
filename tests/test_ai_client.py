"""Tests for the Ollama and OpenAI-compatible backends and the chunk bus."""

from __future__ import annotations

import asyncio
import base64
import json
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Iterable, cast

import httpx
import pytest
from openai import APIConnectionError, AsyncOpenAI

from overlaychat.ai.client import (
    ChunkBus,
    ClientSettings,
    OllamaClient,
    OpenAICompatClient,
    create_backend,
    describe_transport_error,
    openai_base_url,
    to_openai_messages,
)
from overlaychat.ai.errors import BackendError, BackendUnreachable
from overlaychat.ai.orchestration.epoch import RequestEpochTracker
from overlaychat.ai.orchestration.model_types import ChunkEvent, DisplayList, Err, Message
from overlaychat.ai.orchestration.stream_decoder import StreamDecoder
from tests.helpers import collect_events

_BASE_URL = "http://ollama.test"
_USER = [{"role": "user", "content": "hi"}]


def _settings(**overrides: Any) -> ClientSettings:
    values: dict[str, Any] = {
        "base_url": _BASE_URL,
        "max_retries": 2,
        "retry_min_seconds": 0,
        "retry_max_seconds": 0,
    }
    values.update(overrides)
    return ClientSettings(**values)


def _ndjson(*chunks: dict[str, Any]) -> bytes:
    return "".join(json.dumps(chunk) + "\n" for chunk in chunks).encode("utf-8")


def _ollama(handler: Callable[[httpx.Request], httpx.Response], **overrides: Any) -> OllamaClient:
    transport = httpx.MockTransport(handler)
    client = httpx.AsyncClient(base_url=_BASE_URL, transport=transport)
    return OllamaClient(_settings(**overrides), client=client)


class _BreakingByteStream(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield _ndjson({"message": {"content": "partial"}})
        raise RuntimeError("reader blew up")


# -----------------------------------------------------------------------------
# ChunkBus
# -----------------------------------------------------------------------------


class TestChunkBus:
    def test_publish_reaches_subscribers_until_unsubscribed(self) -> None:
        bus = ChunkBus()
        received: list[ChunkEvent] = []
        unsubscribe = bus.subscribe(received.append)

        bus.publish(ChunkEvent(correlation_id="a"))
        unsubscribe()
        bus.publish(ChunkEvent(correlation_id="b"))

        assert [event.correlation_id for event in received] == ["a"]
        assert bus.subscriber_count == 0

    def test_failing_handler_does_not_block_others(self) -> None:
        bus = ChunkBus()
        received: list[ChunkEvent] = []

        def _broken(event: ChunkEvent) -> None:
            raise RuntimeError("boom")

        bus.subscribe(_broken)
        bus.subscribe(received.append)

        bus.publish(ChunkEvent(correlation_id="a"))

        assert len(received) == 1

    def test_publish_payload_normalizes_nested_shape(self) -> None:
        bus = ChunkBus()

        event = bus.publish_payload(
            {"stream_id": "s1", "chunk": {"message": {"content": "hi", "thinking": "hm"}, "done": True}}
        )

        assert event.correlation_id == "s1"
        assert event.done is True
        assert event.message is not None
        assert event.message.content == "hi"
        assert event.message.reasoning == "hm"


def test_describe_transport_error_variants() -> None:
    request = httpx.Request("POST", f"{_BASE_URL}/api/chat")

    assert describe_transport_error(httpx.ReadTimeout("slow", request=request)) == "timeout while connecting to backend"
    assert describe_transport_error(httpx.ConnectError("nope", request=request)) == "connection refused by backend"
    assert describe_transport_error(ValueError("odd")) == "request error: odd"


# -----------------------------------------------------------------------------
# Ollama
# -----------------------------------------------------------------------------


class TestOllamaClient:
    @pytest.mark.asyncio
    async def test_stream_publishes_chunks_in_order(self) -> None:
        seen: list[dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                content=_ndjson(
                    {"message": {"role": "assistant", "content": "Hel"}, "done": False},
                    {"message": {"role": "assistant", "content": "lo"}, "done": False},
                    {"message": {"role": "assistant", "content": ""}, "done": True},
                ),
            )

        client = _ollama(handler)
        events = collect_events(client.bus)

        await client.stream_chat("llama3", _USER, correlation_id="stream-1")
        await client.wait_idle()
        await client.aclose()

        assert seen[0] == {"model": "llama3", "messages": _USER, "stream": True}
        assert [event.correlation_id for event in events] == ["stream-1"] * 3
        assert [event.message.content for event in events] == ["Hel", "lo", ""]
        assert events[-1].done is True

    @pytest.mark.asyncio
    async def test_tools_are_forwarded(self) -> None:
        seen: list[dict[str, Any]] = []
        tools = [{"type": "function", "function": {"name": "read_file"}}]

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, content=_ndjson({"done": True}))

        client = _ollama(handler)
        await client.stream_chat("llama3", _USER, tools, correlation_id="s")
        await client.wait_idle()
        await client.aclose()

        assert seen[0]["tools"] == tools

    @pytest.mark.asyncio
    async def test_stream_without_done_reports_error(self) -> None:
        client = _ollama(
            lambda request: httpx.Response(200, content=_ndjson({"message": {"content": "partial"}}))
        )
        events = collect_events(client.bus)

        await client.stream_chat("llama3", _USER, correlation_id="s")
        await client.wait_idle()
        await client.aclose()

        assert events[-1].error == "stream ended before completion"

    @pytest.mark.asyncio
    async def test_error_line_ends_stream(self) -> None:
        client = _ollama(lambda request: httpx.Response(200, content=_ndjson({"error": "model not found"})))
        events = collect_events(client.bus)

        await client.stream_chat("llama3", _USER, correlation_id="s")
        await client.wait_idle()
        await client.aclose()

        assert len(events) == 1
        assert events[0].error == "model not found"

    @pytest.mark.asyncio
    async def test_unexpected_stream_failure_resolves_the_turn(self) -> None:
        client = _ollama(lambda request: httpx.Response(200, stream=_BreakingByteStream()))
        epochs = RequestEpochTracker()
        decoder = StreamDecoder(client, epochs, DisplayList())

        outcome = await asyncio.wait_for(
            decoder.run([Message.user("hi")], epochs.bump(), decoder.now(), model="llama3"),
            timeout=1.0,
        )
        await client.aclose()

        assert isinstance(outcome, Err)
        assert outcome.error.message == "request error: reader blew up"

    @pytest.mark.asyncio
    async def test_non_200_raises_unreachable(self) -> None:
        client = _ollama(lambda request: httpx.Response(404, text="model not found"))

        with pytest.raises(BackendUnreachable) as excinfo:
            await client.stream_chat("llama3", _USER, correlation_id="s")
        await client.aclose()

        assert str(excinfo.value) == "non-200 from backend: 404 model not found"

    @pytest.mark.asyncio
    async def test_connect_errors_are_retried_then_reported(self) -> None:
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            raise httpx.ConnectError("refused", request=request)

        client = _ollama(handler, max_retries=3)

        with pytest.raises(BackendUnreachable) as excinfo:
            await client.stream_chat("llama3", _USER, correlation_id="s")
        await client.aclose()

        assert len(attempts) == 3
        assert str(excinfo.value) == "connection refused by backend"

    @pytest.mark.asyncio
    async def test_images_are_base64_encoded(self, tmp_path: Path) -> None:
        image = tmp_path / "shot.png"
        image.write_bytes(b"png-bytes")
        seen: list[dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"message": {"role": "assistant", "content": "ok"}, "done": True})

        client = _ollama(handler)
        await client.chat("llava", [{"role": "user", "content": "look", "images": [str(image)]}])
        await client.aclose()

        assert seen[0]["messages"][0]["images"] == [base64.b64encode(b"png-bytes").decode("ascii")]
        assert seen[0]["stream"] is False

    @pytest.mark.asyncio
    async def test_chat_returns_body(self) -> None:
        body = {"message": {"role": "assistant", "content": "Hello"}, "done": True}
        client = _ollama(lambda request: httpx.Response(200, json=body))

        result = await client.chat("llama3", _USER)
        await client.aclose()

        assert result == body

    @pytest.mark.asyncio
    async def test_chat_error_field_raises_backend_error(self) -> None:
        client = _ollama(lambda request: httpx.Response(200, json={"error": "out of memory"}))

        with pytest.raises(BackendError, match="out of memory"):
            await client.chat("llama3", _USER)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_health_check(self) -> None:
        ok = _ollama(lambda request: httpx.Response(200, json={"models": [{"name": "llama3"}]}))
        down = _ollama(lambda request: httpx.Response(500, text="boom"))

        await ok.health_check()
        assert await ok.list_models() == ["llama3"]
        with pytest.raises(BackendUnreachable, match="non-200 from backend: 500 boom"):
            await down.health_check()

        await ok.aclose()
        await down.aclose()


# -----------------------------------------------------------------------------
# OpenAI-compatible
# -----------------------------------------------------------------------------


class _FakeStream:
    def __init__(self, chunks: Iterable[Any]):
        self._iterator = iter(list(chunks))

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> Any:
        try:
            return next(self._iterator)
        except StopIteration as exc:
            raise StopAsyncIteration from exc


class _BreakingStream(_FakeStream):
    async def __anext__(self) -> Any:
        try:
            return next(self._iterator)
        except StopIteration:
            raise RuntimeError("iterator blew up") from None


class _FakeCompletions:
    def __init__(self, responses: list[Any]):
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class _FakeModels:
    async def list(self) -> SimpleNamespace:
        return SimpleNamespace(data=[SimpleNamespace(id="gpt-oss:20b")])


def _make_openai(*responses: Any) -> tuple[OpenAICompatClient, _FakeCompletions]:
    completions = _FakeCompletions(list(responses))
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions), models=_FakeModels())
    client = OpenAICompatClient(_settings(), client=cast(AsyncOpenAI, fake))
    return client, completions


def _chunk(*, content: str | None = None, reasoning: str | None = None, tool_calls=None, finish: str | None = None):
    delta = SimpleNamespace(content=content, reasoning_content=reasoning, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish)])


def _call_delta(index: int, *, call_id: str | None = None, name: str | None = None, arguments: str | None = None):
    return SimpleNamespace(index=index, id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


class TestOpenAICompatClient:
    @pytest.mark.asyncio
    async def test_stream_publishes_content_and_done(self) -> None:
        stream = _FakeStream([_chunk(reasoning="hm"), _chunk(content="Hi"), _chunk(finish="stop")])
        client, completions = _make_openai(stream)
        events = collect_events(client.bus)

        await client.stream_chat("gpt-oss", _USER, correlation_id="s1")
        await client.wait_idle()

        assert completions.calls[0]["stream"] is True
        assert completions.calls[0]["messages"] == [{"role": "user", "content": "hi"}]
        assert events[0].message.reasoning == "hm"
        assert events[1].message.content == "Hi"
        assert events[-1].done is True

    @pytest.mark.asyncio
    async def test_tool_call_fragments_are_accumulated(self) -> None:
        stream = _FakeStream(
            [
                _chunk(tool_calls=[_call_delta(0, call_id="call_a", name="read_file", arguments='{"pa')]),
                _chunk(tool_calls=[_call_delta(0, arguments='th": "/x"}')]),
                _chunk(finish="tool_calls"),
            ]
        )
        client, _ = _make_openai(stream)
        events = collect_events(client.bus)

        await client.stream_chat("gpt-oss", _USER, correlation_id="s1")
        await client.wait_idle()

        assert len(events) == 1
        call = events[0].message.tool_calls[0]
        assert call.name == "read_file"
        assert call.arguments == {"path": "/x"}
        assert call.call_id == "call_a"

    @pytest.mark.asyncio
    async def test_stream_without_finish_reports_error(self) -> None:
        client, _ = _make_openai(_FakeStream([_chunk(content="partial")]))
        events = collect_events(client.bus)

        await client.stream_chat("gpt-oss", _USER, correlation_id="s1")
        await client.wait_idle()

        assert events[-1].error == "stream ended before completion"

    @pytest.mark.asyncio
    async def test_unexpected_iteration_failure_publishes_error(self) -> None:
        client, _ = _make_openai(_BreakingStream([_chunk(content="partial")]))
        events = collect_events(client.bus)

        await client.stream_chat("gpt-oss", _USER, correlation_id="s1")
        await client.wait_idle()

        assert events[0].message.content == "partial"
        assert events[-1].error == "request error: iterator blew up"

    @pytest.mark.asyncio
    async def test_connection_errors_become_unreachable(self) -> None:
        request = httpx.Request("POST", "http://ollama.test/v1/chat/completions")
        client, completions = _make_openai(
            APIConnectionError(request=request),
            APIConnectionError(request=request),
        )

        with pytest.raises(BackendUnreachable, match="connection refused by backend"):
            await client.stream_chat("gpt-oss", _USER, correlation_id="s1")

        assert len(completions.calls) == 2

    @pytest.mark.asyncio
    async def test_chat_maps_completion_to_native_shape(self) -> None:
        message = SimpleNamespace(content="Hello", reasoning_content="thought", tool_calls=None)
        completion = SimpleNamespace(choices=[SimpleNamespace(message=message)])
        client, completions = _make_openai(completion)

        result = await client.chat("gpt-oss", _USER)

        assert completions.calls[0]["stream"] is False
        assert result == {
            "message": {"role": "assistant", "content": "Hello", "reasoning": "thought"},
            "done": True,
        }

    @pytest.mark.asyncio
    async def test_health_check_and_models(self) -> None:
        client, _ = _make_openai()

        await client.health_check()

        assert await client.list_models() == ["gpt-oss:20b"]


class TestOpenAIMessages:
    def test_tool_results_get_matching_call_ids(self) -> None:
        messages = [
            {"role": "user", "content": "read it"},
            {"role": "assistant", "content": "", "tool_calls": [{"function": {"name": "read_file", "arguments": {"path": "/x"}}}]},
            {"role": "tool", "content": '{"content": "data"}', "tool_name": "read_file"},
        ]

        converted = to_openai_messages(messages)

        call = converted[1]["tool_calls"][0]
        assert call["id"] == "call_1"
        assert call["function"] == {"name": "read_file", "arguments": '{"path": "/x"}'}
        assert converted[1]["content"] is None
        assert converted[2] == {"role": "tool", "tool_call_id": "call_1", "content": '{"content": "data"}'}

    def test_images_become_data_url_parts(self, tmp_path: Path) -> None:
        image = tmp_path / "shot.png"
        image.write_bytes(b"png")

        converted = to_openai_messages([{"role": "user", "content": "look", "images": [str(image)]}])

        parts = converted[0]["content"]
        assert parts[0] == {"type": "text", "text": "look"}
        assert parts[1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,cG5n"}}

    def test_base_url_gets_v1_suffix_once(self) -> None:
        assert openai_base_url("http://localhost:11434/") == "http://localhost:11434/v1"
        assert openai_base_url("http://localhost:8000/v1") == "http://localhost:8000/v1"


# -----------------------------------------------------------------------------
# Factory
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_backend_by_kind() -> None:
    ollama = create_backend("ollama", _settings())
    openai_backend = create_backend("OpenAI", _settings())

    assert isinstance(ollama, OllamaClient)
    assert isinstance(openai_backend, OpenAICompatClient)

    await ollama.aclose()
    await openai_backend.aclose()


def test_create_backend_rejects_unknown_kind() -> None:
    with pytest.raises(ValueError, match="Unknown backend"):
        create_backend("llamafile", _settings())
