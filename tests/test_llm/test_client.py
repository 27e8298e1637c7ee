"""Tests for the streaming completion client."""

import asyncio
import json

import httpx
import pytest

from nexus_chat.llm.client import (
    TransportError,
    parse_completion_body,
    parse_delta_content,
)
from nexus_chat.models import ChatRole, Turn

TURNS = [
    Turn(role=ChatRole.SYSTEM, content="Be brief."),
    Turn(role=ChatRole.USER, content="Hello"),
]


def _completion(content: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


class _BlockingStream(httpx.AsyncByteStream):
    """Delivers some chunks, then either fails or hangs forever."""

    def __init__(self, chunks: list[bytes], error: Exception | None = None):
        self.chunks = chunks
        self.error = error

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error
        await asyncio.Event().wait()


class TestParseDeltaContent:
    """Tests for single stream event parsing."""

    def test_delta_text(self):
        payload = json.dumps({"choices": [{"delta": {"content": "Hi"}}]})
        assert parse_delta_content(payload) == "Hi"

    def test_undecodable_event_skipped(self):
        assert parse_delta_content("{not json") == ""

    def test_event_without_delta_skipped(self):
        assert parse_delta_content(json.dumps({"choices": [{"finish_reason": "stop"}]})) == ""
        assert parse_delta_content(json.dumps({"choices": []})) == ""
        assert parse_delta_content("[1, 2]") == ""

    def test_error_event_raises(self):
        with pytest.raises(TransportError, match="quota exceeded"):
            parse_delta_content(json.dumps({"error": {"message": "quota exceeded"}}))

    def test_gateway_page_raises(self):
        with pytest.raises(TransportError) as exc_info:
            parse_delta_content("502 Bad Gateway <html>")
        assert exc_info.value.status_code == 502


class TestParseCompletionBody:
    """Tests for non-streaming body parsing."""

    def test_content(self):
        assert parse_completion_body('{"choices": [{"message": {"content": "ok"}}]}') == "ok"

    def test_missing_content(self):
        with pytest.raises(TransportError, match="no content"):
            parse_completion_body('{"choices": []}')

    def test_error_string(self):
        with pytest.raises(TransportError, match="bad key"):
            parse_completion_body('{"error": "bad key"}')

    def test_malformed(self):
        with pytest.raises(TransportError, match="Malformed"):
            parse_completion_body("<html>")


class TestStream:
    """Tests for streaming completions."""

    async def test_delivers_deltas_in_order(self, make_client, sse_body):
        client = make_client(lambda request: httpx.Response(200, content=sse_body("Hi ", "there", "!")))
        deltas = []

        await client.stream(TURNS, deltas.append)

        assert deltas == ["Hi ", "there", "!"]
        assert "".join(deltas) == "Hi there!"
        assert not client.is_busy

    async def test_skips_non_data_and_malformed_lines(self, make_client, sse_body):
        body = b": keep-alive\n\nevent: ping\n\ndata: {broken\n\ndata:\n\n" + sse_body("ok")
        client = make_client(lambda request: httpx.Response(200, content=body))
        deltas = []

        await client.stream(TURNS, deltas.append)

        assert deltas == ["ok"]

    async def test_stops_at_done(self, make_client, sse_body):
        body = sse_body("a") + sse_body("ignored", done=False)
        client = make_client(lambda request: httpx.Response(200, content=body))
        deltas = []

        await client.stream(TURNS, deltas.append)

        assert deltas == ["a"]

    async def test_ends_without_done(self, make_client, sse_body):
        client = make_client(lambda request: httpx.Response(200, content=sse_body("a", "b", done=False)))
        deltas = []

        await client.stream(TURNS, deltas.append)

        assert deltas == ["a", "b"]

    async def test_request_payload(self, make_client, sse_body):
        captured = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, content=sse_body("x"))

        client = make_client(handler, api_key="secret", temperature=0.5, top_p=0.7)
        await client.stream(TURNS, lambda delta: None)

        request = captured[0]
        body = json.loads(request.content)
        assert request.method == "POST"
        assert body == {
            "model": "test-model",
            "temperature": 0.5,
            "top_p": 0.7,
            "stream": True,
            "messages": [
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": "Hello"},
            ],
        }
        assert request.headers["Accept"] == "text/event-stream"
        assert request.headers["Authorization"] == "Bearer secret"

    async def test_retries_with_linear_backoff(self, make_client, sse_body, sleeps):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, content=sse_body("finally"))

        client = make_client(handler, retry_delay=0.5)
        deltas = []

        await client.stream(TURNS, deltas.append)

        assert len(calls) == 3
        assert sleeps.delays == [0.5, 1.0]
        assert deltas == ["finally"]

    async def test_surfaces_last_error_after_all_attempts(self, make_client, sleeps):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500, text="boom")

        client = make_client(handler)

        with pytest.raises(TransportError) as exc_info:
            await client.stream(TURNS, lambda delta: None)

        assert exc_info.value.status_code == 500
        assert len(calls) == 3
        assert len(sleeps.delays) == 2
        assert sleeps.delays[0] < sleeps.delays[1]

    async def test_network_error_retried(self, make_client, sse_body, sleeps):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, content=sse_body("ok"))

        client = make_client(handler)
        deltas = []

        await client.stream(TURNS, deltas.append)

        assert deltas == ["ok"]
        assert len(sleeps.delays) == 1

    async def test_gateway_page_retried(self, make_client, sse_body):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(502, text="502 Bad Gateway")
            return httpx.Response(200, content=sse_body("ok"))

        client = make_client(handler)
        deltas = []

        await client.stream(TURNS, deltas.append)

        assert deltas == ["ok"]
        assert len(calls) == 2

    async def test_error_event_after_output_not_retried(self, make_client, sse_body, sleeps):
        calls = []
        error_event = b'data: {"error": {"message": "overloaded"}}\n\n'

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, content=sse_body("Hel", done=False) + error_event)

        client = make_client(handler)
        deltas = []

        with pytest.raises(TransportError, match="overloaded") as exc_info:
            await client.stream(TURNS, deltas.append)

        assert not exc_info.value.retriable
        assert deltas == ["Hel"]
        assert len(calls) == 1
        assert sleeps.delays == []

    async def test_connection_drop_after_output_not_retried(self, make_client, sse_body):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            stream = _BlockingStream([sse_body("partial", done=False)], error=httpx.ReadError("reset"))
            return httpx.Response(200, stream=stream)

        client = make_client(handler)
        deltas = []

        with pytest.raises(TransportError, match="Network error"):
            await client.stream(TURNS, deltas.append)

        assert deltas == ["partial"]
        assert len(calls) == 1

    async def test_error_event_before_output_retried(self, make_client, sse_body):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(200, content=b'data: {"error": "busy"}\n\n')
            return httpx.Response(200, content=sse_body("ok"))

        client = make_client(handler)
        deltas = []

        await client.stream(TURNS, deltas.append)

        assert deltas == ["ok"]
        assert len(calls) == 2


class TestCancellation:
    """Tests for aborting an in-flight request."""

    async def test_cancel_active_stream(self, make_client, sse_body):
        client = make_client(
            lambda request: httpx.Response(200, stream=_BlockingStream([sse_body("first", done=False)]))
        )
        first_delta = asyncio.Event()
        deltas = []

        def on_delta(delta: str) -> None:
            deltas.append(delta)
            first_delta.set()

        task = asyncio.create_task(client.stream(TURNS, on_delta))
        await asyncio.wait_for(first_delta.wait(), timeout=5)
        assert client.is_busy

        assert client.cancel_active() is True
        with pytest.raises(asyncio.CancelledError):
            await task

        assert deltas == ["first"]
        assert not client.is_busy

    async def test_cancel_active_complete(self, make_client):
        entered = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            entered.set()
            await asyncio.Event().wait()

        client = make_client(handler)
        task = asyncio.create_task(client.complete(TURNS))
        await asyncio.wait_for(entered.wait(), timeout=5)

        assert client.cancel_active() is True
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not client.is_busy

    async def test_cancel_during_backoff(self, make_client):
        calls = []
        waiting = asyncio.Event()

        async def blocking_sleep(delay: float) -> None:
            waiting.set()
            await asyncio.Event().wait()

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503, text="unavailable")

        client = make_client(handler, sleep=blocking_sleep)
        task = asyncio.create_task(client.stream(TURNS, lambda delta: None))
        await asyncio.wait_for(waiting.wait(), timeout=5)

        assert client.cancel_active() is True
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(calls) == 1
        assert not client.is_busy

    async def test_cancel_when_idle(self, make_client):
        client = make_client(lambda request: httpx.Response(200))
        assert client.cancel_active() is False


class TestComplete:
    """Tests for non-streaming completions."""

    async def test_returns_content(self, make_client):
        captured = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(json.loads(request.content))
            return _completion("Hello there")

        client = make_client(handler)

        assert await client.complete(TURNS) == "Hello there"
        assert captured[0]["stream"] is False

    async def test_gateway_text_retried_then_surfaced(self, make_client, sleeps):
        client = make_client(lambda request: httpx.Response(200, text="502 Bad Gateway"))

        with pytest.raises(TransportError) as exc_info:
            await client.complete(TURNS)

        assert exc_info.value.status_code == 502
        assert len(sleeps.delays) == 2

    async def test_empty_body_retried(self, make_client):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(200, text="  ")
            return _completion("second time")

        client = make_client(handler)

        assert await client.complete(TURNS) == "second time"
        assert len(calls) == 2

    async def test_http_error_status(self, make_client):
        client = make_client(lambda request: httpx.Response(429, text="slow down"), max_attempts=1)

        with pytest.raises(TransportError, match="HTTP 429") as exc_info:
            await client.complete(TURNS)

        assert exc_info.value.status_code == 429

    async def test_async_context_manager(self, make_client):
        async with make_client(lambda request: _completion("ok")) as client:
            assert await client.complete(TURNS) == "ok"
