from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from flemma.config.model import ProviderSettings
from flemma.conversation import Conversation
from flemma.model import Role, Text
from flemma.providers.anthropic import AnthropicAdapter
from flemma.providers.errors import ProviderErrorKind
from flemma.transport import BUSY_MESSAGE, INCOMPLETE_MESSAGE, ResponseOutcome, StreamingClient


def _sse(*events: dict[str, Any]) -> bytes:
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events).encode()


HELLO = _sse(
    {"type": "message_start", "message": {"usage": {"input_tokens": 5}}},
    {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello"}},
    {"type": "content_block_stop", "index": 0},
    {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 2}},
    {"type": "message_stop"},
)


def _conversation() -> Conversation:
    conv = Conversation()
    conv.append(Role.USER, Text("hi"))
    return conv


def _adapter() -> AnthropicAdapter:
    return AnthropicAdapter(ProviderSettings(api_key=None))


def _run(handler: Any, conv: Conversation, recorder: Any) -> ResponseOutcome:
    async def main() -> ResponseOutcome:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await StreamingClient(http).send(conv, _adapter(), recorder.callbacks)

    return asyncio.run(main())


def test_successful_stream(monkeypatch: pytest.MonkeyPatch, recorder: Any) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    seen: dict[str, Any] = {}
    conv = _conversation()

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        seen["in_flight"] = conv.request_in_flight
        return httpx.Response(200, content=HELLO, headers={"content-type": "text/event-stream"})

    outcome = _run(handler, conv, recorder)

    assert outcome.ok
    assert seen["url"] == "https://api.anthropic.com/v1/messages"
    assert seen["headers"]["x-api-key"] == "sk-test"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["body"]["messages"][0]["content"][0]["text"] == "hi"
    assert seen["in_flight"] is True
    assert conv.request_in_flight is False
    assert recorder.content == [Text("Hello")]
    assert recorder.completions == 1


def test_http_error_is_classified(recorder: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = {"type": "error", "error": {"type": "rate_limit_error", "message": "Number of requests exceeded"}}
        return httpx.Response(429, json=body)

    outcome = _run(handler, _conversation(), recorder)

    assert outcome.error is not None
    assert outcome.error.kind is ProviderErrorKind.RATE_LIMITED
    assert outcome.error.status_code == 429
    assert outcome.error.message == "Number of requests exceeded"
    assert [e.message for e in recorder.errors] == ["Number of requests exceeded"]
    assert recorder.completions == 0


def test_http_error_with_plain_body(recorder: Any) -> None:
    outcome = _run(lambda request: httpx.Response(401, text="nope"), _conversation(), recorder)
    assert outcome.error is not None
    assert outcome.error.kind is ProviderErrorKind.AUTH
    assert outcome.error.message == "nope"


def test_stream_without_completion_reports_error(recorder: Any) -> None:
    partial = _sse({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hel"}})
    outcome = _run(lambda request: httpx.Response(200, content=partial), _conversation(), recorder)

    assert outcome.completed is False
    assert outcome.error is not None and outcome.error.message == INCOMPLETE_MESSAGE
    assert recorder.content == [Text("Hel")]
    assert len(recorder.errors) == 1


def test_first_error_wins(recorder: Any) -> None:
    body = _sse(
        {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        {"type": "error", "error": {"type": "api_error", "message": "Internal"}},
    )
    outcome = _run(lambda request: httpx.Response(200, content=body), _conversation(), recorder)
    assert outcome.error is not None and outcome.error.message == "Overloaded"
    assert [e.message for e in recorder.errors] == ["Overloaded"]


def test_transport_failures(recorder: Any) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    refused = _run(refuse, _conversation(), recorder)
    assert refused.error is not None and refused.error.message.startswith("HTTP error: ")

    timed_out = _run(slow, _conversation(), recorder)
    assert timed_out.error is not None and timed_out.error.message == "Request timed out"


def test_busy_conversation_is_rejected(recorder: Any) -> None:
    calls: list[httpx.Request] = []
    conv = _conversation()
    conv.request_in_flight = True

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, content=HELLO)

    outcome = _run(handler, conv, recorder)
    assert outcome.error is not None and outcome.error.message == BUSY_MESSAGE
    assert calls == []
    assert conv.request_in_flight is True


def test_cancel_in_flight_request(recorder: Any) -> None:
    conv = _conversation()

    async def main() -> ResponseOutcome:
        started = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            started.set()
            await asyncio.Event().wait()
            return httpx.Response(200, content=HELLO)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = StreamingClient(http)
            assert client.cancel() is False
            send = asyncio.create_task(client.send(conv, _adapter(), recorder.callbacks))
            await started.wait()
            assert client.busy
            assert client.cancel() is True
            return await send

    outcome = asyncio.run(main())
    assert outcome.cancelled is True
    assert outcome.error is None
    assert conv.request_in_flight is False
    assert recorder.errors == []
