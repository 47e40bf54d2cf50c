from __future__ import annotations

import pytest

from flemma.providers.base import decode_tool_input, extract_error_message, parse_sse_line
from flemma.providers.errors import ProviderError, ProviderErrorKind, classify_error, is_context_overflow


@pytest.mark.parametrize(
    ("line", "kind", "value"),
    [
        ("", "blank", ""),
        ("   \r\n", "blank", ""),
        (": keep-alive", "comment", "keep-alive"),
        ("event: message_start", "event", "message_start"),
        ('data: {"a":1}', "data", '{"a":1}'),
        ("data:[DONE]", "done", ""),
    ],
)
def test_parse_sse_line(line: str, kind: str, value: str) -> None:
    parsed = parse_sse_line(line)
    assert parsed is not None
    assert (parsed.kind, parsed.value) == (kind, value)


def test_parse_sse_line_non_sse() -> None:
    assert parse_sse_line('{"error": {"message": "x"}}') is None


def test_decode_tool_input() -> None:
    assert decode_tool_input("", "t") == ({}, None)
    assert decode_tool_input('{"a": 1}', "t") == ({"a": 1}, None)

    value, diagnostic = decode_tool_input('{"a": ', "t")
    assert value == {}
    assert diagnostic is not None and diagnostic.severity == "warning" and diagnostic.tool_use_id == "t"

    value, diagnostic = decode_tool_input("[1, 2]", "t")
    assert value == {}
    assert diagnostic is not None and "list" in diagnostic.message


def test_extract_error_message_shapes() -> None:
    assert extract_error_message({"error": "plain"}) == "plain"
    assert extract_error_message({"type": "error", "error": {"type": "overloaded_error"}}) == "overloaded_error"
    assert extract_error_message([{"error": {"message": "from list", "status": "X"}}]) == "from list"
    assert extract_error_message({"nothing": 1}) is None

    with_details = {
        "error": {
            "message": "Invalid request",
            "details": [{"fieldViolations": [{"field": "contents[0]", "description": "empty"}]}],
        }
    }
    assert extract_error_message(with_details) == "Invalid request (contents[0]: empty)"


@pytest.mark.parametrize(
    ("message", "kind"),
    [
        ("prompt is too long: 210000 tokens > 200000 maximum", ProviderErrorKind.CONTEXT_OVERFLOW),
        ("This model's maximum context length is 128000 tokens", ProviderErrorKind.CONTEXT_OVERFLOW),
        (
            "The input token count (1048577) exceeds the maximum number of tokens allowed",
            ProviderErrorKind.CONTEXT_OVERFLOW,
        ),
        ("authentication_error: invalid x-api-key", ProviderErrorKind.AUTH),
        ("Incorrect API key provided: invalid_api_key", ProviderErrorKind.AUTH),
        ("Rate limit reached for requests", ProviderErrorKind.RATE_LIMITED),
        ("Overloaded", ProviderErrorKind.RATE_LIMITED),
        ("Response blocked by Vertex AI (SAFETY)", ProviderErrorKind.BLOCKED),
        ("something odd", ProviderErrorKind.OTHER),
    ],
)
def test_classify_error(message: str, kind: ProviderErrorKind) -> None:
    assert classify_error(message) is kind


def test_context_overflow_helper_and_status_fallback() -> None:
    assert is_context_overflow("Request too large for model")
    assert not is_context_overflow(None)

    assert ProviderError.from_message("nope", status_code=401).kind is ProviderErrorKind.AUTH
    assert ProviderError.from_message("nope", status_code=500).kind is ProviderErrorKind.OTHER
    # Message text wins over the status code.
    assert ProviderError.from_message("quota exceeded", status_code=400).kind is ProviderErrorKind.RATE_LIMITED
