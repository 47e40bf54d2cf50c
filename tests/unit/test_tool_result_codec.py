from __future__ import annotations

import json

from flemma.model import ToolResult
from flemma.tools.registry import ExecutionResult
from flemma.tools.result_codec import UNKNOWN_ERROR, decode_result, dumps_compact, format_execution_result


def test_dict_output_is_compact_json() -> None:
    formatted = format_execution_result(ExecutionResult.ok({"b": [1, 2], "a": "ü"}))
    assert formatted.content == '{"b":[1,2],"a":"ü"}'
    assert formatted.format == "json"
    assert formatted.is_error is False


def test_scalar_output_is_plain_text() -> None:
    assert format_execution_result(ExecutionResult.ok(42)).content == "42"
    assert format_execution_result(ExecutionResult.ok(None)).content == ""
    assert format_execution_result(ExecutionResult.ok("hi")).format is None


def test_failure_text() -> None:
    assert format_execution_result(ExecutionResult(success=False)).content == UNKNOWN_ERROR
    partial = format_execution_result(ExecutionResult.fail("timed out", output={"lines": 3}))
    assert partial.is_error is True
    assert partial.content == 'timed out\n\nPartial output:\n{"lines":3}'


def test_non_json_values_never_use_repr_at_top_level() -> None:
    out = json.loads(dumps_compact({"when": object()}))
    assert set(out) == {"value"}


def test_integers_past_the_digit_limit_fall_back() -> None:
    out = json.loads(dumps_compact({"result": 10**5000}))
    assert out == {"value": "<dict too large to display>"}


def test_decode_json_and_text() -> None:
    decoded = decode_result(ToolResult(tool_use_id="t", content='{ "x" : 1 }', format="json"))
    assert decoded.text == '{"x":1}'
    assert decoded.value == {"x": 1}
    assert decoded.diagnostic is None

    assert decode_result(ToolResult(tool_use_id="t", content="plain")).text == "plain"


def test_decode_bad_format_keeps_raw_with_warning() -> None:
    unknown = decode_result(ToolResult(tool_use_id="t", content="<b>x</b>", format="html"))
    assert unknown.text == "<b>x</b>"
    assert unknown.diagnostic is not None and unknown.diagnostic.severity == "warning"

    broken = decode_result(ToolResult(tool_use_id="t", content="{nope", format="json"))
    assert broken.text == "{nope"
    assert broken.diagnostic is not None and broken.diagnostic.tool_use_id == "t"
