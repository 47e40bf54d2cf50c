from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from flemma.model import Diagnostic, ToolResult

from .registry import ExecutionResult

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = (None, "", "text", "json")
UNKNOWN_ERROR = "Unknown error"


def _is_json_friendly(obj: Any) -> bool:
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return True
    if isinstance(obj, (list, tuple)):
        return all(_is_json_friendly(v) for v in obj)
    if isinstance(obj, dict):
        return all(isinstance(k, str) and _is_json_friendly(v) for k, v in obj.items())
    return False


def dumps_compact(value: Any) -> str:
    """Serialize tool output as compact JSON, never a Python repr."""

    if _is_json_friendly(value):
        try:
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        except (ValueError, OverflowError):
            pass
    return json.dumps({"value": _safe_repr(value)}, ensure_ascii=False, separators=(",", ":"))


def _safe_repr(value: Any) -> str:
    try:
        return repr(value)
    except ValueError:
        # Integers past the interpreter's digit limit have no decimal form.
        return f"<{type(value).__name__} too large to display>"


@dataclass(frozen=True, slots=True)
class FormattedResult:
    content: str
    is_error: bool
    format: str | None = None


def _output_text(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, (dict, list)):
        return dumps_compact(output)
    return str(output)


def format_execution_result(result: ExecutionResult) -> FormattedResult:
    """Render an execution outcome as result-slot text.

    Successful dict/list output becomes compact JSON tagged `format="json"`.
    Failures carry the error text, followed by any partial output.
    """

    if not result.success:
        content = result.error or UNKNOWN_ERROR
        partial = _output_text(result.output)
        if partial:
            content = f"{content}\n\nPartial output:\n{partial}"
        return FormattedResult(content=content, is_error=True)

    if isinstance(result.output, (dict, list)):
        return FormattedResult(content=dumps_compact(result.output), is_error=False, format="json")
    return FormattedResult(content=_output_text(result.output), is_error=False)


@dataclass(frozen=True, slots=True)
class DecodedResult:
    text: str
    # Parsed value for `format="json"` content, when it decodes.
    value: Any = None
    diagnostic: Diagnostic | None = None


def decode_result(result: ToolResult) -> DecodedResult:
    """Turn a stored result back into wire text.

    Unsupported or undecodable formats keep the raw content and report a
    warning diagnostic instead of failing the request.
    """

    fmt = result.format
    if fmt not in SUPPORTED_FORMATS:
        logger.warning(
            "tool_result_unsupported_format",
            extra={"tool_use_id": result.tool_use_id, "format": fmt},
        )
        return DecodedResult(
            text=result.content,
            diagnostic=Diagnostic(
                severity="warning",
                message=f"Unsupported tool result format {fmt!r}; sending raw content",
                tool_use_id=result.tool_use_id,
            ),
        )

    if fmt == "json":
        try:
            value = json.loads(result.content)
        except ValueError:
            return DecodedResult(
                text=result.content,
                diagnostic=Diagnostic(
                    severity="warning",
                    message="Tool result is tagged json but does not parse; sending raw content",
                    tool_use_id=result.tool_use_id,
                ),
            )
        return DecodedResult(text=dumps_compact(value), value=value)

    return DecodedResult(text=result.content)
