"""Shared provider adapter machinery.

An adapter is a stateful translator between the canonical model and one
vendor's wire format. `build_request` is pure with respect to the prompt;
streaming state lives on the adapter between `reset()` calls, so one adapter
instance serves one response at a time.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from flemma.config.model import ProviderSettings
from flemma.model import (
    Diagnostic,
    Message,
    Prompt,
    Role,
    Segment,
    ToolCall,
    ToolResult,
    ToolStatus,
    ToolUse,
    last_assistant_index,
)
from flemma.tools.registry import ToolRegistry
from flemma.tools.result_codec import DecodedResult, decode_result

from .errors import ProviderError

logger = logging.getLogger(__name__)

ORPHAN_RESULT_MESSAGE = "No result provided"


class UsageType(str, Enum):
    INPUT = "input"
    OUTPUT = "output"
    THOUGHTS = "thoughts"
    CACHE_READ = "cache_read"
    CACHE_CREATION = "cache_creation"


@dataclass(frozen=True, slots=True)
class Usage:
    type: UsageType
    tokens: int


@dataclass(slots=True)
class StreamCallbacks:
    on_content: Callable[[Segment], None]
    on_usage: Callable[[Usage], None] | None = None
    on_response_complete: Callable[[], None] | None = None
    on_error: Callable[[ProviderError], None] | None = None
    on_diagnostic: Callable[[Diagnostic], None] | None = None


@dataclass(frozen=True, slots=True)
class RequestContext:
    conversation_id: str | None = None


@dataclass(frozen=True, slots=True)
class SseLine:
    kind: str  # "data" | "event" | "done" | "comment" | "blank"
    value: str = ""


def parse_sse_line(line: str) -> SseLine | None:
    """Classify one line of an event stream; `None` means it is not SSE."""

    line = line.rstrip("\r\n")
    if not line.strip():
        return SseLine("blank")
    if line.startswith(":"):
        return SseLine("comment", line[1:].strip())
    if line.startswith("event:"):
        return SseLine("event", line[6:].strip())
    if line.startswith("data:"):
        payload = line[5:].strip()
        if payload == "[DONE]":
            return SseLine("done")
        return SseLine("data", payload)
    return None


def decode_tool_input(raw: str, tool_use_id: str) -> tuple[dict[str, Any], Diagnostic | None]:
    """Decode accumulated tool argument text into an input object.

    Empty text is an empty object. Anything that is not a JSON object is
    downgraded to `{}` plus a warning diagnostic; callers keep the raw text.
    """

    if not raw.strip():
        return {}, None
    try:
        value = json.loads(raw)
    except ValueError as e:
        message = f"Tool input is not valid JSON ({e.msg}); raw text kept"
    else:
        if isinstance(value, dict):
            return value, None
        message = f"Tool input is not a JSON object (got {type(value).__name__}); raw text kept"
    logger.warning("tool_input_unparseable", extra={"tool_use_id": tool_use_id})
    return {}, Diagnostic(severity="warning", message=message, tool_use_id=tool_use_id)


def extract_error_message(data: Any) -> str | None:
    """Pull a human-readable message out of a vendor error body."""

    if isinstance(data, list):
        for item in data:
            message = extract_error_message(item)
            if message:
                return message
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, str):
        return error
    if not isinstance(error, dict):
        return None
    message = error.get("message") or error.get("type") or error.get("status")
    if not isinstance(message, str):
        return None
    details = [
        f"{v.get('field')}: {v.get('description')}"
        for d in error.get("details") or []
        if isinstance(d, dict)
        for v in d.get("fieldViolations") or []
        if isinstance(v, dict)
    ]
    if details:
        message = f"{message} ({'; '.join(details)})"
    return message


class ProviderAdapter(ABC):
    name: ClassVar[str]
    env_var: ClassVar[str]

    def __init__(self, settings: ProviderSettings, tools: ToolRegistry | None = None) -> None:
        self.settings = settings
        self.tools = tools if tools is not None else ToolRegistry()
        # Diagnostics raised while building the last request.
        self.request_diagnostics: list[Diagnostic] = []
        self._completed = False
        self._unparsed: list[str] = []
        self._reset_stream()

    # -- request side -------------------------------------------------------

    @abstractmethod
    def endpoint(self) -> str: ...

    @abstractmethod
    def headers(self, api_key: str | None) -> dict[str, str]: ...

    @abstractmethod
    def build_request(self, prompt: Prompt, context: RequestContext | None = None) -> dict[str, Any]: ...

    def _decode(self, result: ToolResult) -> DecodedResult:
        decoded = decode_result(result)
        if decoded.diagnostic is not None:
            self.request_diagnostics.append(decoded.diagnostic)
        return decoded

    @staticmethod
    def resolved_results(message: Message) -> list[ToolResult]:
        # Placeholders are never exported; their calls surface as orphans instead.
        return [r for r in message.tool_results() if r.status is ToolStatus.RESOLVED]

    @staticmethod
    def orphans(prompt: Prompt) -> list[ToolCall]:
        return prompt.pending_tool_calls

    @staticmethod
    def tool_use_index(history: list[Message]) -> dict[str, ToolUse]:
        return {u.id: u for m in history if m.role is Role.ASSISTANT for u in m.tool_uses()}

    @staticmethod
    def turn_messages(prompt: Prompt) -> list[Message]:
        return [m for m in prompt.history if m.role is not Role.SYSTEM]

    @staticmethod
    def after_last_assistant(history: list[Message]) -> int | None:
        idx = last_assistant_index(history)
        return None if idx is None else idx + 1

    # -- response side ------------------------------------------------------

    def reset(self) -> None:
        self._completed = False
        self._unparsed = []
        self._reset_stream()

    def _reset_stream(self) -> None:
        """Clear vendor-specific accumulation state."""

    def process_streaming_line(self, line: str, callbacks: StreamCallbacks) -> None:
        parsed = parse_sse_line(line)
        if parsed is None:
            # Error responses arrive as a plain JSON body, one fragment per line.
            self._unparsed.append(line)
            return
        if parsed.kind != "data":
            return
        try:
            data = json.loads(parsed.value)
        except ValueError:
            logger.warning("stream_line_unparseable", extra={"provider": self.name, "line": parsed.value[:200]})
            return
        self.handle_event(data, callbacks)

    @abstractmethod
    def handle_event(self, data: Any, callbacks: StreamCallbacks) -> None: ...

    def finalize(self, callbacks: StreamCallbacks) -> None:
        """Flush buffered non-SSE content once the stream ends."""

        if not self._unparsed:
            return
        body = "\n".join(self._unparsed).strip()
        self._unparsed = []
        if not body:
            return
        try:
            data = json.loads(body)
        except ValueError:
            self.emit_error(callbacks, body[:500])
            return
        message = extract_error_message(data)
        if message:
            self.emit_error(callbacks, message)
        else:
            self.handle_event(data, callbacks)

    def emit_usage(self, callbacks: StreamCallbacks, kind: UsageType, tokens: Any) -> None:
        if callbacks.on_usage is not None and isinstance(tokens, int) and not isinstance(tokens, bool):
            callbacks.on_usage(Usage(kind, tokens))

    def emit_diagnostic(self, callbacks: StreamCallbacks, diagnostic: Diagnostic | None) -> None:
        if diagnostic is not None and callbacks.on_diagnostic is not None:
            callbacks.on_diagnostic(diagnostic)

    def emit_error(self, callbacks: StreamCallbacks, message: str) -> None:
        logger.error("provider_error", extra={"provider": self.name, "error": message})
        if callbacks.on_error is not None:
            callbacks.on_error(ProviderError.from_message(message))

    def complete(self, callbacks: StreamCallbacks) -> None:
        if self._completed:
            return
        self._completed = True
        if callbacks.on_response_complete is not None:
            callbacks.on_response_complete()

    def emit_tool_use(self, callbacks: StreamCallbacks, tool_id: str, name: str, raw: str) -> None:
        tool_input, diagnostic = decode_tool_input(raw, tool_id)
        self.emit_diagnostic(callbacks, diagnostic)
        callbacks.on_content(
            ToolUse(id=tool_id, name=name, input=tool_input, raw_input=raw if diagnostic else None)
        )


@dataclass(slots=True)
class PendingToolCall:
    """Argument fragments collected for one streamed tool call."""

    id: str
    name: str
    chunks: list[str] = field(default_factory=list)

    @property
    def arguments(self) -> str:
        return "".join(self.chunks)
