"""Canonical conversation model.

A conversation is an ordered list of role-tagged messages; each message holds an
ordered list of typed segments. Provider adapters translate this model to and from
vendor wire formats, the ledger mutates tool results in place.

Only `ToolResult` is mutable (content/status/format are replaced by the ledger);
every other segment is frozen once created.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ToolStatus(str, Enum):
    """Lifecycle status of a tool result slot."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    REJECTED = "rejected"
    RESOLVED = "resolved"

    @classmethod
    def parse(cls, value: str | ToolStatus) -> ToolStatus:
        """Parse a status, accepting the `deny`/`reject` synonyms."""

        if isinstance(value, ToolStatus):
            return value
        if not isinstance(value, str):
            raise ValueError(f"invalid tool status: {value!r}")
        key = value.strip().lower()
        key = _STATUS_SYNONYMS.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"invalid tool status: {value!r}") from None


_STATUS_SYNONYMS = {"deny": "denied", "reject": "rejected"}


@dataclass(frozen=True, slots=True)
class SourceSpan:
    """Optional location of a segment in a collaborator's backing store."""

    start: int
    end: int


@dataclass(frozen=True, slots=True)
class Signature:
    value: str
    provider: str


@dataclass(frozen=True, slots=True)
class Text:
    content: str
    kind: str = field(default="text", init=False)


@dataclass(frozen=True, slots=True)
class ToolUse:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    # Raw argument text when the model emitted input that is not a JSON object.
    raw_input: str | None = None
    position: SourceSpan | None = None
    kind: str = field(default="tool_use", init=False)


@dataclass(slots=True)
class ToolResult:
    tool_use_id: str
    content: str = ""
    is_error: bool = False
    status: ToolStatus = ToolStatus.RESOLVED
    # Serialization tag of `content` ("json", "text" or None for plain text).
    format: str | None = None
    position: SourceSpan | None = None
    kind: str = field(default="tool_result", init=False)


@dataclass(frozen=True, slots=True)
class Thinking:
    content: str
    signature: Signature | None = None
    redacted: bool = False
    kind: str = field(default="thinking", init=False)


Segment = Union[Text, ToolUse, ToolResult, Thinking]


@dataclass(slots=True)
class Message:
    role: Role
    segments: list[Segment] = field(default_factory=list)

    def tool_uses(self) -> list[ToolUse]:
        return [s for s in self.segments if isinstance(s, ToolUse)]

    def tool_results(self) -> list[ToolResult]:
        return [s for s in self.segments if isinstance(s, ToolResult)]

    def text(self) -> str:
        return "".join(s.content for s in self.segments if isinstance(s, Text))


@dataclass(frozen=True, slots=True)
class ToolCall:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_tool_use(cls, tool_use: ToolUse) -> ToolCall:
        return cls(id=tool_use.id, name=tool_use.name, input=dict(tool_use.input))


@dataclass(frozen=True, slots=True)
class Diagnostic:
    severity: str  # "warning" | "error"
    message: str
    tool_use_id: str | None = None


@dataclass(slots=True)
class Prompt:
    """The canonical request handed to a provider adapter.

    `pending_tool_calls` is always derived from `history`; it is never stored.
    """

    history: list[Message] = field(default_factory=list)

    @property
    def system(self) -> str | None:
        parts = [m.text().strip() for m in self.history if m.role is Role.SYSTEM]
        joined = "\n".join(p for p in parts if p)
        return joined or None

    @property
    def pending_tool_calls(self) -> list[ToolCall]:
        return pending_tool_calls(self.history)


def last_assistant_index(history: list[Message]) -> int | None:
    for idx in range(len(history) - 1, -1, -1):
        if history[idx].role is Role.ASSISTANT:
            return idx
    return None


def pending_tool_calls(history: list[Message]) -> list[ToolCall]:
    """Tool uses of the last assistant turn without a resolved result after it."""

    idx = last_assistant_index(history)
    if idx is None:
        return []

    resolved: set[str] = set()
    for msg in history[idx + 1 :]:
        for result in msg.tool_results():
            if result.status is ToolStatus.RESOLVED:
                resolved.add(result.tool_use_id)

    return [
        ToolCall.from_tool_use(tool_use)
        for tool_use in history[idx].tool_uses()
        if tool_use.id not in resolved
    ]
