from __future__ import annotations

from contextvars import ContextVar, Token


_conversation_id: ContextVar[str | None] = ContextVar("conversation_id", default=None)
_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)
_tool_id: ContextVar[str | None] = ContextVar("tool_id", default=None)


def bind_conversation(*, conversation_id: str, request_id: str | None = None) -> None:
    _conversation_id.set(conversation_id)
    _request_id.set(request_id)


def bind_tool(tool_id: str | None) -> Token[str | None]:
    return _tool_id.set(tool_id)


def reset_tool(token: Token[str | None]) -> None:
    _tool_id.reset(token)


def snapshot() -> dict[str, object]:
    """Return a snapshot of current observability context for logging."""

    out: dict[str, object] = {}
    if (v := _conversation_id.get()) is not None:
        out["conversation_id"] = v
    if (v := _request_id.get()) is not None:
        out["request_id"] = v
    if (v := _tool_id.get()) is not None:
        out["tool_id"] = v
    return out
