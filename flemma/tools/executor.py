"""Tool execution engine.

Each tool id moves through `running -> completed | cancelled`. Three executor
shapes are supported:

- sync `fn(input, context) -> ExecutionResult`, completed on the next
  scheduler tick so ordering matches the async shapes;
- callback-style `fn(input, callback, context) -> cancel_fn | None`;
- coroutine `async fn(input, context) -> ExecutionResult`, run as a task and
  cancelled through `task.cancel()`.

Tool execution and provider requests never overlap on one conversation: a
call made while `request_in_flight` is set fails with `busy`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from flemma.conversation import Conversation
from flemma.model import ToolCall, ToolStatus
from flemma.observability import bind_tool, reset_tool

from .approval import ApprovalOpts
from .ledger import ResultLedger
from .registry import ExecutionResult, ToolRegistry

logger = logging.getLogger(__name__)

ABORTED_MESSAGE = "User aborted tool execution."
NO_RESULT_MESSAGE = "Tool returned no result"


class ExecutionErrorKind(str, Enum):
    UNKNOWN_TOOL = "unknown_tool"
    NOT_EXECUTABLE = "not_executable"
    BUSY = "busy"
    ALREADY_EXECUTING = "already_executing"
    NO_EVENT_LOOP = "no_event_loop"


@dataclass(frozen=True, slots=True)
class ExecutionFailure:
    kind: ExecutionErrorKind
    message: str
    ok: bool = field(default=False, init=False)


@dataclass(frozen=True, slots=True)
class ExecutionStarted:
    tool_id: str
    ok: bool = field(default=True, init=False)


class RecordStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CancelTarget(str, Enum):
    REQUEST = "request"
    TOOL = "tool"
    NOTHING = "nothing"


def _writable_anywhere(path: str) -> bool:
    return True


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    """What a running tool may know about its call."""

    conversation_id: str
    tool_id: str
    opts: ApprovalOpts | None = None
    # Wraps an argv with the active sandbox (identity when sandboxing is off).
    wrap_command: Callable[[list[str]], list[str]] = list
    # Base directory for relative tool paths; None means the process cwd.
    cwd: str | None = None
    is_path_writable: Callable[[str], bool] = _writable_anywhere

    def resolve_path(self, path: str) -> str:
        return os.path.normpath(os.path.join(self.cwd or os.getcwd(), os.path.expanduser(path)))


@dataclass(slots=True)
class ExecutionRecord:
    tool_id: str
    tool_name: str
    input: dict[str, Any]
    started_at: float
    conversation: Conversation
    status: RecordStatus = RecordStatus.RUNNING
    cancel_fn: Callable[[], Any] | None = None


def coerce_result(value: Any) -> ExecutionResult:
    if value is None:
        return ExecutionResult.fail(NO_RESULT_MESSAGE)
    if isinstance(value, ExecutionResult):
        return value
    if isinstance(value, Mapping) and "success" in value:
        return ExecutionResult(
            success=bool(value["success"]),
            output=value.get("output"),
            error=value.get("error"),
        )
    return ExecutionResult.ok(value)


def _default_scheduler(fn: Callable[[], None]) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        fn()
        return
    loop.call_soon(fn)


class ToolExecutor:
    def __init__(
        self,
        registry: ToolRegistry,
        *,
        max_concurrency: int = 8,
        scheduler: Callable[[Callable[[], None]], None] | None = None,
        on_idle: Callable[[Conversation], None] | None = None,
        context_factory: Callable[[Conversation, ToolCall], ExecutionContext] | None = None,
    ) -> None:
        self._registry = registry
        self._max_concurrency = max_concurrency
        self._schedule = scheduler or _default_scheduler
        self.on_idle = on_idle
        self._context_factory = context_factory
        # conversation_id -> tool_id -> record
        self._records: dict[str, dict[str, ExecutionRecord]] = {}

    def _running(self, conversation: Conversation) -> dict[str, ExecutionRecord]:
        return self._records.setdefault(conversation.conversation_id, {})

    def get_running(self, conversation: Conversation) -> list[ExecutionRecord]:
        records = self._records.get(conversation.conversation_id, {})
        return sorted(
            (r for r in records.values() if r.status is RecordStatus.RUNNING),
            key=lambda r: r.started_at,
        )

    def execute(self, conversation: Conversation, call: ToolCall) -> ExecutionStarted | ExecutionFailure:
        if self._registry.get(call.name) is None:
            return ExecutionFailure(ExecutionErrorKind.UNKNOWN_TOOL, f"Unknown tool: {call.name}")

        fn, is_async = self._registry.get_executor(call.name)
        if fn is None:
            return ExecutionFailure(ExecutionErrorKind.NOT_EXECUTABLE, f"Tool '{call.name}' is not executable")

        if conversation.request_in_flight:
            return ExecutionFailure(
                ExecutionErrorKind.BUSY, "Cannot execute tool while API request is in flight"
            )

        running = self._running(conversation)
        if call.id in running and running[call.id].status is RecordStatus.RUNNING:
            return ExecutionFailure(ExecutionErrorKind.ALREADY_EXECUTING, f"Tool {call.id} is already executing")

        if len(self.get_running(conversation)) >= self._max_concurrency:
            return ExecutionFailure(
                ExecutionErrorKind.BUSY, f"Too many tools running (max {self._max_concurrency})"
            )

        is_coroutine = inspect.iscoroutinefunction(fn)
        if is_coroutine:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                return ExecutionFailure(
                    ExecutionErrorKind.NO_EVENT_LOOP, f"Tool '{call.name}' needs a running event loop"
                )

        context = (
            self._context_factory(conversation, call)
            if self._context_factory
            else ExecutionContext(conversation_id=conversation.conversation_id, tool_id=call.id)
        )

        ResultLedger(conversation).insert_placeholder(call.id, ToolStatus.APPROVED)

        record = ExecutionRecord(
            tool_id=call.id,
            tool_name=call.name,
            input=dict(call.input),
            started_at=time.monotonic(),
            conversation=conversation,
        )
        running[call.id] = record

        # Tasks and scheduled completions copy the context, so they keep the tool id.
        token = bind_tool(call.id)
        try:
            logger.info("tool_execution_started", extra={"tool_id": call.id, "tool_name": call.name})
            if is_coroutine:
                self._start_coroutine(record, fn, context)
            elif is_async:
                self._start_callback(record, fn, context)
            else:
                self._run_sync(record, fn, context)
        finally:
            reset_tool(token)

        return ExecutionStarted(tool_id=call.id)

    def _run_sync(self, record: ExecutionRecord, fn: Callable[..., Any], context: ExecutionContext) -> None:
        try:
            result = coerce_result(fn(record.input, context))
        except Exception as e:  # noqa: BLE001
            logger.exception("tool_execution_error", extra={"tool_id": record.tool_id, "tool_name": record.tool_name})
            result = ExecutionResult.fail(str(e) or type(e).__name__)
        self._schedule(lambda: self._complete(record, result))

    def _start_callback(self, record: ExecutionRecord, fn: Callable[..., Any], context: ExecutionContext) -> None:
        called = False

        def callback(value: Any = None) -> None:
            nonlocal called
            if called:
                return
            called = True
            result = coerce_result(value)
            self._schedule(lambda: self._complete(record, result))

        try:
            cancel_fn = fn(record.input, callback, context)
        except Exception as e:  # noqa: BLE001
            logger.exception("tool_execution_error", extra={"tool_id": record.tool_id, "tool_name": record.tool_name})
            called = True
            self._complete(record, ExecutionResult.fail(str(e) or type(e).__name__))
            return

        if callable(cancel_fn):
            record.cancel_fn = cancel_fn

    def _start_coroutine(self, record: ExecutionRecord, fn: Callable[..., Any], context: ExecutionContext) -> None:
        task = asyncio.get_running_loop().create_task(fn(record.input, context))
        record.cancel_fn = task.cancel

        def done(t: asyncio.Task[Any]) -> None:
            if t.cancelled():
                result = ExecutionResult.fail(ABORTED_MESSAGE)
            elif (exc := t.exception()) is not None:
                logger.error(
                    "tool_execution_error",
                    extra={"tool_id": record.tool_id, "tool_name": record.tool_name},
                    exc_info=exc,
                )
                result = ExecutionResult.fail(str(exc) or type(exc).__name__)
            else:
                result = coerce_result(t.result())
            self._complete(record, result)

        task.add_done_callback(done)

    def _forget(self, record: ExecutionRecord) -> None:
        records = self._records.get(record.conversation.conversation_id)
        if records is not None and records.get(record.tool_id) is record:
            del records[record.tool_id]

    def _complete(self, record: ExecutionRecord, result: ExecutionResult) -> None:
        # Double completion and completion after cancellation are ignored.
        if record.status is not RecordStatus.RUNNING:
            return
        record.status = RecordStatus.COMPLETED
        self._forget(record)

        ledger = ResultLedger(record.conversation)
        try:
            outcome = ledger.replace_result(record.tool_id, result)
        except Exception as e:  # noqa: BLE001
            logger.exception(
                "tool_result_write_error", extra={"tool_id": record.tool_id, "tool_name": record.tool_name}
            )
            result = ExecutionResult.fail(f"Failed to record tool result: {str(e) or type(e).__name__}")
            outcome = ledger.replace_result(record.tool_id, result)
        logger.info(
            "tool_execution_completed",
            extra={
                "tool_id": record.tool_id,
                "tool_name": record.tool_name,
                "success": result.success,
                "outcome": outcome.value,
            },
        )
        self._maybe_idle(record.conversation)

    def _maybe_idle(self, conversation: Conversation) -> None:
        if self.on_idle is not None and not self.get_running(conversation):
            self.on_idle(conversation)

    def _find(self, tool_id: str) -> ExecutionRecord | None:
        for records in self._records.values():
            record = records.get(tool_id)
            if record is not None and record.status is RecordStatus.RUNNING:
                return record
        return None

    def cancel(self, tool_id: str) -> bool:
        record = self._find(tool_id)
        if record is None:
            return False

        record.status = RecordStatus.CANCELLED
        self._forget(record)
        if record.cancel_fn is not None:
            try:
                record.cancel_fn()
            except Exception:  # noqa: BLE001
                logger.warning("tool_cancel_error", extra={"tool_id": tool_id}, exc_info=True)

        ResultLedger(record.conversation).replace_result(tool_id, ExecutionResult.fail(ABORTED_MESSAGE))
        logger.info("tool_execution_cancelled", extra={"tool_id": tool_id, "tool_name": record.tool_name})
        self._maybe_idle(record.conversation)
        return True

    def cancel_all(self, conversation: Conversation) -> int:
        return sum(1 for record in self.get_running(conversation) if self.cancel(record.tool_id))

    def cancel_active(self, conversation: Conversation, cancel_request: Callable[[], Any]) -> CancelTarget:
        """Cancel the in-flight request, else the earliest-started tool."""

        if conversation.request_in_flight:
            cancel_request()
            return CancelTarget.REQUEST
        running = self.get_running(conversation)
        if running and self.cancel(running[0].tool_id):
            return CancelTarget.TOOL
        return CancelTarget.NOTHING

    def cleanup(self, conversation: Conversation) -> None:
        """Cancel and forget every record of a discarded conversation; results are not written."""

        records = self._records.pop(conversation.conversation_id, {})
        for record in records.values():
            if record.status is not RecordStatus.RUNNING:
                continue
            record.status = RecordStatus.CANCELLED
            if record.cancel_fn is not None:
                try:
                    record.cancel_fn()
                except Exception:  # noqa: BLE001
                    logger.warning("tool_cancel_error", extra={"tool_id": record.tool_id}, exc_info=True)
