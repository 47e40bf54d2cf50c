"""One conversation wired end to end.

`Session` owns the registries for a conversation and drives the loop:
send a request, assemble the streamed assistant message, route each new tool
call through the approval chain, execute what is approved, and (in autopilot)
send again once every tool has settled.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum

from flemma.config.model import Settings
from flemma.conversation import Conversation
from flemma.model import Diagnostic, Message, Role, Segment, Text, Thinking, ToolCall, ToolStatus, pending_tool_calls
from flemma.observability import bind_conversation
from flemma.providers.base import ProviderAdapter, StreamCallbacks, Usage
from flemma.providers.registry import ProviderRegistry, default_registry
from flemma.sandbox.policy import is_path_writable, resolve_policy
from flemma.sandbox.registry import SandboxBackendRegistry, install_default_backends, resolve_settings
from flemma.tools.approval import ApprovalChain, ApprovalContext, ApprovalOpts, Decision, install_default_resolvers
from flemma.tools.definitions import register_builtin_tools
from flemma.tools.executor import CancelTarget, ExecutionContext, ToolExecutor
from flemma.tools.ledger import ResultLedger
from flemma.tools.presets import PresetRegistry
from flemma.tools.registry import ExecutionResult, ToolRegistry
from flemma.transport import ResponseOutcome, StreamingClient

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 100


class ResponseAssembler:
    """Collects streamed content deltas into one assistant message."""

    def __init__(self) -> None:
        self.segments: list[Segment] = []
        self.usage: list[Usage] = []
        self.diagnostics: list[Diagnostic] = []
        self._text: list[str] = []

    def _flush_text(self) -> None:
        if self._text:
            self.segments.append(Text("".join(self._text)))
            self._text = []

    def on_content(self, segment: Segment) -> None:
        if isinstance(segment, Text):
            self._text.append(segment.content)
            return
        self._flush_text()
        self.segments.append(segment)

    def on_usage(self, usage: Usage) -> None:
        self.usage.append(usage)

    def on_diagnostic(self, diagnostic: Diagnostic) -> None:
        self.diagnostics.append(diagnostic)

    def callbacks(self) -> StreamCallbacks:
        return StreamCallbacks(
            on_content=self.on_content,
            on_usage=self.on_usage,
            on_diagnostic=self.on_diagnostic,
        )

    def message(self) -> Message | None:
        self._flush_text()
        if not self.segments:
            return None
        # Reasoning leads the turn regardless of when the vendor emitted it.
        thinking = [s for s in self.segments if isinstance(s, Thinking)]
        rest = [s for s in self.segments if not isinstance(s, Thinking)]
        return Message(role=Role.ASSISTANT, segments=thinking + rest)


class StopReason(str, Enum):
    DONE = "done"
    AWAITING_APPROVAL = "awaiting_approval"
    ERROR = "error"
    CANCELLED = "cancelled"
    MAX_TURNS = "max_turns"


@dataclass(slots=True)
class RunResult:
    stop_reason: StopReason
    turns: int
    outcome: ResponseOutcome | None = None
    diagnostics: list[Diagnostic] = field(default_factory=list)


class Session:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        conversation: Conversation | None = None,
        tools: ToolRegistry | None = None,
        providers: ProviderRegistry | None = None,
        adapter: ProviderAdapter | None = None,
        client: StreamingClient | None = None,
        opts: ApprovalOpts | None = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        cwd: str | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.conversation = conversation or Conversation()
        self.opts = opts
        self.max_turns = max_turns
        self.cwd = cwd or os.getcwd()
        self.autopilot = True
        # Session-level sandbox switch; None defers to configuration.
        self.sandbox_enabled: bool | None = None

        if tools is None:
            tools = ToolRegistry()
            register_builtin_tools(tools)
        self.tools = tools

        self.presets = PresetRegistry()
        self.presets.setup(self.settings.tools.presets)

        self.sandbox_backends = SandboxBackendRegistry()
        install_default_backends(self.sandbox_backends)

        self.approval = ApprovalChain()
        install_default_resolvers(
            self.approval,
            self.settings.tools,
            presets=self.presets,
            sandbox=self.settings.sandbox,
            sandbox_backends=self.sandbox_backends,
            sandbox_enabled=lambda: self.sandbox_enabled,
        )

        self.adapter = adapter or (providers or default_registry()).create(self.settings.provider, self.tools)
        self.client = client or StreamingClient()
        self.executor = ToolExecutor(
            self.tools,
            max_concurrency=self.settings.tools.max_concurrency,
            on_idle=self._on_idle,
            context_factory=self._execution_context,
        )
        # Created per wait so a session can outlive one event loop.
        self._idle: asyncio.Event | None = None

    @property
    def ledger(self) -> ResultLedger:
        return ResultLedger(self.conversation)

    def add_user_message(self, text: str) -> Message:
        return self.conversation.append(Role.USER, Text(text))

    def _execution_context(self, conversation: Conversation, call: ToolCall) -> ExecutionContext:
        sandbox = resolve_settings(
            self.settings.sandbox,
            self.opts.sandbox if self.opts else None,
            enabled=self.sandbox_enabled,
        )
        context = ExecutionContext(
            conversation_id=conversation.conversation_id,
            tool_id=call.id,
            opts=self.opts,
            wrap_command=lambda argv: self.sandbox_backends.wrap_command(argv, sandbox, cwd=self.cwd),
            cwd=self.cwd,
        )
        if sandbox.enabled:
            policy = resolve_policy(sandbox.policy, cwd=self.cwd)
            context = replace(context, is_path_writable=functools.partial(is_path_writable, policy=policy))
        return context

    def _on_idle(self, conversation: Conversation) -> None:
        if self._idle is not None:
            self._idle.set()

    async def wait_idle(self) -> None:
        while self.executor.get_running(self.conversation):
            self._idle = asyncio.Event()
            await self._idle.wait()
        self._idle = None

    async def send(self) -> tuple[ResponseOutcome, ResponseAssembler]:
        bind_conversation(conversation_id=self.conversation.conversation_id)
        assembler = ResponseAssembler()
        outcome = await self.client.send(self.conversation, self.adapter, assembler.callbacks())
        message = assembler.message()
        # Partial output of a failed or cancelled response is kept as well.
        if message is not None:
            self.conversation.messages.append(message)
        for diagnostic in assembler.diagnostics:
            logger.warning(
                "diagnostic",
                extra={
                    "severity": diagnostic.severity,
                    "detail": diagnostic.message,
                    "tool_use_id": diagnostic.tool_use_id,
                },
            )
        return outcome, assembler

    def process_tool_calls(self) -> dict[str, Decision]:
        """Route every pending tool call that has no result slot yet."""

        ledger = self.ledger
        context = ApprovalContext(conversation_id=self.conversation.conversation_id, opts=self.opts)
        decisions: dict[str, Decision] = {}
        for call in pending_tool_calls(self.conversation.messages):
            if ledger.get(call.id) is not None:
                continue
            decision = self.approval.resolve(call.name, call.input, context)
            decisions[call.id] = decision
            logger.info(
                "tool_call_routed",
                extra={"tool_id": call.id, "tool_name": call.name, "decision": decision.value},
            )
            if decision is Decision.APPROVE:
                self._execute(call)
            elif decision is Decision.DENY:
                ledger.resolve_denied(call.id)
            else:
                ledger.insert_placeholder(call.id, ToolStatus.PENDING)
        return decisions

    def _execute(self, call: ToolCall) -> bool:
        started = self.executor.execute(self.conversation, call)
        if not started.ok:
            logger.warning(
                "tool_execution_refused",
                extra={"tool_id": call.id, "tool_name": call.name, "kind": started.kind.value},
            )
            self.ledger.replace_result(call.id, ExecutionResult.fail(started.message))
            return False
        return True

    def _find_call(self, tool_id: str) -> ToolCall | None:
        for call in pending_tool_calls(self.conversation.messages):
            if call.id == tool_id:
                return call
        return None

    def approve(self, tool_id: str) -> bool:
        call = self._find_call(tool_id)
        if call is None:
            return False
        self.ledger.set_status(tool_id, ToolStatus.APPROVED)
        return self._execute(call)

    def reject(self, tool_id: str, reason: str | None = None) -> bool:
        if self._find_call(tool_id) is None:
            return False
        slot = self.ledger.set_status(tool_id, ToolStatus.REJECTED)
        if reason is not None:
            slot.content = reason
        self.ledger.resolve_rejected(tool_id)
        return True

    def cancel(self) -> CancelTarget:
        return self.executor.cancel_active(self.conversation, self.client.cancel)

    def close(self) -> None:
        self.executor.cleanup(self.conversation)

    async def run(self, text: str | None = None) -> RunResult:
        """Send, execute approved tools and continue until the model stops.

        Stops early when a tool call needs the user's approval or a request
        fails; autopilot continuation is bounded by `max_turns`.
        """

        if text is not None:
            self.add_user_message(text)

        turns = 0
        diagnostics: list[Diagnostic] = []
        await self.wait_idle()
        if self.ledger.resolve_all().pending:
            return RunResult(StopReason.AWAITING_APPROVAL, turns)
        while True:
            outcome, assembler = await self.send()
            turns += 1
            diagnostics.extend(assembler.diagnostics)
            if outcome.cancelled:
                return RunResult(StopReason.CANCELLED, turns, outcome, diagnostics)
            if not outcome.ok:
                return RunResult(StopReason.ERROR, turns, outcome, diagnostics)

            if not self.process_tool_calls() and not pending_tool_calls(self.conversation.messages):
                return RunResult(StopReason.DONE, turns, outcome, diagnostics)

            await self.wait_idle()
            if self.ledger.resolve_all().pending:
                return RunResult(StopReason.AWAITING_APPROVAL, turns, outcome, diagnostics)
            if not self.autopilot:
                return RunResult(StopReason.DONE, turns, outcome, diagnostics)
            if turns >= self.max_turns:
                logger.warning("autopilot_max_turns_reached", extra={"max_turns": self.max_turns})
                return RunResult(StopReason.MAX_TURNS, turns, outcome, diagnostics)
