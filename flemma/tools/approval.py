"""Approval resolver chain.

Resolvers are evaluated by priority (highest first, name as tie-breaker); the
first one that returns something other than `pass` decides. A resolver that
raises or returns garbage is logged and treated as `pass`. When nobody
decides, the answer is `require_approval`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from flemma.config.model import SandboxSettings, ToolsSettings
from flemma.sandbox.registry import SandboxBackendRegistry, resolve_settings

from .ids import validate_plain_name
from .presets import PresetRegistry

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 50

CONFIG_RESOLVER = "urn:flemma:approval:config"
FRONTMATTER_RESOLVER = "urn:flemma:approval:frontmatter"
SANDBOX_RESOLVER = "urn:flemma:approval:sandbox"
CATCH_ALL_RESOLVER = "urn:flemma:approval:catch-all"


class Decision(str, Enum):
    APPROVE = "approve"
    DENY = "deny"
    REQUIRE_APPROVAL = "require_approval"
    PASS = "pass"


@dataclass(frozen=True, slots=True)
class ApprovalOpts:
    """Per-call options a collaborator evaluated for this conversation."""

    auto_approve: list[str] | Callable[..., Any] | None = None
    auto_approve_exclusions: frozenset[str] = frozenset()
    sandbox: Mapping[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class ApprovalContext:
    conversation_id: str | None = None
    opts: ApprovalOpts | None = None


Resolver = Callable[[str, dict[str, Any], ApprovalContext], Any]


@dataclass(frozen=True, slots=True)
class ApprovalResolverEntry:
    name: str
    resolve: Resolver
    priority: int = DEFAULT_PRIORITY
    description: str | None = None


def _parse(value: Any) -> Decision | None:
    """Map a resolver return value onto a decision; `None` means invalid."""

    if value is None:
        return Decision.PASS
    if value is True:
        return Decision.APPROVE
    if value is False:
        return Decision.REQUIRE_APPROVAL
    if isinstance(value, Decision):
        return value
    if isinstance(value, str):
        try:
            return Decision(value)
        except ValueError:
            return None
    return None


def coerce_decision(value: Any) -> Decision:
    decision = _parse(value)
    if decision is None:
        logger.warning("approval_invalid_decision", extra={"value": repr(value)})
        return Decision.PASS
    return decision


def resolve_auto_approve_policy(
    policy: Any,
    tool_name: str,
    input: dict[str, Any],
    context: ApprovalContext,
    *,
    presets: PresetRegistry,
    error_result: Decision = Decision.PASS,
) -> Decision:
    """Evaluate an `auto_approve` value (list of names / `$presets`, or a callable).

    For lists, deny sets from any referenced preset win over every approve set,
    and per-call exclusions are removed from the approve set after expansion.
    """

    if isinstance(policy, (list, tuple)):
        approved: set[str] = set()
        denied: set[str] = set()
        for entry in policy:
            if entry.startswith("$"):
                preset = presets.get(entry)
                if preset is None:
                    logger.warning("approval_unknown_preset", extra={"preset": entry})
                    continue
                approved.update(preset.approve)
                denied.update(preset.deny)
            else:
                approved.add(entry)

        if context.opts is not None:
            approved -= set(context.opts.auto_approve_exclusions)

        if tool_name in denied:
            return Decision.DENY
        if tool_name in approved:
            return Decision.APPROVE
        return Decision.PASS

    if callable(policy):
        try:
            value = policy(tool_name, input, context)
        except Exception:  # noqa: BLE001
            logger.warning("approval_policy_error", extra={"tool_name": tool_name}, exc_info=True)
            return error_result
        return coerce_decision(value)

    if policy is not None:
        logger.warning("approval_unexpected_policy", extra={"policy_type": type(policy).__name__})
    return Decision.PASS


class ApprovalChain:
    def __init__(self) -> None:
        self._entries: dict[str, ApprovalResolverEntry] = {}

    def register(
        self,
        name: str,
        resolve: Resolver,
        *,
        priority: int = DEFAULT_PRIORITY,
        description: str | None = None,
    ) -> None:
        validate_plain_name(name, "approval resolver")
        self._entries[name] = ApprovalResolverEntry(
            name=name, resolve=resolve, priority=priority, description=description
        )

    def unregister(self, name: str) -> bool:
        return self._entries.pop(name, None) is not None

    def get(self, name: str) -> ApprovalResolverEntry | None:
        return self._entries.get(name)

    def get_all(self) -> list[ApprovalResolverEntry]:
        return sorted(self._entries.values(), key=lambda e: (-e.priority, e.name))

    def count(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def resolve(self, tool_name: str, input: dict[str, Any], context: ApprovalContext | None = None) -> Decision:
        context = context or ApprovalContext()
        for entry in self.get_all():
            try:
                value = entry.resolve(tool_name, input, context)
            except Exception:  # noqa: BLE001
                logger.warning(
                    "approval_resolver_error",
                    extra={"resolver": entry.name, "tool_name": tool_name},
                    exc_info=True,
                )
                continue

            decision = _parse(value)
            if decision is None:
                logger.warning(
                    "approval_resolver_invalid_result",
                    extra={"resolver": entry.name, "tool_name": tool_name, "value": repr(value)},
                )
                continue
            if decision is not Decision.PASS:
                logger.debug(
                    "approval_decided",
                    extra={"resolver": entry.name, "tool_name": tool_name, "decision": decision.value},
                )
                return decision

        return Decision.REQUIRE_APPROVAL


def install_default_resolvers(
    chain: ApprovalChain,
    tools: ToolsSettings,
    *,
    presets: PresetRegistry,
    sandbox: SandboxSettings,
    sandbox_backends: SandboxBackendRegistry,
    sandbox_enabled: Callable[[], bool | None] = lambda: None,
) -> None:
    """Register the built-in resolvers derived from settings.

    `sandbox_enabled` returns the session-level sandbox switch (`None` defers
    to configuration); it is read at resolve time.
    """

    policy = tools.auto_approve
    if policy is not None:

        def config_resolver(tool_name: str, input: dict[str, Any], context: ApprovalContext) -> Decision:
            if context.opts is not None and context.opts.auto_approve is not None:
                return Decision.PASS
            return resolve_auto_approve_policy(
                policy, tool_name, input, context, presets=presets, error_result=Decision.REQUIRE_APPROVAL
            )

        chain.register(
            CONFIG_RESOLVER,
            config_resolver,
            priority=100,
            description="Approval from tools.auto_approve",
        )

    def frontmatter_resolver(tool_name: str, input: dict[str, Any], context: ApprovalContext) -> Decision:
        if context.opts is None or context.opts.auto_approve is None:
            return Decision.PASS
        return resolve_auto_approve_policy(context.opts.auto_approve, tool_name, input, context, presets=presets)

    chain.register(
        FRONTMATTER_RESOLVER,
        frontmatter_resolver,
        priority=90,
        description="Per-conversation approval from call options",
    )

    def sandbox_resolver(tool_name: str, input: dict[str, Any], context: ApprovalContext) -> Decision:
        if tool_name != "bash":
            return Decision.PASS
        opts = context.opts
        if opts is not None and tool_name in opts.auto_approve_exclusions:
            return Decision.PASS
        effective = resolve_settings(sandbox, opts.sandbox if opts else None, enabled=sandbox_enabled())
        if not effective.enabled or not effective.auto_approve:
            return Decision.PASS
        ok, _ = sandbox_backends.validate_backend(effective)
        return Decision.APPROVE if ok else Decision.PASS

    chain.register(
        SANDBOX_RESOLVER,
        sandbox_resolver,
        priority=DEFAULT_PRIORITY,
        description="Approve sandboxed tools while a sandbox backend is available",
    )

    if not tools.require_approval:
        chain.register(
            CATCH_ALL_RESOLVER,
            lambda tool_name, input, context: Decision.APPROVE,
            priority=0,
            description="Approve everything (tools.require_approval is false)",
        )
