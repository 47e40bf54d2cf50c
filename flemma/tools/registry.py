"""Tool definition storage.

Definitions are keyed by name; registering an existing name replaces it. The
registry also renders definitions into the strict form vendors accept.
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from .ids import validate_tool_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    success: bool
    output: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, output: Any = None) -> ExecutionResult:
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str, *, output: Any = None) -> ExecutionResult:
        return cls(success=False, output=output, error=error)


# Sync: fn(input, context) -> ExecutionResult
# Callback: fn(input, callback, context) -> cancel fn | None
# Coroutine: async fn(input, context) -> ExecutionResult
ToolExecuteFn = Callable[..., Any]


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    execute: ToolExecuteFn | None = None
    is_async: bool = False
    executable: bool = True
    hidden: bool = False
    output_schema: dict[str, Any] | None = None


def build_description(definition: ToolDefinition) -> str:
    if not definition.output_schema:
        return definition.description
    schema = json.dumps(definition.output_schema, separators=(",", ":"), sort_keys=True)
    return f"{definition.description}\n\nReturns (JSON Schema): {schema}"


def strict_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of an object schema in strict form.

    Every property becomes required; optional ones accept `null` instead.
    Nested object schemas (including array items) are converted too.
    """

    out = copy.deepcopy(schema)
    _make_strict(out)
    return out


def _nullable(prop: dict[str, Any]) -> None:
    t = prop.get("type")
    if t is None:
        return
    if isinstance(t, list):
        if "null" not in t:
            prop["type"] = [*t, "null"]
    elif t != "null":
        prop["type"] = [t, "null"]


def _make_strict(schema: dict[str, Any]) -> None:
    types = schema.get("type")
    is_object = types == "object" or (isinstance(types, list) and "object" in types)

    if is_object or "properties" in schema:
        props = schema.setdefault("properties", {})
        required = set(schema.get("required") or [])
        for name, prop in props.items():
            if not isinstance(prop, dict):
                continue
            _make_strict(prop)
            if name not in required:
                _nullable(prop)
        schema["required"] = list(props.keys())
        schema["additionalProperties"] = False

    items = schema.get("items")
    if isinstance(items, dict):
        _make_strict(items)


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, name: str, definition: ToolDefinition) -> None:
        validate_tool_name(name)
        if definition.name != name:
            definition = replace(definition, name=name)
        if name in self._tools:
            logger.debug("tool_replaced", extra={"tool_name": name})
        self._tools[name] = definition

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def get_all(self, *, include_hidden: bool = False, include_disabled: bool = False) -> dict[str, ToolDefinition]:
        return {
            name: d
            for name, d in self._tools.items()
            if (include_hidden or not d.hidden) and (include_disabled or d.executable)
        }

    def count(self) -> int:
        return len(self._tools)

    def clear(self) -> None:
        self._tools.clear()

    def is_executable(self, name: str) -> bool:
        d = self._tools.get(name)
        return d is not None and d.executable and d.execute is not None

    def get_executor(self, name: str) -> tuple[ToolExecuteFn | None, bool]:
        if not self.is_executable(name):
            return None, False
        d = self._tools[name]
        return d.execute, d.is_async

    def export(self, name: str) -> dict[str, Any]:
        d = self._tools[name]
        return {
            "name": d.name,
            "description": build_description(d),
            "input_schema": strict_schema(d.input_schema),
            "strict": True,
        }

    def export_all(self) -> list[dict[str, Any]]:
        """Strict definitions of every visible tool, sorted by name."""

        return [self.export(name) for name in sorted(self.get_all(include_disabled=True))]
