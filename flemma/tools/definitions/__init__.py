"""Built-in tools."""

from __future__ import annotations

from flemma.tools.registry import ToolRegistry

from . import bash, calculator, edit, read, write

BUILTIN_DEFINITIONS = (
    bash.DEFINITION,
    calculator.DEFINITION,
    edit.DEFINITION,
    read.DEFINITION,
    write.DEFINITION,
)


def register_builtin_tools(registry: ToolRegistry) -> None:
    for definition in BUILTIN_DEFINITIONS:
        registry.register(definition.name, definition)


__all__ = ["BUILTIN_DEFINITIONS", "register_builtin_tools"]
