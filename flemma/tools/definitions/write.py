from __future__ import annotations

import logging
import os
from typing import Any

from flemma.tools.registry import ExecutionResult, ToolDefinition

from .read import resolve_tool_path

logger = logging.getLogger(__name__)


def execute(input: dict[str, Any], context: Any = None) -> ExecutionResult:
    raw_path = input.get("path")
    if not isinstance(raw_path, str) or not raw_path:
        return ExecutionResult.fail("No path provided")
    content = input.get("content")
    if not isinstance(content, str):
        return ExecutionResult.fail("No content provided")

    path = resolve_tool_path(raw_path, context)
    if context is not None and not context.is_path_writable(path):
        logger.info("write_denied_by_sandbox", extra={"path": path})
        return ExecutionResult.fail(f"Sandbox: write denied - path is outside writable directories: {raw_path}")

    data = content.encode("utf-8")
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
    except OSError as e:
        return ExecutionResult.fail(f"Cannot write file: {e}")

    return ExecutionResult.ok(f"Successfully wrote {len(data)} bytes to {raw_path}")


DEFINITION = ToolDefinition(
    name="write",
    description=(
        "Write content to a file. Creates the file if it doesn't exist, overwrites if it does. "
        "Automatically creates parent directories."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "label": {
                "type": "string",
                "description": "A short human-readable label for this operation (e.g., 'creating config.py')",
            },
            "path": {"type": "string", "description": "Path to the file to write (relative or absolute)"},
            "content": {"type": "string", "description": "Content to write to the file"},
        },
        "required": ["label", "path", "content"],
    },
    execute=execute,
)
