"""Exact-text find-and-replace.

The old text must occur exactly once; anything else is a failure so the model
adds context instead of editing the wrong spot.
"""

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
    old_text = input.get("oldText")
    if not isinstance(old_text, str) or not old_text:
        return ExecutionResult.fail("No oldText provided")
    new_text = input.get("newText")
    if not isinstance(new_text, str):
        return ExecutionResult.fail("No newText provided")

    path = resolve_tool_path(raw_path, context)
    if not os.path.isfile(path):
        return ExecutionResult.fail(f"File not found: {raw_path}")
    if context is not None and not context.is_path_writable(path):
        logger.info("edit_denied_by_sandbox", extra={"path": path})
        return ExecutionResult.fail(f"Sandbox: write denied - path is outside writable directories: {raw_path}")

    try:
        with open(path, encoding="utf-8", newline="") as f:
            content = f.read()
    except (OSError, UnicodeDecodeError) as e:
        return ExecutionResult.fail(f"Cannot read file: {e}")

    count = content.count(old_text)
    if count == 0:
        return ExecutionResult.fail(
            f"Could not find the exact text in {raw_path}. "
            "The old text must match exactly including all whitespace and newlines."
        )
    if count > 1:
        return ExecutionResult.fail(
            f"Found {count} occurrences of the text in {raw_path}. "
            "The text must be unique. Please provide more context to make it unique."
        )

    updated = content.replace(old_text, new_text, 1)
    if updated == content:
        return ExecutionResult.fail(f"No changes made to {raw_path}. The replacement produced identical content.")

    try:
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(updated)
    except OSError as e:
        return ExecutionResult.fail(f"Cannot write file: {e}")

    return ExecutionResult.ok(f"Successfully replaced text in {raw_path}.")


DEFINITION = ToolDefinition(
    name="edit",
    description=(
        "Edit a file by replacing exact text. The oldText must match exactly (including whitespace). "
        "Use this for precise, surgical edits."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "label": {
                "type": "string",
                "description": "A short human-readable label for this operation (e.g., 'fixing typo in config.py')",
            },
            "path": {"type": "string", "description": "Path to the file to edit (relative or absolute)"},
            "oldText": {"type": "string", "description": "Exact text to find and replace (must match exactly)"},
            "newText": {"type": "string", "description": "New text to replace the old text with"},
        },
        "required": ["label", "path", "oldText", "newText"],
    },
    execute=execute,
)
