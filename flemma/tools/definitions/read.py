from __future__ import annotations

import os
from typing import Any

from flemma.tools.registry import ExecutionResult, ToolDefinition
from flemma.tools.truncate import MAX_BYTES, MAX_LINES, format_size, truncate_head


def resolve_tool_path(path: str, context: Any) -> str:
    if context is not None:
        return context.resolve_path(path)
    return os.path.abspath(os.path.expanduser(path))


def _positive(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(1, int(value))


def execute(input: dict[str, Any], context: Any = None) -> ExecutionResult:
    raw_path = input.get("path")
    if not isinstance(raw_path, str) or not raw_path:
        return ExecutionResult.fail("No path provided")

    path = resolve_tool_path(raw_path, context)
    if not os.path.isfile(path) or not os.access(path, os.R_OK):
        return ExecutionResult.fail(f"File not found: {raw_path}")

    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            lines = f.read().split("\n")
    except OSError as e:
        return ExecutionResult.fail(f"Cannot read file: {e}")
    if lines[-1] == "":
        lines.pop()
    total = len(lines)

    start = _positive(input.get("offset")) or 1
    if start > total:
        return ExecutionResult.fail(f"Offset {start} is beyond end of file ({total} lines total)")

    limit = _positive(input.get("limit"))
    end = min(start + limit - 1, total) if limit else total
    content, truncated_by = truncate_head("\n".join(lines[start - 1 : end]))

    if truncated_by == "bytes" and not content:
        return ExecutionResult.ok(
            f"[Line {start} is {format_size(len(lines[start - 1].encode('utf-8')))}, "
            f"exceeds {format_size(MAX_BYTES)} limit. "
            f"Use bash: sed -n '{start}p' {raw_path} | head -c {MAX_BYTES}]"
        )

    if truncated_by is not None:
        shown_end = start + content.count("\n")
        limit_note = "" if truncated_by == "lines" else f" ({format_size(MAX_BYTES)} limit)"
        return ExecutionResult.ok(
            f"{content}\n\n[Showing lines {start}-{shown_end} of {total}{limit_note}. "
            f"Use offset={shown_end + 1} to continue.]"
        )

    if end < total:
        return ExecutionResult.ok(f"{content}\n\n[{total - end} more lines in file. Use offset={end + 1} to continue.]")
    return ExecutionResult.ok(content)


DEFINITION = ToolDefinition(
    name="read",
    description=(
        f"Read the contents of a file. Output is truncated to {MAX_LINES} lines or "
        f"{MAX_BYTES // 1024}KB (whichever is hit first). Use offset/limit for large files. "
        "When you need the full file, continue with offset until complete."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "label": {
                "type": "string",
                "description": "A short human-readable label for this operation (e.g., 'reading config.py')",
            },
            "path": {"type": "string", "description": "Path to the file to read (relative or absolute)"},
            "offset": {"type": "number", "description": "Line number to start reading from (1-indexed)"},
            "limit": {"type": "number", "description": "Maximum number of lines to read"},
        },
        "required": ["label", "path"],
    },
    execute=execute,
)
