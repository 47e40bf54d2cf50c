"""Output truncation shared by the built-in tools.

Two independent limits apply and whichever is hit first wins: a line limit and
a byte limit. Head truncation keeps the start of the text (file reads); tail
truncation keeps the end (command output).
"""

from __future__ import annotations

MAX_LINES = 2000
MAX_BYTES = 50 * 1024


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f}KB"
    return f"{size / (1024 * 1024):.1f}MB"


def _size(line: str) -> int:
    return len(line.encode("utf-8"))


def truncate_head(text: str, *, max_lines: int = MAX_LINES, max_bytes: int = MAX_BYTES) -> tuple[str, str | None]:
    """Keep the first complete lines of `text` within both limits.

    Returns the kept text and which limit was hit (`"lines"`, `"bytes"` or
    None). An empty result with `"bytes"` means the first line alone is over
    the byte limit.
    """

    lines = text.split("\n")
    if len(lines) <= max_lines and _size(text) <= max_bytes:
        return text, None

    kept: list[str] = []
    size = 0
    for line in lines[:max_lines]:
        line_size = _size(line) + (1 if kept else 0)
        if size + line_size > max_bytes:
            return "\n".join(kept), "bytes"
        kept.append(line)
        size += line_size
    return "\n".join(kept), "lines"


def truncate_tail(text: str, *, max_lines: int = MAX_LINES, max_bytes: int = MAX_BYTES) -> tuple[str, bool]:
    """Keep the last lines of `text` within both limits."""

    lines = text.split("\n")
    kept: list[str] = []
    size = 0
    for line in reversed(lines):
        line_size = _size(line) + 1
        if len(kept) >= max_lines or size + line_size > max_bytes:
            break
        kept.append(line)
        size += line_size
    kept.reverse()
    return "\n".join(kept), len(kept) < len(lines)
