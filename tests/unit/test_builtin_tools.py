from __future__ import annotations

import asyncio
import functools
import os
from pathlib import Path

import pytest

from flemma.errors import SandboxError
from flemma.sandbox.policy import SandboxPolicy, is_path_writable
from flemma.tools.definitions import bash, calculator, edit, read, write
from flemma.tools.executor import ExecutionContext
from flemma.tools.truncate import truncate_head


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("2 + 2", 4),
        ("15 * 7", 105),
        ("sqrt(16)", 4.0),
        ("2^10", 1024),
        ("-(3 - 5) * pi / pi", 2.0),
        ("max(1, 7, 3)", 7),
    ],
)
def test_calculator_evaluates(expression: str, expected: float) -> None:
    result = calculator.execute({"expression": expression})
    assert result.success is True
    assert result.output == {"result": expected}


@pytest.mark.parametrize(
    ("expression", "prefix"),
    [
        ("__import__('os')", "Evaluation failed"),
        ("1 / 0", "Evaluation failed"),
        ("2 ** 100000", "Evaluation failed"),
        ("2 +", "Invalid expression"),
        ("", "No expression provided"),
    ],
)
def test_calculator_rejects(expression: str, prefix: str) -> None:
    result = calculator.execute({"expression": expression})
    assert result.success is False
    assert result.error is not None and result.error.startswith(prefix)


def test_truncate_tail_keeps_last_lines() -> None:
    text = "\n".join(str(i) for i in range(10))
    shown, truncated = bash.truncate_tail(text, max_lines=3)
    assert (shown, truncated) == ("7\n8\n9", True)
    assert bash.truncate_tail("a\nb", max_bytes=100) == ("a\nb", False)


def test_bash_runs_and_merges_stderr() -> None:
    result = asyncio.run(bash.execute({"label": "t", "command": "echo out; echo err >&2"}))
    assert result.success is True
    assert result.output == "out\nerr"


def test_bash_nonzero_exit() -> None:
    result = asyncio.run(bash.execute({"label": "t", "command": "echo nope; exit 3"}))
    assert result.success is False
    assert result.error == "nope\n\nCommand exited with code 3"


def test_bash_timeout_reports_partial_output() -> None:
    result = asyncio.run(bash.execute({"label": "t", "command": "echo early; sleep 5", "timeout": 0.5}))
    assert result.success is False
    assert result.error is not None
    assert result.error.startswith("early")
    assert result.error.endswith("Command timed out after 0.5 seconds.")


def test_bash_uses_sandbox_wrapper() -> None:
    seen: list[list[str]] = []

    def wrap(argv: list[str]) -> list[str]:
        seen.append(argv)
        return ["env", *argv]

    context = ExecutionContext(conversation_id="c", tool_id="t", wrap_command=wrap)
    result = asyncio.run(bash.execute({"label": "t", "command": "echo hi"}, context))
    assert result.output == "hi"
    assert seen[0][:2] == ["bash", "-c"]


def test_bash_sandbox_error_is_a_failure() -> None:
    def wrap(argv: list[str]) -> list[str]:
        raise SandboxError("backend gone")

    context = ExecutionContext(conversation_id="c", tool_id="t", wrap_command=wrap)
    result = asyncio.run(bash.execute({"label": "t", "command": "echo hi"}, context))
    assert result.success is False
    assert result.error == "Sandbox error: backend gone"


def test_truncate_head_keeps_first_lines() -> None:
    text = "\n".join(str(i) for i in range(10))
    assert truncate_head(text, max_lines=3) == ("0\n1\n2", "lines")
    assert truncate_head("aaaa\nbbbb\ncc", max_bytes=9) == ("aaaa\nbbbb", "bytes")
    assert truncate_head("x" * 20, max_bytes=10) == ("", "bytes")
    assert truncate_head("short") == ("short", None)


def _context(tmp_path: Path, *, rw_paths: tuple[str, ...] | None = None) -> ExecutionContext:
    context = ExecutionContext(conversation_id="c", tool_id="t", cwd=str(tmp_path))
    if rw_paths is None:
        return context
    policy = SandboxPolicy(rw_paths=tuple(os.path.realpath(p) for p in rw_paths))
    return ExecutionContext(
        conversation_id="c",
        tool_id="t",
        cwd=str(tmp_path),
        is_path_writable=functools.partial(is_path_writable, policy=policy),
    )


def test_read_relative_path_with_offset_and_limit(tmp_path: Path) -> None:
    (tmp_path / "notes.txt").write_text("one\ntwo\nthree\nfour\n", encoding="utf-8")
    context = _context(tmp_path)

    whole = read.execute({"label": "r", "path": "notes.txt"}, context)
    assert whole.success is True
    assert whole.output == "one\ntwo\nthree\nfour"

    window = read.execute({"label": "r", "path": "notes.txt", "offset": 2, "limit": 2}, context)
    assert window.output == "two\nthree\n\n[1 more lines in file. Use offset=4 to continue.]"

    tail = read.execute({"label": "r", "path": "notes.txt", "offset": 4, "limit": None}, context)
    assert tail.output == "four"


def test_read_failures(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("only\n", encoding="utf-8")
    context = _context(tmp_path)

    assert read.execute({"label": "r", "path": ""}, context).error == "No path provided"
    assert read.execute({"label": "r", "path": "missing.txt"}, context).error == "File not found: missing.txt"
    beyond = read.execute({"label": "r", "path": "a.txt", "offset": 5}, context)
    assert beyond.error == "Offset 5 is beyond end of file (1 lines total)"


def test_read_truncates_long_files(tmp_path: Path) -> None:
    (tmp_path / "big.txt").write_text("\n".join(f"line {i}" for i in range(1, 2501)), encoding="utf-8")
    result = read.execute({"label": "r", "path": "big.txt"}, _context(tmp_path))
    assert result.output.endswith("[Showing lines 1-2000 of 2500. Use offset=2001 to continue.]")

    (tmp_path / "wide.txt").write_text("x" * (60 * 1024), encoding="utf-8")
    wide = read.execute({"label": "r", "path": "wide.txt"}, _context(tmp_path))
    assert wide.output.startswith("[Line 1 is 60.0KB, exceeds 50.0KB limit.")


def test_write_creates_parents(tmp_path: Path) -> None:
    result = write.execute({"label": "w", "path": "deep/dir/out.txt", "content": "héllo"}, _context(tmp_path))
    assert result.success is True
    assert result.output == "Successfully wrote 6 bytes to deep/dir/out.txt"
    assert (tmp_path / "deep" / "dir" / "out.txt").read_text(encoding="utf-8") == "héllo"


def test_write_respects_sandbox_paths(tmp_path: Path) -> None:
    allowed = tmp_path / "allowed"
    allowed.mkdir()
    context = _context(tmp_path, rw_paths=(str(allowed),))

    assert write.execute({"label": "w", "path": "allowed/ok.txt", "content": "x"}, context).success is True
    denied = write.execute({"label": "w", "path": "elsewhere.txt", "content": "x"}, context)
    assert denied.success is False
    assert denied.error == "Sandbox: write denied - path is outside writable directories: elsewhere.txt"
    assert not (tmp_path / "elsewhere.txt").exists()


def test_edit_replaces_unique_text(tmp_path: Path) -> None:
    target = tmp_path / "code.py"
    target.write_text("x = 1\ny = 2\n", encoding="utf-8")
    context = _context(tmp_path)

    result = edit.execute({"label": "e", "path": "code.py", "oldText": "y = 2", "newText": "y = 3"}, context)
    assert result.output == "Successfully replaced text in code.py."
    assert target.read_text(encoding="utf-8") == "x = 1\ny = 3\n"


@pytest.mark.parametrize(
    ("old", "new", "prefix"),
    [
        ("z = 9", "z = 0", "Could not find the exact text in code.py"),
        ("= ", "== ", "Found 2 occurrences of the text in code.py"),
        ("x = 1", "x = 1", "No changes made to code.py"),
        ("", "x", "No oldText provided"),
    ],
)
def test_edit_failures(tmp_path: Path, old: str, new: str, prefix: str) -> None:
    target = tmp_path / "code.py"
    target.write_text("x = 1\ny = 2\n", encoding="utf-8")
    result = edit.execute({"label": "e", "path": "code.py", "oldText": old, "newText": new}, _context(tmp_path))
    assert result.success is False
    assert result.error.startswith(prefix)
    assert target.read_text(encoding="utf-8") == "x = 1\ny = 2\n"


def test_edit_respects_sandbox_paths(tmp_path: Path) -> None:
    (tmp_path / "code.py").write_text("a\n", encoding="utf-8")
    context = _context(tmp_path, rw_paths=(str(tmp_path / "other"),))
    result = edit.execute({"label": "e", "path": "code.py", "oldText": "a", "newText": "b"}, context)
    assert result.error.startswith("Sandbox: write denied")
