from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from flemma.errors import SandboxError
from flemma.tools.registry import ExecutionResult, ToolDefinition
from flemma.tools.truncate import MAX_BYTES, MAX_LINES, truncate_tail

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0


def _render(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace").rstrip()
    shown, truncated = truncate_tail(text)
    if truncated:
        total = text.count("\n") + 1
        kept = shown.count("\n") + 1
        shown = f"{shown}\n\n[Showing last {kept} of {total} lines]"
    return shown


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


async def execute(input: dict[str, Any], context: Any = None) -> ExecutionResult:
    command = input.get("command")
    if not isinstance(command, str) or not command.strip():
        return ExecutionResult.fail("No command provided")

    timeout = input.get("timeout")
    timeout_s = float(timeout) if isinstance(timeout, (int, float)) and timeout > 0 else DEFAULT_TIMEOUT_S

    # Group the command so the stderr redirect covers every pipeline stage.
    argv = ["bash", "-c", f"{{ {command}; }} 2>&1"]
    if context is not None:
        try:
            argv = context.wrap_command(argv)
        except SandboxError as e:
            return ExecutionResult.fail(f"Sandbox error: {e}")

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        return ExecutionResult.fail(f"Failed to start command: {e}")

    chunks: list[bytes] = []

    async def read_all() -> None:
        assert proc.stdout is not None
        while chunk := await proc.stdout.read(65536):
            chunks.append(chunk)
        await proc.wait()

    try:
        await asyncio.wait_for(read_all(), timeout=timeout_s)
    except asyncio.TimeoutError:
        await _kill(proc)
        partial = _render(b"".join(chunks))
        message = f"Command timed out after {timeout_s:g} seconds."
        return ExecutionResult.fail(f"{partial}\n\n{message}" if partial else message)
    except asyncio.CancelledError:
        await _kill(proc)
        raise

    output = _render(b"".join(chunks)) or "(no output)"
    if proc.returncode != 0:
        logger.info("bash_nonzero_exit", extra={"returncode": proc.returncode})
        return ExecutionResult.fail(f"{output}\n\nCommand exited with code {proc.returncode}")
    return ExecutionResult.ok(output)


DEFINITION = ToolDefinition(
    name="bash",
    description=(
        "Execute a bash command in the current working directory. Returns stdout and stderr. "
        f"Output is truncated to the last {MAX_LINES} lines or {MAX_BYTES // 1024}KB "
        "(whichever is hit first). Optionally provide a timeout in seconds."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "label": {
                "type": "string",
                "description": "A short human-readable label for this operation (e.g., 'running tests')",
            },
            "command": {"type": "string", "description": "The bash command to execute"},
            "timeout": {"type": "number", "description": "Timeout in seconds (default: 30)"},
        },
        "required": ["label", "command"],
    },
    execute=execute,
    is_async=True,
)
