from __future__ import annotations


class FlemmaError(Exception):
    """Base exception for this project."""


class ConfigError(FlemmaError):
    """Raised when configuration is invalid or incomplete."""

    def __init__(self, message: str, *, path: str | None = None):
        super().__init__(f"{path}: {message}" if path else message)
        self.path = path


class RegistrationError(FlemmaError, ValueError):
    """Raised when a tool, resolver, preset or backend name is not acceptable."""


class SandboxError(FlemmaError):
    """Raised when a command cannot be wrapped by the requested sandbox backend."""


class ToolUseNotFoundError(FlemmaError, LookupError):
    """Raised when no assistant message holds a tool use with the given id."""

    def __init__(self, tool_use_id: str):
        super().__init__(f"Tool use block not found: {tool_use_id}")
        self.tool_use_id = tool_use_id
