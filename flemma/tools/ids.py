from __future__ import annotations

import re
import secrets

from flemma.errors import RegistrationError


MAX_TOOL_ID_LENGTH = 64
SYNTHETIC_ID_PREFIX = "urn:flemma:tool:"

_INVALID_ID_CHARS_RE = re.compile(r"[^A-Za-z0-9_-]")
_SYNTHETIC_ID_RE = re.compile(r"^urn:flemma:tool:(?P<name>.+):(?P<suffix>[0-9a-f]+)$")


def normalize_tool_id(value: str) -> str:
    """Map an internal tool id to a vendor-safe one.

    Characters outside `[A-Za-z0-9_-]` become `_`, the result is cut to 64
    characters and trailing underscores are stripped. Ids that are already
    safe come back unchanged.
    """

    cleaned = _INVALID_ID_CHARS_RE.sub("_", value)
    return cleaned[:MAX_TOOL_ID_LENGTH].rstrip("_")


def new_synthetic_id(tool_name: str) -> str:
    """Id for a tool call the vendor did not identify (Vertex)."""

    return f"{SYNTHETIC_ID_PREFIX}{tool_name}:{secrets.token_hex(8)}"


def is_synthetic_id(value: str) -> bool:
    return _SYNTHETIC_ID_RE.match(value) is not None


def tool_name_from_synthetic_id(value: str) -> str | None:
    match = _SYNTHETIC_ID_RE.match(value)
    return match.group("name") if match else None


def validate_tool_name(name: str) -> str:
    if not isinstance(name, str) or not name:
        raise RegistrationError("tool name must be a non-empty string")
    if "/" in name:
        raise RegistrationError(f"tool name must not contain '/': {name!r}")
    return name


def validate_plain_name(name: str, kind: str) -> str:
    """Names in resolver / backend / provider registries must not contain dots."""

    if not isinstance(name, str) or not name:
        raise RegistrationError(f"{kind} name must be a non-empty string")
    if "." in name:
        raise RegistrationError(f"{kind} name must not contain '.': {name!r}")
    return name
