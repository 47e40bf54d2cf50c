from __future__ import annotations

import pytest

from flemma.errors import RegistrationError
from flemma.tools.ids import (
    MAX_TOOL_ID_LENGTH,
    is_synthetic_id,
    new_synthetic_id,
    normalize_tool_id,
    tool_name_from_synthetic_id,
    validate_plain_name,
    validate_tool_name,
)


def test_normalize_synthetic_id() -> None:
    assert (
        normalize_tool_id("urn:flemma:tool:calculator:6963a326cb51")
        == "urn_flemma_tool_calculator_6963a326cb51"
    )


def test_normalize_native_ids_pass_through() -> None:
    assert normalize_tool_id("toolu_01ABC") == "toolu_01ABC"
    assert normalize_tool_id("call_abc-123") == "call_abc-123"


def test_normalize_truncates_and_strips_trailing_underscores() -> None:
    out = normalize_tool_id("a" * 100)
    assert len(out) == MAX_TOOL_ID_LENGTH
    assert not out.endswith("_")

    # Truncation can expose underscores at the cut; they are stripped.
    out = normalize_tool_id("b" * 60 + ":::::" + "c" * 40)
    assert out == "b" * 60
    assert not out.endswith("_")


def test_synthetic_id_roundtrip() -> None:
    tool_id = new_synthetic_id("calculator")
    assert is_synthetic_id(tool_id)
    assert tool_name_from_synthetic_id(tool_id) == "calculator"
    assert tool_name_from_synthetic_id("toolu_01ABC") is None
    assert new_synthetic_id("calculator") != tool_id


def test_name_validation() -> None:
    assert validate_tool_name("mcp:server:tool") == "mcp:server:tool"
    with pytest.raises(RegistrationError):
        validate_tool_name("a/b")
    with pytest.raises(RegistrationError):
        validate_tool_name("")
    with pytest.raises(RegistrationError):
        validate_plain_name("has.dot", "provider")
