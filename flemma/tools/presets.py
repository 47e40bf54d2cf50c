from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Preset:
    """A named, static approve / deny tool list referenced as `$name`."""

    approve: tuple[str, ...] = ()
    deny: tuple[str, ...] = ()


BUILTIN_PRESETS: dict[str, Preset] = {
    "$readonly": Preset(approve=("read",)),
    "$default": Preset(approve=("read", "write", "edit")),
}


def _string_list(name: str, key: str, value: Any) -> tuple[str, ...] | None:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(x, str) for x in value):
        logger.warning(
            "preset_ignored",
            extra={"preset": name, "reason": f"'{key}' must be a list of strings"},
        )
        return None
    return tuple(value)


@dataclass(slots=True)
class PresetRegistry:
    _presets: dict[str, Preset] = field(default_factory=lambda: dict(BUILTIN_PRESETS))

    def setup(self, user_presets: Mapping[str, Any] | None = None) -> None:
        """Reset to the built-ins, then layer user presets on top (same name overrides).

        Invalid entries are logged and skipped.
        """

        self._presets = dict(BUILTIN_PRESETS)
        for name, body in (user_presets or {}).items():
            if not isinstance(name, str) or not name.startswith("$"):
                logger.warning("preset_ignored", extra={"preset": str(name), "reason": "name must start with '$'"})
                continue
            if not isinstance(body, Mapping):
                logger.warning("preset_ignored", extra={"preset": name, "reason": "expected a mapping"})
                continue
            approve = _string_list(name, "approve", body.get("approve"))
            deny = _string_list(name, "deny", body.get("deny"))
            if approve is None or deny is None:
                continue
            self._presets[name] = Preset(approve=approve, deny=deny)

    def get(self, name: str) -> Preset | None:
        return self._presets.get(name)

    def get_all(self) -> dict[str, Preset]:
        return copy.copy(self._presets)

    def names(self) -> list[str]:
        return sorted(self._presets)

    def clear(self) -> None:
        self._presets = {}
