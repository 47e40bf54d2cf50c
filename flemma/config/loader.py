"""YAML configuration loading.

- One or more YAML files, deep-merged in order (later files win).
- `${ENV_VAR}` placeholders are expanded strictly: a missing or empty variable
  is reported together with every other unresolved reference.
- A `.env` file may seed the environment before expansion.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from flemma.errors import ConfigError


_PLACEHOLDER_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass(frozen=True, slots=True)
class _MissingVar:
    name: str
    key_path: str
    reason: str  # "missing" | "empty"


def merge_mappings(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """Recursively merge `overlay` into `base`; non-mapping values replace."""

    for key, value in overlay.items():
        current = base.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            base[key] = merge_mappings(dict(current), value)
        else:
            base[key] = value
    return base


def _expand(obj: Any, *, key_path: str, missing: list[_MissingVar]) -> Any:
    if isinstance(obj, str):

        def substitute(match: re.Match[str]) -> str:
            name = match.group(1)
            value = os.getenv(name)
            if value is None or value == "":
                missing.append(
                    _MissingVar(name=name, key_path=key_path, reason="missing" if value is None else "empty")
                )
                return match.group(0)
            return value

        return _PLACEHOLDER_RE.sub(substitute, obj)

    if isinstance(obj, Mapping):
        return {
            str(k): _expand(v, key_path=f"{key_path}.{k}" if key_path else str(k), missing=missing)
            for k, v in obj.items()
        }

    if isinstance(obj, list):
        return [_expand(v, key_path=f"{key_path}[{i}]", missing=missing) for i, v in enumerate(obj)]

    return obj


def _read_yaml(path: Path) -> Mapping[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read config file: {e}", path=str(path)) from e

    try:
        data = yaml.safe_load(text) if text.strip() else {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}", path=str(path)) from e

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError("Top-level YAML must be a mapping", path=str(path))
    return data


def load_config(
    paths: Path | str | Sequence[Path | str],
    *,
    load_dotenv_file: bool = True,
    dotenv_path: Path | None = None,
) -> dict[str, Any]:
    """Load and merge YAML config files, then expand `${ENV_VAR}` references.

    Raises:
        ConfigError: If a file is unreadable or not a mapping, or any
            environment reference cannot be resolved.
    """

    if isinstance(paths, (str, Path)):
        files = [Path(paths)]
    else:
        files = [Path(p) for p in paths]
    if not files:
        raise ConfigError("No config files provided")

    if load_dotenv_file:
        load_dotenv(dotenv_path or Path.cwd() / ".env", override=False)

    merged: dict[str, Any] = {}
    for path in files:
        merge_mappings(merged, _read_yaml(path))

    missing: list[_MissingVar] = []
    expanded = _expand(merged, key_path="", missing=missing)

    if missing:
        lines = ["Unresolved environment variables in config:"]
        lines.extend(f"- {m.name} ({m.reason}) at {m.key_path or '<root>'}" for m in missing)
        raise ConfigError("\n".join(lines))

    return expanded
