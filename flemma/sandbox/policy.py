from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SandboxPolicy:
    """A sandbox policy with every writable path absolute and deduplicated."""

    rw_paths: tuple[str, ...] = ()
    network: bool = True
    allow_privileged: bool = False


def _normalize(path: str) -> str:
    return os.path.realpath(os.path.abspath(os.path.expanduser(path)))


def resolve_policy(raw: Mapping[str, Any], *, cwd: str | None = None) -> SandboxPolicy:
    """Expand `$CWD` and normalize `rw_paths`; unknown `$VARIABLES` are skipped."""

    variables = {"$CWD": cwd or os.getcwd()}
    seen: set[str] = set()
    paths: list[str] = []

    for entry in raw.get("rw_paths") or []:
        if entry in variables:
            path = _normalize(variables[entry])
        elif entry.startswith("$"):
            logger.warning("sandbox_unknown_path_variable", extra={"variable": entry})
            continue
        else:
            path = _normalize(entry)
        if path not in seen:
            seen.add(path)
            paths.append(path)

    return SandboxPolicy(
        rw_paths=tuple(paths),
        network=raw.get("network", True) is not False,
        allow_privileged=raw.get("allow_privileged") is True,
    )


def is_path_writable(path: str, policy: SandboxPolicy) -> bool:
    target = _normalize(path)
    return any(target == rw or target.startswith(rw.rstrip("/") + "/") for rw in policy.rw_paths)
