"""Bubblewrap backend: read-only root, explicit writable paths, fresh namespaces."""

from __future__ import annotations

import os
import shutil
import sys
from collections.abc import Mapping
from typing import Any

from flemma.errors import SandboxError

from .policy import SandboxPolicy


def available(backend_config: Mapping[str, Any]) -> tuple[bool, str | None]:
    if not sys.platform.startswith("linux"):
        return False, "Bubblewrap sandbox requires Linux (user namespaces)"

    bwrap = backend_config.get("path") or "bwrap"
    if shutil.which(bwrap) is None:
        return False, (
            f"bubblewrap (bwrap) not found at {bwrap!r}. "
            "Install it (e.g. apt install bubblewrap) or set sandbox.backends.bwrap.path"
        )
    return True, None


def wrap(policy: SandboxPolicy, backend_config: Mapping[str, Any], inner_cmd: list[str]) -> list[str]:
    ok, reason = available(backend_config)
    if not ok:
        raise SandboxError(reason or "bwrap unavailable")

    args = [backend_config.get("path") or "bwrap", "--ro-bind", "/", "/"]

    for path in policy.rw_paths:
        args += ["--bind", path, path]

    args += ["--dev", "/dev", "--proc", "/proc", "--tmpfs", "/run"]

    # NixOS keeps system packages behind /run/current-system.
    if os.path.exists("/run/current-system"):
        args += ["--ro-bind", "/run/current-system", "/run/current-system"]

    if not policy.allow_privileged:
        args.append("--unshare-user")
    args += ["--unshare-pid", "--unshare-uts", "--unshare-ipc"]
    args.append("--share-net" if policy.network else "--unshare-net")
    args += ["--die-with-parent", "--new-session"]

    extra = backend_config.get("extra_args")
    if extra:
        args += [str(a) for a in extra]

    return args + list(inner_cmd)
