"""Named, prioritised sandbox backends.

A backend exposes `available(backend_config) -> (ok, reason)` and
`wrap(policy, backend_config, inner_cmd) -> argv`. With `backend: auto` (or
`required`) the highest-priority available backend is used; an explicit
name is looked up directly.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from flemma.config.loader import merge_mappings
from flemma.config.model import SandboxSettings
from flemma.errors import SandboxError
from flemma.tools.ids import validate_plain_name

from . import bwrap
from .policy import SandboxPolicy, resolve_policy

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 50
_AUTODETECT = ("auto", "required")
_FIELDS = {f.name for f in dataclasses.fields(SandboxSettings)}

AvailableFn = Callable[[Mapping[str, Any]], "tuple[bool, str | None]"]
WrapFn = Callable[[SandboxPolicy, Mapping[str, Any], list[str]], list[str]]


@dataclass(frozen=True, slots=True)
class SandboxBackend:
    name: str
    available: AvailableFn
    wrap: WrapFn
    priority: int = DEFAULT_PRIORITY
    description: str | None = None


def resolve_settings(
    base: SandboxSettings,
    override: Mapping[str, Any] | None = None,
    *,
    enabled: bool | None = None,
) -> SandboxSettings:
    """Layer per-call overrides over the global settings.

    `enabled` is the session-level switch and wins over both.
    """

    settings = base
    if override:
        raw = merge_mappings(dataclasses.asdict(base), override)
        settings = SandboxSettings(**{k: v for k, v in raw.items() if k in _FIELDS})
    if enabled is not None:
        settings = dataclasses.replace(settings, enabled=enabled)
    return settings


class SandboxBackendRegistry:
    def __init__(self) -> None:
        self._backends: dict[str, SandboxBackend] = {}
        self._generation = 0
        self._detected: tuple[int, str, str | None, str | None] | None = None

    def register(
        self,
        name: str,
        *,
        available: AvailableFn,
        wrap: WrapFn,
        priority: int = DEFAULT_PRIORITY,
        description: str | None = None,
    ) -> None:
        validate_plain_name(name, "sandbox backend")
        self._backends[name] = SandboxBackend(
            name=name, available=available, wrap=wrap, priority=priority, description=description
        )
        self._generation += 1

    def unregister(self, name: str) -> bool:
        removed = self._backends.pop(name, None) is not None
        if removed:
            self._generation += 1
        return removed

    def get(self, name: str) -> SandboxBackend | None:
        return self._backends.get(name)

    def get_all(self) -> list[SandboxBackend]:
        return sorted(self._backends.values(), key=lambda b: (-b.priority, b.name))

    def count(self) -> int:
        return len(self._backends)

    def clear(self) -> None:
        self._backends.clear()
        self._generation += 1

    def detect(self, backends_config: Mapping[str, Mapping[str, Any]] | None = None) -> tuple[str | None, str | None]:
        """Pick the highest-priority available backend.

        Returns `(name, None)` or `(None, diagnostic)` listing why each failed.
        """

        backends_config = backends_config or {}
        key = repr(sorted(backends_config.items()))
        if self._detected and self._detected[0] == self._generation and self._detected[1] == key:
            return self._detected[2], self._detected[3]

        tried: list[str] = []
        found: str | None = None
        for backend in self.get_all():
            ok, reason = backend.available(backends_config.get(backend.name) or {})
            if ok:
                found = backend.name
                break
            tried.append(f"{backend.name}: {reason or 'unavailable'}")

        diagnostic = None
        if found is None:
            diagnostic = "No sandbox backend available"
            if tried:
                diagnostic += f" ({'; '.join(tried)})"
        self._detected = (self._generation, key, found, diagnostic)
        return found, diagnostic

    def resolve_backend(self, settings: SandboxSettings) -> SandboxBackend:
        if settings.backend in _AUTODETECT:
            name, diagnostic = self.detect(settings.backends)
            if name is None:
                raise SandboxError(diagnostic or "No sandbox backend available")
        else:
            name = settings.backend
        backend = self._backends.get(name)
        if backend is None:
            raise SandboxError(f"Unknown sandbox backend: {name}")
        return backend

    def validate_backend(self, settings: SandboxSettings) -> tuple[bool, str | None]:
        """Whether a usable backend exists; always true while sandboxing is off."""

        if not settings.enabled:
            return True, None
        try:
            backend = self.resolve_backend(settings)
        except SandboxError as e:
            return False, str(e)
        return backend.available(settings.backends.get(backend.name) or {})

    def wrap_command(self, inner_cmd: list[str], settings: SandboxSettings, *, cwd: str | None = None) -> list[str]:
        """Wrap `inner_cmd` with the resolved backend.

        In auto mode a missing backend degrades to running unsandboxed; an
        explicitly named backend that cannot be used raises `SandboxError`.
        """

        if not settings.enabled:
            return list(inner_cmd)
        try:
            backend = self.resolve_backend(settings)
        except SandboxError:
            if settings.backend in _AUTODETECT:
                logger.warning("sandbox_unavailable_running_unsandboxed", extra={"backend": settings.backend})
                return list(inner_cmd)
            raise
        policy = resolve_policy(settings.policy, cwd=cwd)
        return backend.wrap(policy, settings.backends.get(backend.name) or {}, list(inner_cmd))


def install_default_backends(registry: SandboxBackendRegistry) -> None:
    if registry.get("bwrap") is None:
        registry.register(
            "bwrap",
            available=bwrap.available,
            wrap=bwrap.wrap,
            priority=100,
            description="Bubblewrap (Linux)",
        )
