from __future__ import annotations

from .policy import SandboxPolicy, is_path_writable, resolve_policy
from .registry import SandboxBackend, SandboxBackendRegistry, install_default_backends, resolve_settings

__all__ = [
    "SandboxBackend",
    "SandboxBackendRegistry",
    "SandboxPolicy",
    "install_default_backends",
    "is_path_writable",
    "resolve_policy",
    "resolve_settings",
]
