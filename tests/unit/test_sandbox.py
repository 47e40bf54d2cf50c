from __future__ import annotations

import os
from pathlib import Path

import pytest

from flemma.config.model import SandboxSettings
from flemma.errors import SandboxError
from flemma.sandbox import bwrap
from flemma.sandbox.policy import SandboxPolicy, is_path_writable, resolve_policy
from flemma.sandbox.registry import SandboxBackendRegistry, install_default_backends, resolve_settings


def _registry(**availability: bool) -> SandboxBackendRegistry:
    reg = SandboxBackendRegistry()
    for priority, (name, ok) in enumerate(availability.items()):
        reg.register(
            name,
            available=lambda cfg, ok=ok, name=name: (ok, None if ok else f"{name} missing"),
            wrap=lambda policy, cfg, cmd, name=name: [name, *policy.rw_paths, "--", *cmd],
            priority=priority * 10,
        )
    return reg


def test_resolve_policy_expands_cwd_and_dedups(tmp_path: Path) -> None:
    policy = resolve_policy({"rw_paths": ["$CWD", str(tmp_path), "$HOME_NOPE"], "network": False}, cwd=str(tmp_path))
    assert policy.rw_paths == (os.path.realpath(tmp_path),)
    assert policy.network is False
    assert policy.allow_privileged is False


def test_is_path_writable(tmp_path: Path) -> None:
    policy = SandboxPolicy(rw_paths=(os.path.realpath(tmp_path),))
    assert is_path_writable(str(tmp_path / "a" / "b.txt"), policy)
    assert not is_path_writable("/etc/passwd", policy)
    assert not is_path_writable(str(tmp_path) + "-sibling", policy)


def test_detect_picks_highest_priority_available() -> None:
    reg = _registry(low=True, mid=False, high=True)
    assert reg.detect() == ("high", None)

    reg = _registry(a=False, b=False)
    name, diagnostic = reg.detect()
    assert name is None
    assert diagnostic is not None and "a missing" in diagnostic and "b missing" in diagnostic


def test_detect_cache_invalidated_by_registration() -> None:
    reg = _registry(only=False)
    assert reg.detect()[0] is None
    reg.register("late", available=lambda cfg: (True, None), wrap=lambda p, c, cmd: cmd)
    assert reg.detect()[0] == "late"


def test_wrap_command_disabled_is_identity() -> None:
    reg = _registry(fake=True)
    assert reg.wrap_command(["ls"], SandboxSettings(enabled=False)) == ["ls"]


def test_wrap_command_uses_backend(tmp_path: Path) -> None:
    reg = _registry(fake=True)
    settings = SandboxSettings(enabled=True, backend="auto", policy={"rw_paths": ["$CWD"]})
    argv = reg.wrap_command(["ls", "-la"], settings, cwd=str(tmp_path))
    assert argv == ["fake", os.path.realpath(tmp_path), "--", "ls", "-la"]


def test_wrap_command_auto_degrades_explicit_raises() -> None:
    reg = _registry(fake=False)
    assert reg.wrap_command(["ls"], SandboxSettings(enabled=True, backend="auto")) == ["ls"]
    with pytest.raises(SandboxError):
        reg.wrap_command(["ls"], SandboxSettings(enabled=True, backend="nope"))


def test_validate_backend() -> None:
    reg = _registry(fake=False)
    assert reg.validate_backend(SandboxSettings(enabled=False)) == (True, None)
    ok, reason = reg.validate_backend(SandboxSettings(enabled=True, backend="fake"))
    assert ok is False and reason == "fake missing"


def test_resolve_settings_layers_overrides() -> None:
    base = SandboxSettings(enabled=False, backends={"bwrap": {"path": "/usr/bin/bwrap"}})
    merged = resolve_settings(base, {"enabled": True, "backends": {"bwrap": {"extra_args": ["--x"]}}})
    assert merged.enabled is True
    assert merged.backends["bwrap"] == {"path": "/usr/bin/bwrap", "extra_args": ["--x"]}
    assert resolve_settings(merged, None, enabled=False).enabled is False


def test_bwrap_wrap_flags(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(bwrap, "available", lambda cfg: (True, None))
    policy = SandboxPolicy(rw_paths=("/work",), network=False)
    argv = bwrap.wrap(policy, {"extra_args": ["--chdir", "/work"]}, ["bash", "-c", "ls"])

    assert argv[:4] == ["bwrap", "--ro-bind", "/", "/"]
    assert ["--bind", "/work", "/work"] == argv[4:7]
    assert "--unshare-user" in argv
    assert "--unshare-net" in argv and "--share-net" not in argv
    assert argv[-5:] == ["--chdir", "/work", "bash", "-c", "ls"]


def test_bwrap_unavailable_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(bwrap, "available", lambda cfg: (False, "no bwrap"))
    with pytest.raises(SandboxError):
        bwrap.wrap(SandboxPolicy(), {}, ["true"])


def test_default_backends_installed_once() -> None:
    reg = SandboxBackendRegistry()
    install_default_backends(reg)
    install_default_backends(reg)
    assert [b.name for b in reg.get_all()] == ["bwrap"]
