from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import SecretStr

from flemma.errors import ConfigError


API_KEY_ENV_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "vertex": "VERTEX_AI_ACCESS_TOKEN",
}

CACHE_RETENTIONS = ("none", "short", "long")


@dataclass(frozen=True)
class ProviderSettings:
    name: str = "anthropic"
    model: str = "claude-sonnet-4-5"
    max_tokens: int = 4000
    temperature: float | None = 0.7
    thinking_budget: int | None = None
    # OpenAI reasoning effort ("low" | "medium" | "high").
    reasoning: str | None = None
    cache_retention: str = "short"
    api_key: SecretStr | None = None
    endpoint: str | None = None
    project_id: str | None = None
    location: str = "global"
    timeout_s: float = 120.0

    def resolved_api_key(self) -> str | None:
        """Explicit key, else the provider's environment variable."""

        if self.api_key is not None:
            value = self.api_key.get_secret_value()
            if value:
                return value
        env_var = API_KEY_ENV_VARS.get(self.name)
        if env_var is None:
            return None
        return os.getenv(env_var) or None


@dataclass(frozen=True)
class ToolsSettings:
    # List of tool names / `$preset` references, or a callable policy.
    auto_approve: list[str] | Callable[..., Any] | None = None
    require_approval: bool = True
    presets: dict[str, dict[str, Any]] = field(default_factory=dict)
    max_concurrency: int = 8


@dataclass(frozen=True)
class SandboxSettings:
    enabled: bool = False
    backend: str = "auto"
    auto_approve: bool = True
    backends: dict[str, dict[str, Any]] = field(default_factory=dict)
    # rw_paths (may use $CWD), network, allow_privileged
    policy: dict[str, Any] = field(default_factory=lambda: {"rw_paths": ["$CWD"], "network": True})


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"
    json: bool = True


@dataclass(frozen=True)
class Settings:
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    tools: ToolsSettings = field(default_factory=ToolsSettings)
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError("must be a mapping", path=key)
    return value


def _str(d: Mapping[str, Any], key: str, default: str | None, *, path: str) -> str | None:
    value = d.get(key, default)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError("must be a non-empty string", path=f"{path}.{key}")
    return value


def _int(d: Mapping[str, Any], key: str, default: int | None, *, path: str, minimum: int = 0) -> int | None:
    value = d.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError("must be an integer", path=f"{path}.{key}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError("must be an integer", path=f"{path}.{key}") from None
    if number < minimum:
        raise ConfigError(f"must be >= {minimum}", path=f"{path}.{key}")
    return number


def _float(d: Mapping[str, Any], key: str, default: float | None, *, path: str) -> float | None:
    value = d.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError("must be a number", path=f"{path}.{key}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError("must be a number", path=f"{path}.{key}") from None


def _bool(d: Mapping[str, Any], key: str, default: bool, *, path: str) -> bool:
    value = d.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError("must be a boolean", path=f"{path}.{key}")
    return value


def _mapping_of_mappings(d: Mapping[str, Any], key: str, *, path: str) -> dict[str, dict[str, Any]]:
    value = d.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError("must be a mapping", path=f"{path}.{key}")
    out: dict[str, dict[str, Any]] = {}
    for name, body in value.items():
        if not isinstance(body, Mapping):
            raise ConfigError("must be a mapping", path=f"{path}.{key}.{name}")
        out[str(name)] = dict(body)
    return out


def _provider(raw: Mapping[str, Any]) -> ProviderSettings:
    d = _section(raw, "provider")
    p = "provider"
    defaults = ProviderSettings()

    name = _str(d, "name", defaults.name, path=p)
    if name not in API_KEY_ENV_VARS:
        raise ConfigError(f"unknown provider {name!r}", path=f"{p}.name")

    cache_retention = _str(d, "cache_retention", defaults.cache_retention, path=p)
    if cache_retention not in CACHE_RETENTIONS:
        raise ConfigError(f"must be one of {', '.join(CACHE_RETENTIONS)}", path=f"{p}.cache_retention")

    api_key = d.get("api_key")
    if api_key is not None and not isinstance(api_key, str):
        raise ConfigError("must be a string", path=f"{p}.api_key")

    return ProviderSettings(
        name=name,
        model=_str(d, "model", defaults.model, path=p),
        max_tokens=_int(d, "max_tokens", defaults.max_tokens, path=p, minimum=1),
        temperature=_float(d, "temperature", defaults.temperature, path=p),
        thinking_budget=_int(d, "thinking_budget", None, path=p),
        reasoning=_str(d, "reasoning", None, path=p),
        cache_retention=cache_retention,
        api_key=SecretStr(api_key) if api_key else None,
        endpoint=_str(d, "endpoint", None, path=p),
        project_id=_str(d, "project_id", None, path=p),
        location=_str(d, "location", defaults.location, path=p),
        timeout_s=_float(d, "timeout_s", defaults.timeout_s, path=p),
    )


def _tools(raw: Mapping[str, Any]) -> ToolsSettings:
    d = _section(raw, "tools")
    p = "tools"

    auto_approve = d.get("auto_approve")
    if auto_approve is not None and not callable(auto_approve):
        if not isinstance(auto_approve, list) or not all(isinstance(x, str) for x in auto_approve):
            raise ConfigError("must be a list of strings", path=f"{p}.auto_approve")
        auto_approve = list(auto_approve)

    return ToolsSettings(
        auto_approve=auto_approve,
        require_approval=_bool(d, "require_approval", True, path=p),
        presets=_mapping_of_mappings(d, "presets", path=p),
        max_concurrency=_int(d, "max_concurrency", ToolsSettings.max_concurrency, path=p, minimum=1),
    )


def _sandbox(raw: Mapping[str, Any]) -> SandboxSettings:
    d = _section(raw, "sandbox")
    p = "sandbox"

    policy = SandboxSettings().policy
    policy_raw = d.get("policy")
    if policy_raw is not None:
        if not isinstance(policy_raw, Mapping):
            raise ConfigError("must be a mapping", path=f"{p}.policy")
        rw_paths = policy_raw.get("rw_paths", policy["rw_paths"])
        if not isinstance(rw_paths, list) or not all(isinstance(x, str) for x in rw_paths):
            raise ConfigError("must be a list of strings", path=f"{p}.policy.rw_paths")
        policy = {**policy, **dict(policy_raw), "rw_paths": list(rw_paths)}

    return SandboxSettings(
        enabled=_bool(d, "enabled", False, path=p),
        backend=_str(d, "backend", SandboxSettings.backend, path=p),
        auto_approve=_bool(d, "auto_approve", True, path=p),
        backends=_mapping_of_mappings(d, "backends", path=p),
        policy=policy,
    )


def _logging(raw: Mapping[str, Any]) -> LoggingSettings:
    d = _section(raw, "logging")
    level = _str(d, "level", LoggingSettings.level, path="logging").upper()
    return LoggingSettings(level=level, json=_bool(d, "json", True, path="logging"))


def load_settings(raw: Mapping[str, Any]) -> Settings:
    """Build typed settings from a merged config mapping.

    Raises:
        ConfigError: With the dotted key path of the first invalid value.
    """

    return Settings(
        provider=_provider(raw),
        tools=_tools(raw),
        sandbox=_sandbox(raw),
        logging=_logging(raw),
    )
