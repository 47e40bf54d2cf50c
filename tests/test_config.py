from __future__ import annotations

from pathlib import Path

import pytest

from flemma.config import ProviderSettings, load_config, load_settings
from flemma.errors import ConfigError


def test_load_settings_defaults() -> None:
    settings = load_settings({})
    assert settings.provider.name == "anthropic"
    assert settings.provider.max_tokens == 4000
    assert settings.provider.cache_retention == "short"
    assert settings.tools.require_approval is True
    assert settings.tools.max_concurrency == 8
    assert settings.sandbox.enabled is False
    assert settings.sandbox.policy["rw_paths"] == ["$CWD"]
    assert settings.logging.level == "INFO"


def test_load_settings_reports_dotted_path() -> None:
    with pytest.raises(ConfigError) as ei:
        load_settings({"provider": {"max_tokens": "lots"}})
    assert ei.value.path == "provider.max_tokens"

    with pytest.raises(ConfigError) as ei:
        load_settings({"tools": {"auto_approve": "calculator"}})
    assert ei.value.path == "tools.auto_approve"

    with pytest.raises(ConfigError) as ei:
        load_settings({"provider": {"cache_retention": "forever"}})
    assert ei.value.path == "provider.cache_retention"


def test_load_settings_unknown_provider() -> None:
    with pytest.raises(ConfigError) as ei:
        load_settings({"provider": {"name": "mystery"}})
    assert ei.value.path == "provider.name"


def test_api_key_is_secret_and_falls_back_to_env(monkeypatch: pytest.MonkeyPatch) -> None:
    settings = load_settings({"provider": {"name": "openai", "api_key": "sk-explicit"}})
    assert "sk-explicit" not in repr(settings.provider)
    assert settings.provider.resolved_api_key() == "sk-explicit"

    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    assert ProviderSettings(name="openai").resolved_api_key() == "sk-env"

    monkeypatch.delenv("VERTEX_AI_ACCESS_TOKEN", raising=False)
    assert ProviderSettings(name="vertex").resolved_api_key() is None


def test_repo_configs_flemma_yaml_loadable(monkeypatch: pytest.MonkeyPatch) -> None:
    # Only syntax and expansion are checked; no real key is needed.
    monkeypatch.setenv("ANTHROPIC_API_KEY", "k_dummy")

    raw = load_config(Path(__file__).resolve().parents[1] / "configs" / "flemma.yaml", load_dotenv_file=False)
    settings = load_settings(raw)
    assert settings.provider.model
    assert settings.tools.auto_approve == ["$readonly", "calculator"]
    assert settings.tools.presets["$review"]["deny"] == ["bash"]
    assert settings.sandbox.policy["rw_paths"] == ["$CWD", "/tmp"]
