from __future__ import annotations

from pathlib import Path

import pytest

from flemma.config.loader import load_config, merge_mappings
from flemma.errors import ConfigError


def test_load_config_expands_env_vars(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "abc123")

    cfg_path = tmp_path / "flemma.yaml"
    cfg_path.write_text(
        """
provider:
  api_key: ${ANTHROPIC_API_KEY}
nested:
  arr:
    - hi-${ANTHROPIC_API_KEY}
""".lstrip(),
        encoding="utf-8",
    )

    cfg = load_config(cfg_path, load_dotenv_file=False)
    assert cfg["provider"]["api_key"] == "abc123"
    assert cfg["nested"]["arr"][0] == "hi-abc123"


def test_load_config_missing_env_var_is_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

    cfg_path = tmp_path / "flemma.yaml"
    cfg_path.write_text("provider:\n  api_key: ${ANTHROPIC_API_KEY}\n", encoding="utf-8")

    with pytest.raises(ConfigError) as ei:
        load_config(cfg_path, load_dotenv_file=False)

    msg = str(ei.value)
    assert "ANTHROPIC_API_KEY" in msg
    assert "missing" in msg
    assert "provider.api_key" in msg


def test_load_config_empty_env_var_is_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "")

    cfg_path = tmp_path / "flemma.yaml"
    cfg_path.write_text("provider:\n  api_key: ${ANTHROPIC_API_KEY}\n", encoding="utf-8")

    with pytest.raises(ConfigError) as ei:
        load_config(cfg_path, load_dotenv_file=False)

    assert "empty" in str(ei.value)


def test_load_config_merges_files_later_wins(tmp_path: Path) -> None:
    base = tmp_path / "base.yaml"
    base.write_text("provider:\n  name: anthropic\n  max_tokens: 100\ntools:\n  max_concurrency: 2\n", encoding="utf-8")
    local = tmp_path / "local.yaml"
    local.write_text("provider:\n  max_tokens: 200\n", encoding="utf-8")

    cfg = load_config([base, local], load_dotenv_file=False)
    assert cfg["provider"] == {"name": "anthropic", "max_tokens": 200}
    assert cfg["tools"]["max_concurrency"] == 2


def test_load_config_reads_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    # Registered with monkeypatch so the value loaded from .env is removed afterwards.
    monkeypatch.setenv("FLEMMA_TEST_TOKEN", "placeholder")
    monkeypatch.delenv("FLEMMA_TEST_TOKEN")
    env = tmp_path / ".env"
    env.write_text("FLEMMA_TEST_TOKEN=from-dotenv\n", encoding="utf-8")
    cfg_path = tmp_path / "flemma.yaml"
    cfg_path.write_text("provider:\n  api_key: ${FLEMMA_TEST_TOKEN}\n", encoding="utf-8")

    cfg = load_config(cfg_path, dotenv_path=env)
    assert cfg["provider"]["api_key"] == "from-dotenv"


def test_load_config_rejects_non_mapping(tmp_path: Path) -> None:
    cfg_path = tmp_path / "flemma.yaml"
    cfg_path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ConfigError) as ei:
        load_config(cfg_path, load_dotenv_file=False)
    assert ei.value.path == str(cfg_path)


def test_load_config_empty_file_is_empty_mapping(tmp_path: Path) -> None:
    cfg_path = tmp_path / "flemma.yaml"
    cfg_path.write_text("", encoding="utf-8")
    assert load_config(cfg_path, load_dotenv_file=False) == {}


def test_merge_mappings_replaces_lists() -> None:
    merged = merge_mappings({"a": {"x": [1, 2], "y": 1}}, {"a": {"x": [3]}})
    assert merged == {"a": {"x": [3], "y": 1}}
