"""Tests for the configuration loader."""

import json
from pathlib import Path

import pytest
from conftest import _make_config

from aihelm.config import load_config


def test_load_config_success(test_config_path: str) -> None:
    """Loading a valid config file returns a populated HelmConfig."""
    config = load_config(test_config_path)

    assert set(config.providers) == {"gemini", "openai", "anthropic"}
    assert config.providers["openai"].base_url == "https://api.openai.com/v1"
    assert config.providers["openai"].api_key_env == "TEST_OPENAI_KEY"
    assert config.demo.max_per_session == 5
    assert config.demo.max_per_origin == 10
    assert config.demo.daily_budget_usd == 2.0
    assert config.security.threshold == 8
    assert config.generation.max_quality_retries == 2


def test_defaults_fill_missing_sections(tmp_path: Path) -> None:
    """An empty object yields every default, including all providers."""
    path = tmp_path / "empty.json"
    path.write_text("{}")
    config = load_config(path)

    assert config.providers["gemini"].api_key_env == "DEMO_GEMINI_KEY"
    assert config.demo.enabled is True
    assert config.demo.window_seconds == 3600.0
    assert config.generation.allow_stub is False
    assert config.discovery.enabled is False
    assert config.auth.enabled is False
    assert config.router_file is None


def test_load_config_missing_file() -> None:
    """Loading from a nonexistent path raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        load_config("/tmp/nonexistent_aihelm_config.json")


def test_unknown_provider_rejected(tmp_path: Path) -> None:
    path = _make_config(tmp_path, {"providers": {"mistral": {"api_key_env": "X"}}})
    with pytest.raises(ValueError, match="Unknown provider"):
        load_config(path)


@pytest.mark.parametrize("threshold", [0, 11])
def test_threshold_out_of_range(tmp_path: Path, threshold: int) -> None:
    path = _make_config(tmp_path, {"security": {"threshold": threshold}})
    with pytest.raises(ValueError, match="threshold"):
        load_config(path)


def test_top_level_must_be_object(tmp_path: Path) -> None:
    path = tmp_path / "list.json"
    path.write_text(json.dumps(["not", "an", "object"]))
    with pytest.raises(ValueError):
        load_config(path)


def test_demo_keys_from_env(test_config_path: str, monkeypatch: pytest.MonkeyPatch) -> None:
    """Only providers whose environment variable is set contribute a key."""
    monkeypatch.setenv("TEST_GEMINI_KEY", "g-12345")
    config = load_config(test_config_path)

    assert config.providers["gemini"].api_key == "g-12345"
    assert config.providers["openai"].api_key is None
    assert config.demo_keys() == {"gemini": "g-12345"}
