"""Test configuration management and the small shared utilities."""

import json
import logging
import os
import stat

import pytest
from pydantic import ValidationError

from switchyard.core.config import (
    ConfigManager,
    UserSettings,
    config_dir,
    credentials_dir,
    profiles_path,
    set_api_key,
)
from switchyard.utils.log import StructuredFormatter
from switchyard.utils.token_estimation import estimate_tokens, estimate_tokens_for_parts
from switchyard.utils.user_agent import build_user_agent


def test_paths_follow_config_dir_env(isolated_config):
    assert config_dir() == isolated_config
    assert profiles_path() == isolated_config / "model-profiles.json"
    assert credentials_dir() == isolated_config / "credentials"


def test_default_settings():
    settings = UserSettings()
    assert settings.api_keys == {}
    assert settings.request_timeout_sec == 120
    assert settings.cli_grace_period_sec == 5
    assert settings.interactive_login


def test_settings_validation():
    with pytest.raises(ValidationError):
        UserSettings(request_timeout_sec=0)
    with pytest.raises(ValidationError):
        UserSettings(token_refresh_margin_sec=-1)
    assert UserSettings(unknown_option=True).default_provider is None


def test_save_and_reload(isolated_config):
    manager = ConfigManager()
    manager.save_settings(UserSettings(default_provider="ollama", default_model="llama3"))

    path = isolated_config / "settings.json"
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    fresh = ConfigManager().get_settings()
    assert fresh.default_provider == "ollama"
    assert fresh.default_model == "llama3"


def test_corrupt_settings_fall_back_to_defaults(isolated_config):
    isolated_config.mkdir(parents=True, exist_ok=True)
    (isolated_config / "settings.json").write_text("{oops")
    assert ConfigManager().get_settings() == UserSettings()


def test_set_api_key_merges(isolated_config):
    set_api_key("openrouter", "k1")
    set_api_key("gemini", "k2")
    data = json.loads((isolated_config / "settings.json").read_text())
    assert data["api_keys"] == {"openrouter": "k1", "gemini": "k2"}


def test_token_estimation():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abc") == 1
    assert estimate_tokens("abcdefghi") == 3
    assert estimate_tokens("abcdefghi", chars_per_token=3) == 3
    assert estimate_tokens_for_parts(["abcd", "", "efgh"]) == 2


def test_user_agent(monkeypatch):
    monkeypatch.setenv("SWITCHYARD_CLIENT_SOURCE", "cli")
    assert build_user_agent().startswith("switchyard/")
    assert build_user_agent().endswith("(cli)")
    assert build_user_agent("library").endswith("(library)")


def test_structured_formatter_appends_extras():
    formatter = StructuredFormatter("%(asctime)s [%(levelname)s] %(message)s")
    record = logging.LogRecord("switchyard", logging.INFO, __file__, 1, "[factory] built", None, None)
    record.provider = "ollama"
    line = formatter.format(record)
    assert "[INFO] [factory] built" in line
    assert line.endswith('| {"provider": "ollama"}')
    assert "Z [INFO]" in line
