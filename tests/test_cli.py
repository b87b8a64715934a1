"""Tests for the ``switchyard`` command-line interface."""

from __future__ import annotations

import json
import os

import pytest
from click.testing import CliRunner
from rich.console import Console

from switchyard.cli.cli import cli
from switchyard.core.config import UserSettings, config_manager, get_user_settings, save_user_settings
from switchyard.core.oauth import Credential, CredentialStore


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Render tables without truncation regardless of the runner's terminal."""
    monkeypatch.setattr("switchyard.cli.cli.console", Console(width=200))


def _invoke(*args: str, **kwargs):
    return CliRunner().invoke(cli, list(args), catch_exceptions=False, **kwargs)


def test_models_add_list_current_remove() -> None:
    assert _invoke("models", "list").output.startswith("No model profiles")

    result = _invoke("models", "add", "local", "llama3", "ollama", "--display-name", "Llama")
    assert result.exit_code == 0
    assert "Added local" in result.output

    listing = _invoke("models", "list")
    assert "local" in listing.output
    assert "llama3" in listing.output

    assert "No current model" in _invoke("models", "current").output

    removed = _invoke("models", "remove", "local")
    assert removed.exit_code == 0
    assert _invoke("models", "remove", "local").exit_code == 1


def test_models_add_rejects_unknown_provider() -> None:
    result = _invoke("models", "add", "x", "m", "nowhere")
    assert result.exit_code == 1
    assert "Unknown provider" in result.output


def test_models_switch_publishes_environment() -> None:
    _invoke("models", "add", "local", "llama3", "ollama")
    result = _invoke("models", "switch", "local")

    assert result.exit_code == 0, result.output
    assert "Switched to" in result.output
    assert os.environ["OPENAI_MODEL"] == "llama3"
    assert os.environ["OPENAI_BASE_URL"] == "http://localhost:11434/v1"
    assert "local" in _invoke("models", "current").output


def test_models_switch_unknown_nickname() -> None:
    result = _invoke("models", "switch", "ghost")
    assert result.exit_code == 1
    assert "Unknown nickname 'ghost'" in result.output


def test_models_init_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_MODEL", "qwen3-4b")
    monkeypatch.setenv("OPENAI_BASE_URL", "http://localhost:1234/v1")
    result = _invoke("models", "init")
    assert result.exit_code == 0, result.output
    assert "4bdev" in result.output


def test_set_key_stores_key(isolated_config) -> None:
    result = _invoke("set-key", "openrouter", input="sk-test\n")
    assert result.exit_code == 0, result.output

    settings = json.loads((isolated_config / "settings.json").read_text())
    assert settings["api_keys"] == {"openrouter": "sk-test"}
    config_manager.reset()
    assert get_user_settings().api_keys["openrouter"] == "sk-test"


def test_logout_removes_stored_credential() -> None:
    CredentialStore().save("qwen-oauth", Credential(access_token="t", refresh_token="r"))
    assert "Signed out" in _invoke("logout", "qwen-oauth").output
    assert "No stored credential" in _invoke("logout", "qwen-oauth").output


def test_providers_lists_catalogue() -> None:
    result = _invoke("providers")
    assert result.exit_code == 0
    assert "claude-cli" in result.output
    assert "subprocess-cli" in result.output


def test_ask_through_cli_backend(fake_cli) -> None:
    body = (
        "prompt = sys.stdin.read()\n"
        'answer = "4" if "2+2" in prompt else "?"\n'
        'print(json.dumps({"type": "result", "is_error": False, "result": answer,'
        ' "usage": {"input_tokens": 9, "output_tokens": 1}}))'
    )
    save_user_settings(UserSettings(cli_path=str(fake_cli(body))))
    _invoke("models", "add", "cc", "claude-sonnet-4-20250514", "claude-cli")

    result = _invoke("ask", "--model", "cc", "--usage", "what is 2+2")

    assert result.exit_code == 0, result.output
    assert result.output.splitlines()[0] == "4"
    assert "tokens: 9 in / 1 out" in result.output


def test_ask_rejects_invalid_max_tokens() -> None:
    CredentialStore().save("claude-code-max", Credential(access_token="t", refresh_token="r"))
    _invoke("models", "add", "max", "claude-sonnet-4", "claude-code-max")

    result = _invoke("ask", "--model", "max", "--max-tokens", "-1", "hello")

    assert result.exit_code == 1
    assert "Invalid request: max_tokens must be a positive integer" in result.output


def test_ask_without_selection_fails() -> None:
    result = _invoke("ask", "hello")
    assert result.exit_code == 1
    assert "Unknown model" in result.output
