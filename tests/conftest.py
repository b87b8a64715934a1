"""Pytest configuration and fixtures for all tests."""

from __future__ import annotations

import stat
import sys
from pathlib import Path
from typing import Callable, Optional

import pytest

from switchyard.core.config import config_manager
from switchyard.core.model_switcher import PUBLISHED_ENV_VARS
from switchyard.core.runtime_override import get_state_manager


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point every test at a private config directory and home.

    Settings, profiles and credentials are written under ``tmp_path`` and the
    process-wide settings cache and runtime override are reset around each test.
    """
    config_dir = tmp_path / "config"
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("SWITCHYARD_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("HOME", str(home))
    for name in PUBLISHED_ENV_VARS:
        # setenv first so teardown also removes values a switch publishes.
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    config_manager.reset()
    get_state_manager().reset()

    yield config_dir

    config_manager.reset()
    get_state_manager().reset()


@pytest.fixture
def fake_cli(tmp_path) -> Callable[..., Path]:
    """Write an executable stand-in for the ``claude`` CLI.

    The body is Python source run by the current interpreter. It receives the
    command-line arguments in ``sys.argv`` and the prompt on stdin.
    """

    def _make(body: str, name: str = "claude", version: Optional[str] = "1.0.0 (Claude Code)") -> Path:
        path = tmp_path / "bin" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        preamble = "import json, os, signal, sys, time\n"
        if version is not None:
            preamble += (
                "if sys.argv[1:] == ['--version']:\n"
                f"    print({version!r})\n"
                "    sys.exit(0)\n"
            )
        path.write_text(f"#!{sys.executable}\n{preamble}{body}\n", encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make

