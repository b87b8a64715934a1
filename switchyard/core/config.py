"""User settings for Switchyard.

Settings live in ``~/.switchyard/settings.json`` (or under ``$SWITCHYARD_CONFIG_DIR``)
next to the model-profile file and the per-provider credential files.
"""

import json
import os
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator

from switchyard.utils.json_io import write_json_atomic
from switchyard.utils.log import get_logger


logger = get_logger()

CONFIG_DIR_ENV = "SWITCHYARD_CONFIG_DIR"
SETTINGS_FILENAME = "settings.json"
PROFILES_FILENAME = "model-profiles.json"
CREDENTIALS_DIRNAME = "credentials"


def config_dir() -> Path:
    """Return the per-user configuration directory."""
    override = os.environ.get(CONFIG_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".switchyard"


def profiles_path() -> Path:
    return config_dir() / PROFILES_FILENAME


def credentials_dir() -> Path:
    return config_dir() / CREDENTIALS_DIRNAME


class UserSettings(BaseModel):
    """Settings stored in ``settings.json``."""

    model_config = {"extra": "ignore"}

    # Static keys by provider name; consulted after the provider's env variable.
    api_keys: Dict[str, str] = Field(default_factory=dict)
    # What the host configuration falls back to when it is rebuilt.
    default_provider: Optional[str] = None
    default_model: Optional[str] = None
    request_timeout_sec: float = 120.0
    cli_path: Optional[str] = None
    cli_grace_period_sec: float = 5.0
    token_refresh_margin_sec: float = 30.0
    device_flow_timeout_sec: float = 600.0
    interactive_login: bool = True

    @field_validator("request_timeout_sec", "cli_grace_period_sec", "device_flow_timeout_sec")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("token_refresh_margin_sec")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value


class ConfigManager:
    """Loads and saves :class:`UserSettings`."""

    def __init__(self) -> None:
        self._settings: Optional[UserSettings] = None
        self._settings_path: Optional[Path] = None

    @property
    def settings_path(self) -> Path:
        return config_dir() / SETTINGS_FILENAME

    def get_settings(self) -> UserSettings:
        """Load and return user settings, falling back to defaults on any read error."""
        path = self.settings_path
        if self._settings is not None and self._settings_path == path:
            return self._settings

        settings = UserSettings()
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                settings = UserSettings(**data)
                logger.debug(
                    "[config] Loaded settings",
                    extra={"path": str(path), "api_key_slots": sorted(settings.api_keys)},
                )
            except (
                json.JSONDecodeError,
                OSError,
                UnicodeDecodeError,
                ValueError,
                TypeError,
            ) as e:
                logger.warning(
                    "Error loading settings: %s: %s",
                    type(e).__name__,
                    e,
                    extra={"path": str(path)},
                )
        else:
            logger.debug("[config] Settings not found; using defaults", extra={"path": str(path)})

        self._settings = settings
        self._settings_path = path
        return settings

    def save_settings(self, settings: UserSettings) -> None:
        path = self.settings_path
        write_json_atomic(path, settings.model_dump(mode="json"), mode=0o600)
        self._settings = settings
        self._settings_path = path
        logger.debug("[config] Saved settings", extra={"path": str(path)})

    def reset(self) -> None:
        """Drop the cached settings so the next read hits the disk."""
        self._settings = None
        self._settings_path = None


# Global instance
config_manager = ConfigManager()


def get_user_settings() -> UserSettings:
    return config_manager.get_settings()


def save_user_settings(settings: UserSettings) -> None:
    config_manager.save_settings(settings)


def set_api_key(provider_name: str, api_key: str) -> UserSettings:
    """Store a static API key for ``provider_name`` in the settings file."""
    settings = get_user_settings()
    keys = dict(settings.api_keys)
    keys[provider_name] = api_key
    updated = settings.model_copy(update={"api_keys": keys})
    save_user_settings(updated)
    return updated
