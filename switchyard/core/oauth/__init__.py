"""OAuth credential model and per-provider credential storage."""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from switchyard.core.config import credentials_dir
from switchyard.utils.json_io import exclusive_file_lock, read_json_file, write_json_atomic
from switchyard.utils.log import get_logger

logger = get_logger()

CLAUDE_CLI_CREDENTIALS_PATH = Path(".claude") / ".credentials.json"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Credential(BaseModel):
    """An access token plus what is needed to renew it.

    Instances are immutable; a refresh produces a new credential.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    access_token: str = Field(alias="accessToken")
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")
    expiry_instant: Optional[datetime] = Field(default=None, alias="expiryInstant")

    def expires_within(self, margin_sec: float, *, now: Optional[datetime] = None) -> bool:
        """True if the token is expired or will expire within ``margin_sec``."""
        if self.expiry_instant is None:
            return False
        current = now or utc_now()
        expiry = self.expiry_instant
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return expiry <= current + timedelta(seconds=margin_sec)

    @classmethod
    def from_token_payload(
        cls,
        payload: dict,
        *,
        previous_refresh_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Credential":
        """Build a credential from an OAuth token endpoint response."""
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("OAuth response missing access_token.")
        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token:
            refresh_token = previous_refresh_token
        expires_in = payload.get("expires_in")
        ttl = int(expires_in) if isinstance(expires_in, (int, float)) and expires_in > 0 else 3600
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expiry_instant=(now or utc_now()) + timedelta(seconds=ttl),
        )

    def to_file_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class CredentialStore:
    """One JSON file per provider under the credentials directory, readable only by its owner."""

    def __init__(self, directory: Optional[Path] = None) -> None:
        self._directory = directory

    @property
    def directory(self) -> Path:
        return self._directory or credentials_dir()

    def path_for(self, provider_name: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in provider_name)
        return self.directory / f"{safe}.json"

    def load(self, provider_name: str) -> Optional[Credential]:
        path = self.path_for(provider_name)
        payload = read_json_file(path)
        if payload is None:
            return None
        try:
            return Credential.model_validate(payload)
        except ValueError as exc:
            logger.warning(
                "[oauth] Ignoring unreadable credential file: %s: %s",
                type(exc).__name__,
                exc,
                extra={"provider": provider_name, "path": str(path)},
            )
            return None

    def save(self, provider_name: str, credential: Credential) -> None:
        path = self.path_for(provider_name)
        with exclusive_file_lock(path):
            write_json_atomic(path, credential.to_file_payload(), mode=0o600)
        logger.debug(
            "[oauth] Stored credential",
            extra={
                "provider": provider_name,
                "expires": credential.expiry_instant.isoformat() if credential.expiry_instant else None,
            },
        )

    def delete(self, provider_name: str) -> bool:
        path = self.path_for(provider_name)
        with exclusive_file_lock(path):
            try:
                os.unlink(path)
            except FileNotFoundError:
                return False
        logger.debug("[oauth] Deleted credential", extra={"provider": provider_name})
        return True


def load_claude_cli_credential(home: Optional[Path] = None) -> Optional[Credential]:
    """Read the OAuth session the Claude CLI keeps in ``~/.claude/.credentials.json``."""
    path = (home or Path.home()) / CLAUDE_CLI_CREDENTIALS_PATH
    payload = read_json_file(path)
    if not isinstance(payload, dict):
        return None
    oauth = payload.get("claudeAiOauth")
    if not isinstance(oauth, dict) or not isinstance(oauth.get("accessToken"), str):
        return None
    expires_at = oauth.get("expiresAt")
    expiry = (
        datetime.fromtimestamp(expires_at / 1000, tz=timezone.utc)
        if isinstance(expires_at, (int, float))
        else None
    )
    return Credential(
        access_token=oauth["accessToken"],
        refresh_token=oauth.get("refreshToken"),
        expiry_instant=expiry,
    )


__all__ = [
    "Credential",
    "CredentialStore",
    "load_claude_cli_credential",
    "utc_now",
]
