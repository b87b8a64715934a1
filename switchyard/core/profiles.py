"""Persisted model profiles: ``{"models": [...], "current": "<nickname>"}``."""

from __future__ import annotations

import re
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from switchyard.core.config import profiles_path
from switchyard.utils.json_io import exclusive_file_lock, read_json_file, write_json_atomic
from switchyard.utils.log import get_logger

logger = get_logger()

NICKNAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,8}$")


def _alias(primary: str, *legacy: str) -> Any:
    return Field(
        validation_alias=AliasChoices(primary, *legacy),
        serialization_alias=primary,
    )


class ModelProfile(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    nickname: str
    display_name: str = _alias("displayName")
    canonical_model_id: str = _alias("canonicalModelId", "model")
    provider_name: str = _alias("providerName", "provider")
    endpoint_override: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("endpointOverride", "baseUrl"),
        serialization_alias="endpointOverride",
    )
    last_used_timestamp: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("lastUsedTimestamp", "lastUsed"),
        serialization_alias="lastUsedTimestamp",
    )

    @field_validator("nickname")
    @classmethod
    def _check_nickname(cls, value: str) -> str:
        if not NICKNAME_RE.match(value):
            raise ValueError("nickname must be 1-8 letters, digits, '-' or '_'")
        return value

    def to_file_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ProfileDocument(BaseModel):
    models: List[ModelProfile] = Field(default_factory=list)
    current: Optional[str] = None

    def find(self, nickname: str) -> Optional[ModelProfile]:
        for profile in self.models:
            if profile.nickname == nickname:
                return profile
        return None

    def current_profile(self) -> Optional[ModelProfile]:
        return self.find(self.current) if self.current else None

    def replace(self, profile: ModelProfile) -> None:
        self.models = [profile if p.nickname == profile.nickname else p for p in self.models]

    def to_file_payload(self) -> dict:
        return {
            "models": [profile.to_file_payload() for profile in self.models],
            "current": self.current,
        }


def parse_document(payload: Any) -> ProfileDocument:
    """Build a document from file content, skipping entries that do not validate."""
    if not isinstance(payload, dict):
        if payload is not None:
            logger.warning("[profiles] Profile file is not a JSON object; ignoring it")
        return ProfileDocument()
    models: List[ModelProfile] = []
    seen: set[str] = set()
    for entry in payload.get("models") or []:
        try:
            profile = ModelProfile.model_validate(entry)
        except ValidationError as exc:
            logger.warning(
                "[profiles] Skipping invalid profile entry: %s",
                exc.errors()[0].get("msg") if exc.errors() else exc,
                extra={"entry": str(entry)[:200]},
            )
            continue
        if profile.nickname in seen:
            logger.warning("[profiles] Skipping duplicate nickname", extra={"nickname": profile.nickname})
            continue
        seen.add(profile.nickname)
        models.append(profile)

    current = payload.get("current")
    if not isinstance(current, str) or current not in seen:
        if current:
            logger.warning("[profiles] Current profile no longer exists", extra={"nickname": current})
        current = None
    return ProfileDocument(models=models, current=current)


class ProfileStore:
    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path or profiles_path()

    def load(self) -> ProfileDocument:
        """Read the profile file; a missing or corrupt file yields an empty document."""
        return parse_document(read_json_file(self.path))

    def save(self, document: ProfileDocument) -> None:
        write_json_atomic(self.path, document.to_file_payload())
        logger.debug(
            "[profiles] Saved profiles",
            extra={"path": str(self.path), "count": len(document.models), "current": document.current},
        )

    @contextmanager
    def locked(self) -> Iterator[ProfileDocument]:
        """Hold the writer lock and yield the current document for a read-modify-write."""
        with exclusive_file_lock(self.path):
            yield self.load()
