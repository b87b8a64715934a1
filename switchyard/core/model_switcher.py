"""User-facing model switching: list, current, add, remove, switch, init."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Dict, List, MutableMapping, Optional

from pydantic import ValidationError

from switchyard.core.credentials import CredentialManager
from switchyard.core.errors import ProviderNotFoundError
from switchyard.core.oauth import Credential, utc_now
from switchyard.core.profiles import ModelProfile, ProfileStore
from switchyard.core.provider_registry import ProtocolFamily, ProviderDescriptor
from switchyard.core.runtime_override import StatePreservationManager, get_state_manager
from switchyard.utils.log import get_logger

logger = get_logger()

OPENAI_MODEL_ENV = "OPENAI_MODEL"
OPENAI_BASE_URL_ENV = "OPENAI_BASE_URL"
OPENAI_API_KEY_ENV = "OPENAI_API_KEY"
PUBLISHED_ENV_VARS = (OPENAI_MODEL_ENV, OPENAI_BASE_URL_ENV, OPENAI_API_KEY_ENV)

_NICKNAME_HINTS = (
    ("qwen3-4b", "4bdev"),
    ("qwen3-30b", "30big"),
    ("gpt-4", "gpt4"),
    ("claude", "claude"),
    ("gemini", "gemini"),
)
_DISPLAY_HINTS = (
    ("qwen3-4b", "Local 4B Development"),
    ("qwen3-30b", "Local 30B Complex"),
    ("gpt-4", "GPT-4 OpenAI"),
    ("claude", "Anthropic Claude"),
)


@dataclass(frozen=True)
class SwitchResult:
    success: bool
    display_name: str
    provider_name: str
    nickname: str


@dataclass(frozen=True)
class AddResult:
    success: bool
    profile: Optional[ModelProfile] = None
    error: Optional[str] = None


def detect_provider(base_url: Optional[str]) -> str:
    """Guess the provider from an OpenAI-compatible endpoint URL."""
    url = (base_url or "").lower()
    if ":11434" in url:
        return "ollama"
    if ":1234" in url:
        return "lmstudio"
    if "openrouter.ai" in url:
        return "openrouter"
    if "qwen.ai" in url:
        return "qwen-direct"
    return "openai"


def generate_nickname(model_id: str, taken: Optional[set] = None) -> str:
    lowered = model_id.lower()
    base = next((nick for hint, nick in _NICKNAME_HINTS if hint in lowered), None)
    if base is None:
        base = re.sub(r"[^A-Za-z0-9]", "", model_id)[:5] or "model"
    taken = taken or set()
    candidate = base
    suffix = 2
    while candidate in taken:
        tail = str(suffix)
        candidate = base[: 8 - len(tail)] + tail
        suffix += 1
    return candidate


def generate_display_name(model_id: str) -> str:
    lowered = model_id.lower()
    for hint, name in _DISPLAY_HINTS:
        if hint in lowered:
            return name
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), re.sub(r"[-_]", " ", model_id))


class ModelSwitcher:
    def __init__(
        self,
        store: Optional[ProfileStore] = None,
        credentials: Optional[CredentialManager] = None,
        manager: Optional[StatePreservationManager] = None,
        *,
        environ: Optional[MutableMapping[str, str]] = None,
    ) -> None:
        self._store = store or ProfileStore()
        self._credentials = credentials or CredentialManager()
        self._manager = manager or get_state_manager()
        self._environ = environ if environ is not None else os.environ

    @property
    def registry(self):
        return self._credentials.resolver.registry

    def current(self) -> Optional[ModelProfile]:
        return self._store.load().current_profile()

    def add(
        self,
        nickname: str,
        model_id: str,
        provider_name: str,
        endpoint_override: Optional[str] = None,
        *,
        display_name: Optional[str] = None,
    ) -> AddResult:
        if provider_name not in self.registry:
            return AddResult(False, error=f"Unknown provider '{provider_name}'")
        try:
            profile = ModelProfile(
                nickname=nickname,
                display_name=display_name or generate_display_name(model_id),
                canonical_model_id=model_id,
                provider_name=provider_name,
                endpoint_override=endpoint_override or None,
            )
        except ValidationError as exc:
            return AddResult(False, error=exc.errors()[0]["msg"])

        with self._store.locked() as document:
            if document.find(nickname) is not None:
                return AddResult(False, error=f"Nickname '{nickname}' already exists")
            document.models.append(profile)
            self._store.save(document)
        logger.info("[switcher] Added profile", extra={"nickname": nickname, "provider": provider_name})
        return AddResult(True, profile=profile)

    def remove(self, nickname: str) -> bool:
        with self._store.locked() as document:
            if document.find(nickname) is None:
                return False
            document.models = [p for p in document.models if p.nickname != nickname]
            if document.current == nickname:
                document.current = None
            self._store.save(document)
        return True

    async def switch(self, nickname: str) -> SwitchResult:
        """Make ``nickname`` the active model.

        Provider, auth and credential are validated before anything changes.
        The environment, the runtime override and the profile file are then
        updated together; if saving fails the first two are rolled back.
        """
        profile = self._store.load().find(nickname)
        if profile is None:
            raise ProviderNotFoundError(nickname, kind="nickname")
        descriptor = self.registry.lookup(profile.provider_name)
        auth = self._credentials.resolver.resolve(descriptor.name)
        credential = await self._credentials.get_valid_credential(descriptor.name)

        previous_override = self._manager.current()
        previous_env = {name: self._environ.get(name) for name in PUBLISHED_ENV_VARS}
        try:
            with self._store.locked() as document:
                target = document.find(nickname)
                if target is None:
                    raise ProviderNotFoundError(nickname, kind="nickname")
                self._publish_environment(descriptor, target, credential)
                self._manager.set_override(
                    descriptor.name, target.canonical_model_id, target.endpoint_override
                )
                updated = target.model_copy(update={"last_used_timestamp": utc_now()})
                document.replace(updated)
                document.current = nickname
                self._store.save(document)
        except BaseException:
            self._restore_environment(previous_env)
            self._manager.restore_override(previous_override)
            raise

        logger.info(
            "[switcher] Switched model",
            extra={"nickname": nickname, "provider": descriptor.name, "auth": auth.method.value},
        )
        return SwitchResult(
            success=True,
            display_name=updated.display_name,
            provider_name=descriptor.name,
            nickname=nickname,
        )

    def _publish_environment(
        self, descriptor: ProviderDescriptor, profile: ModelProfile, credential: Credential
    ) -> None:
        if descriptor.protocol_family is not ProtocolFamily.OPENAI_COMPATIBLE:
            return
        self._environ[OPENAI_MODEL_ENV] = descriptor.resolve_model(profile.canonical_model_id)
        endpoint = profile.endpoint_override or descriptor.base_endpoint
        if endpoint:
            self._environ[OPENAI_BASE_URL_ENV] = endpoint
        if credential.access_token:
            self._environ[OPENAI_API_KEY_ENV] = credential.access_token

    def _restore_environment(self, snapshot: Dict[str, Optional[str]]) -> None:
        for name, value in snapshot.items():
            if value is None:
                self._environ.pop(name, None)
            else:
                self._environ[name] = value

    def init_from_environment(self) -> AddResult:
        """Create a profile for the model configured through ``OPENAI_MODEL``/``OPENAI_BASE_URL``."""
        model_id = (self._environ.get(OPENAI_MODEL_ENV) or "").strip()
        if not model_id:
            return AddResult(False, error=f"{OPENAI_MODEL_ENV} is not set")
        base_url = (self._environ.get(OPENAI_BASE_URL_ENV) or "").strip() or None
        provider_name = detect_provider(base_url)
        descriptor = self.registry.lookup(provider_name)

        document = self._store.load()
        for existing in document.models:
            if existing.canonical_model_id == model_id and existing.provider_name == provider_name:
                return AddResult(True, profile=existing)

        endpoint = base_url if base_url and base_url != descriptor.base_endpoint else None
        nickname = generate_nickname(model_id, {p.nickname for p in document.models})
        result = self.add(nickname, model_id, provider_name, endpoint)
        if result.success:
            with self._store.locked() as latest:
                if latest.current is None:
                    latest.current = nickname
                    self._store.save(latest)
        return result

    def list(self) -> List[ModelProfile]:
        return self._store.load().models
