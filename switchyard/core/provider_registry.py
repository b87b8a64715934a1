"""Static catalogue of backend descriptors."""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field

from switchyard.core.errors import ProviderNotFoundError
from switchyard.utils.log import get_logger

logger = get_logger()


class ProtocolFamily(str, Enum):
    """The closed set of wire families a backend can speak."""

    OPENAI_COMPATIBLE = "openai-compatible"
    NATIVE_OAUTH = "native-oauth"
    SUBPROCESS_CLI = "subprocess-cli"

    @classmethod
    def _missing_(cls, value: object) -> Optional["ProtocolFamily"]:
        if isinstance(value, str):
            normalized = value.strip().lower().replace("_", "-")
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class AuthScheme(str, Enum):
    NONE = "none"
    STATIC_KEY = "static-key"
    OAUTH_DEVICE_FLOW = "oauth-device-flow"


class OAuthEndpoints(BaseModel):
    """Public-client device flow endpoints for an OAuth-backed provider."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    device_authorization_url: str
    token_url: str
    scope: str = ""


class RateLimitHints(BaseModel):
    """Informational only; nothing enforces these."""

    model_config = ConfigDict(frozen=True)

    weekly_limit: Optional[int] = None
    rolling_limit: Optional[int] = None
    window_hours: Optional[int] = None


class ProviderDescriptor(BaseModel):
    """Immutable catalogue entry for one backend."""

    model_config = ConfigDict(frozen=True)

    name: str
    protocol_family: ProtocolFamily
    auth_scheme: AuthScheme
    base_endpoint: Optional[str] = None
    model_alias_table: Dict[str, str] = Field(default_factory=dict)
    rate_limit_hints: Optional[RateLimitHints] = None
    display_name: str = ""
    api_key_env: Tuple[str, ...] = ()
    oauth: Optional[OAuthEndpoints] = None
    health_check_path: Optional[str] = None

    def resolve_model(self, model_id: str) -> str:
        """Map a public model name to this backend's identifier; unknown names pass through."""
        return self.model_alias_table.get(model_id, model_id)

    @property
    def label(self) -> str:
        return self.display_name or self.name


DEFAULT_PROVIDERS: Tuple[ProviderDescriptor, ...] = (
    ProviderDescriptor(
        name="openrouter",
        display_name="OpenRouter",
        protocol_family=ProtocolFamily.OPENAI_COMPATIBLE,
        auth_scheme=AuthScheme.STATIC_KEY,
        base_endpoint="https://openrouter.ai/api/v1",
        api_key_env=("OPENROUTER_API_KEY",),
    ),
    ProviderDescriptor(
        name="openai",
        display_name="OpenAI",
        protocol_family=ProtocolFamily.OPENAI_COMPATIBLE,
        auth_scheme=AuthScheme.STATIC_KEY,
        base_endpoint="https://api.openai.com/v1",
        api_key_env=("OPENAI_API_KEY",),
    ),
    ProviderDescriptor(
        name="gemini",
        display_name="Google Gemini",
        protocol_family=ProtocolFamily.OPENAI_COMPATIBLE,
        auth_scheme=AuthScheme.STATIC_KEY,
        base_endpoint="https://generativelanguage.googleapis.com/v1beta/openai",
        api_key_env=("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    ),
    ProviderDescriptor(
        name="qwen-direct",
        display_name="Qwen (API key)",
        protocol_family=ProtocolFamily.OPENAI_COMPATIBLE,
        auth_scheme=AuthScheme.STATIC_KEY,
        base_endpoint="https://qwen.ai/api/v1",
        api_key_env=("QWEN_API_KEY",),
    ),
    ProviderDescriptor(
        name="ollama",
        display_name="Ollama (local)",
        protocol_family=ProtocolFamily.OPENAI_COMPATIBLE,
        auth_scheme=AuthScheme.NONE,
        base_endpoint="http://localhost:11434/v1",
        health_check_path="/api/tags",
    ),
    ProviderDescriptor(
        name="lmstudio",
        display_name="LM Studio (local)",
        protocol_family=ProtocolFamily.OPENAI_COMPATIBLE,
        auth_scheme=AuthScheme.NONE,
        base_endpoint="http://localhost:1234/v1",
        health_check_path="/models",
    ),
    ProviderDescriptor(
        name="qwen-oauth",
        display_name="Qwen (OAuth)",
        protocol_family=ProtocolFamily.OPENAI_COMPATIBLE,
        auth_scheme=AuthScheme.OAUTH_DEVICE_FLOW,
        base_endpoint="https://portal.qwen.ai/v1",
        oauth=OAuthEndpoints(
            client_id="f0304373b74a44d2b584a3fb70ca9e56",
            device_authorization_url="https://chat.qwen.ai/api/v1/oauth2/device/code",
            token_url="https://chat.qwen.ai/api/v1/oauth2/token",
            scope="openid profile email model.completion",
        ),
    ),
    ProviderDescriptor(
        name="claude-code-max",
        display_name="Claude (Max subscription)",
        protocol_family=ProtocolFamily.NATIVE_OAUTH,
        auth_scheme=AuthScheme.OAUTH_DEVICE_FLOW,
        base_endpoint="https://api.anthropic.com",
        model_alias_table={
            "claude-sonnet-4": "claude-sonnet-4-20250514",
            "claude-opus": "claude-3-opus-20240229",
            "claude-haiku": "claude-3-haiku-20240307",
        },
        rate_limit_hints=RateLimitHints(weekly_limit=240, rolling_limit=50, window_hours=5),
        oauth=OAuthEndpoints(
            client_id="9d1c250a-e61b-44d9-88ed-5944d1962f5e",
            device_authorization_url="https://console.anthropic.com/v1/oauth/device/code",
            token_url="https://console.anthropic.com/v1/oauth/token",
            scope="user:inference",
        ),
    ),
    ProviderDescriptor(
        name="claude-cli",
        display_name="Claude Code CLI",
        protocol_family=ProtocolFamily.SUBPROCESS_CLI,
        auth_scheme=AuthScheme.NONE,
        model_alias_table={
            "claude-sonnet-4-20250514": "sonnet",
            "claude-opus-4-1-20250805": "opus",
            "claude-3-5-sonnet-20241022": "sonnet",
            "claude-3-opus-20240229": "opus",
        },
    ),
)


class ProviderRegistry:
    """Read-only lookup over a fixed set of descriptors."""

    def __init__(self, descriptors: Iterable[ProviderDescriptor] = DEFAULT_PROVIDERS) -> None:
        table: Dict[str, ProviderDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in table:
                raise ValueError(f"Duplicate provider name: {descriptor.name}")
            table[descriptor.name] = descriptor
        self._table: Mapping[str, ProviderDescriptor] = MappingProxyType(table)

    def lookup(self, name: str) -> ProviderDescriptor:
        descriptor = self._table.get(name)
        if descriptor is None:
            logger.debug("[registry] Unknown provider", extra={"provider": name})
            raise ProviderNotFoundError(name)
        return descriptor

    def __contains__(self, name: object) -> bool:
        return name in self._table

    def __iter__(self) -> Iterator[ProviderDescriptor]:
        return iter(self._table.values())

    def names(self) -> Tuple[str, ...]:
        return tuple(self._table)

    async def check_health(self, name: str, *, timeout: float = 3.0) -> bool:
        """Probe a local server's health endpoint; providers without one report healthy."""
        descriptor = self.lookup(name)
        if not descriptor.health_check_path or not descriptor.base_endpoint:
            return True
        base = descriptor.base_endpoint.rstrip("/")
        if descriptor.health_check_path.startswith("/api/") and base.endswith("/v1"):
            base = base[: -len("/v1")]
        url = f"{base}{descriptor.health_check_path}"
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            logger.debug(
                "[registry] Health check failed: %s: %s",
                type(exc).__name__,
                exc,
                extra={"provider": name, "url": url},
            )
            return False
        return response.is_success


_default_registry: Optional[ProviderRegistry] = None


def get_default_registry() -> ProviderRegistry:
    global _default_registry
    if _default_registry is None:
        _default_registry = ProviderRegistry()
    return _default_registry
