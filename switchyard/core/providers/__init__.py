"""Backend clients and the factory that wires them to converters and credentials."""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from switchyard.core.auth_resolver import AuthResolver, ResolvedAuth
from switchyard.core.config import UserSettings, get_user_settings
from switchyard.core.converters import converter_for
from switchyard.core.credentials import CredentialManager
from switchyard.core.oauth import Credential
from switchyard.core.provider_registry import (
    ProtocolFamily,
    ProviderDescriptor,
    ProviderRegistry,
    get_default_registry,
)
from switchyard.core.providers.anthropic import NativeOAuthClient
from switchyard.core.providers.base import BackendClient
from switchyard.core.providers.openai import OpenAICompatibleClient
from switchyard.core.providers.subprocess_cli import SubprocessCLIClient
from switchyard.utils.log import get_logger

logger = get_logger()

_CacheKey = Tuple[str, str, Optional[str]]


def create_backend_client(
    descriptor: ProviderDescriptor,
    auth: ResolvedAuth,
    credential: Credential,
    model_id: str,
    *,
    settings: UserSettings,
    endpoint_override: Optional[str] = None,
    options: Optional[Mapping[str, Any]] = None,
) -> BackendClient:
    """Instantiate the client for ``descriptor``'s protocol family."""
    converter = converter_for(descriptor.protocol_family, descriptor.name)
    wire_model = descriptor.resolve_model(model_id)
    extra = dict(options or {})
    family = descriptor.protocol_family

    if family is ProtocolFamily.OPENAI_COMPATIBLE:
        return OpenAICompatibleClient(
            descriptor,
            wire_model,
            converter,
            credential,
            base_url=endpoint_override,
            request_timeout_sec=settings.request_timeout_sec,
            **extra,
        )
    if family is ProtocolFamily.NATIVE_OAUTH:
        return NativeOAuthClient(
            descriptor,
            wire_model,
            converter,
            credential,
            base_url=endpoint_override,
            request_timeout_sec=settings.request_timeout_sec,
            **extra,
        )
    if family is ProtocolFamily.SUBPROCESS_CLI:
        return SubprocessCLIClient(
            descriptor,
            wire_model,
            converter,
            cli_path=extra.pop("cli_path", settings.cli_path),
            request_timeout_sec=settings.request_timeout_sec,
            grace_period_sec=settings.cli_grace_period_sec,
            **extra,
        )
    raise ValueError(f"Unsupported protocol family: {family!r} (auth {auth.method.value})")


class GeneratorFactory:
    """Builds backend clients, caching one per (provider, model, endpoint).

    A cached client is reused only while the credential it was built with is
    still the current one.
    """

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        resolver: Optional[AuthResolver] = None,
        credentials: Optional[CredentialManager] = None,
        *,
        settings_provider: Callable[[], UserSettings] = get_user_settings,
        client_options: Optional[Mapping[ProtocolFamily, Mapping[str, Any]]] = None,
    ) -> None:
        self.registry = registry or (resolver.registry if resolver else get_default_registry())
        self.resolver = resolver or AuthResolver(self.registry)
        self.credentials = credentials or CredentialManager(self.resolver)
        self._settings_provider = settings_provider
        self._client_options = dict(client_options or {})
        self._cache: Dict[_CacheKey, Tuple[str, BackendClient]] = {}

    async def build(
        self,
        provider_name: str,
        model_id: str,
        *,
        endpoint_override: Optional[str] = None,
    ) -> BackendClient:
        descriptor = self.registry.lookup(provider_name)
        auth = self.resolver.resolve(provider_name)
        credential = await self.credentials.get_valid_credential(provider_name)

        key: _CacheKey = (provider_name, model_id, endpoint_override)
        cached = self._cache.get(key)
        if cached is not None and cached[0] == credential.access_token:
            return cached[1]

        client = create_backend_client(
            descriptor,
            auth,
            credential,
            model_id,
            settings=self._settings_provider(),
            endpoint_override=endpoint_override,
            options=self._client_options.get(descriptor.protocol_family),
        )
        self._cache[key] = (credential.access_token, client)
        logger.debug(
            "[factory] Built backend client",
            extra={
                "provider": provider_name,
                "model": client.model_id,
                "family": descriptor.protocol_family.value,
                "auth": auth.method.value,
            },
        )
        return client

    def evict(self, provider_name: str, model_id: Optional[str] = None) -> None:
        for key in [k for k in self._cache if k[0] == provider_name and (model_id is None or k[1] == model_id)]:
            del self._cache[key]

    def clear(self) -> None:
        self._cache.clear()


__all__ = [
    "BackendClient",
    "GeneratorFactory",
    "NativeOAuthClient",
    "OpenAICompatibleClient",
    "SubprocessCLIClient",
    "create_backend_client",
]
