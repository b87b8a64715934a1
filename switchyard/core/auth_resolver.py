"""Map a provider to the concrete authentication method it needs.

Resolution is keyed by provider name first and auth scheme second. Two
providers may share the ``oauth-device-flow`` scheme while needing entirely
different flows, so the scheme alone never decides the method.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Union

from switchyard.core.errors import ProviderNotFoundError
from switchyard.core.provider_registry import (
    AuthScheme,
    ProtocolFamily,
    ProviderDescriptor,
    ProviderRegistry,
    get_default_registry,
)
from switchyard.utils.log import get_logger

logger = get_logger()


class AuthMethod(str, Enum):
    NONE = "none"
    API_KEY = "api-key"
    ANTHROPIC_OAUTH = "anthropic-oauth"
    QWEN_OAUTH = "qwen-oauth"
    # Device flow for an OAuth provider without a dedicated method.
    OAUTH_DEVICE_FLOW = "oauth-device-flow"
    # The external CLI owns its own login session.
    CLI_SESSION = "cli-session"

    @property
    def is_oauth(self) -> bool:
        return self in (AuthMethod.ANTHROPIC_OAUTH, AuthMethod.QWEN_OAUTH, AuthMethod.OAUTH_DEVICE_FLOW)


# Provider-specific OAuth methods for the known cloud providers.
PROVIDER_OAUTH_METHODS: Mapping[str, AuthMethod] = {
    "claude-code-max": AuthMethod.ANTHROPIC_OAUTH,
    "qwen-oauth": AuthMethod.QWEN_OAUTH,
}

_SCHEME_METHODS: Mapping[AuthScheme, AuthMethod] = {
    AuthScheme.NONE: AuthMethod.NONE,
    AuthScheme.STATIC_KEY: AuthMethod.API_KEY,
    AuthScheme.OAUTH_DEVICE_FLOW: AuthMethod.OAUTH_DEVICE_FLOW,
}


def _parse_hint(value: Union[AuthMethod, str, None]) -> Optional[AuthMethod]:
    if value is None or isinstance(value, AuthMethod):
        return value
    try:
        return AuthMethod(value)
    except ValueError:
        logger.info("[auth] Ignoring unrecognized auth hint", extra={"hint": value})
        return None


@dataclass(frozen=True)
class ResolvedAuth:
    method: AuthMethod
    provider_name: Optional[str]
    scheme: Optional[AuthScheme] = None


class AuthResolver:
    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        provider_methods: Optional[Mapping[str, AuthMethod]] = None,
    ) -> None:
        self._registry = registry or get_default_registry()
        self._provider_methods = dict(PROVIDER_OAUTH_METHODS)
        if provider_methods:
            self._provider_methods.update(provider_methods)

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def method_for(self, descriptor: ProviderDescriptor) -> AuthMethod:
        if descriptor.protocol_family is ProtocolFamily.SUBPROCESS_CLI:
            return AuthMethod.CLI_SESSION
        if descriptor.auth_scheme is AuthScheme.OAUTH_DEVICE_FLOW:
            specific = self._provider_methods.get(descriptor.name)
            if specific is not None:
                return specific
        return _SCHEME_METHODS[descriptor.auth_scheme]

    def resolve(
        self,
        provider_name: Optional[str],
        fallback_hint: Union[AuthMethod, str, None] = None,
    ) -> ResolvedAuth:
        """Resolve the auth method for ``provider_name``.

        ``fallback_hint`` is whatever auth value the caller had cached. It is
        only used when no provider is named at all; otherwise the freshly
        resolved method always wins.
        """
        hint = _parse_hint(fallback_hint)
        if not provider_name:
            if hint is None:
                raise ProviderNotFoundError("<unset>")
            logger.debug("[auth] No provider given; using fallback hint", extra={"method": hint.value})
            return ResolvedAuth(method=hint, provider_name=None)

        descriptor = self._registry.lookup(provider_name)
        method = self.method_for(descriptor)
        if hint is not None and hint is not method:
            logger.info(
                "[auth] Ignoring stale auth hint",
                extra={"provider": provider_name, "hint": hint.value, "resolved": method.value},
            )
        logger.debug(
            "[auth] Resolved auth method",
            extra={"provider": provider_name, "method": method.value},
        )
        return ResolvedAuth(method=method, provider_name=descriptor.name, scheme=descriptor.auth_scheme)
