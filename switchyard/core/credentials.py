"""Credential/token management.

``CredentialManager`` hands out a valid :class:`Credential` per provider. Static
keys are echoed from the environment or settings; OAuth providers go through
the device flow once, are refreshed shortly before expiry, and never run
more than one refresh at a time.
"""

from __future__ import annotations

import asyncio
import os
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Mapping, Optional

import httpx

from switchyard.core.auth_resolver import AuthMethod, AuthResolver
from switchyard.core.config import UserSettings, get_user_settings
from switchyard.core.error_mapping import map_httpx_error
from switchyard.core.errors import AuthExpiredError, MissingCredentialError, WireProtocolError
from switchyard.core.oauth import Credential, CredentialStore, load_claude_cli_credential
from switchyard.core.oauth.device_flow import (
    DeviceFlowDenied,
    Notify,
    OAuthError,
    OAuthRefreshRejected,
    OAuthResponseError,
    login_with_device_code,
    refresh_access_token,
)
from switchyard.core.provider_registry import OAuthEndpoints, ProviderDescriptor
from switchyard.utils.log import get_logger

logger = get_logger()

Refresher = Callable[[OAuthEndpoints, Credential], Awaitable[Credential]]
DeviceLogin = Callable[..., Awaitable[Credential]]

NO_CREDENTIAL = Credential(access_token="")


class CredentialStrategy(ABC):
    """One provider's way of producing credentials."""

    @abstractmethod
    async def get_valid_credential(self) -> Credential:
        """Return a credential that is usable right now."""

    def invalidate(self) -> None:
        """Forget the current credential so the next call obtains a new one."""


class NoCredentialStrategy(CredentialStrategy):
    async def get_valid_credential(self) -> Credential:
        return NO_CREDENTIAL


class StaticKeyStrategy(CredentialStrategy):
    """Reads a key from the provider's env variables, then from the settings file."""

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        *,
        settings_provider: Callable[[], UserSettings] = get_user_settings,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._descriptor = descriptor
        self._settings_provider = settings_provider
        self._environ = environ

    def _lookup(self) -> Optional[str]:
        env = self._environ if self._environ is not None else os.environ
        for name in self._descriptor.api_key_env:
            value = (env.get(name) or "").strip()
            if value:
                return value
        value = (self._settings_provider().api_keys.get(self._descriptor.name) or "").strip()
        return value or None

    async def get_valid_credential(self) -> Credential:
        key = self._lookup()
        if key is None:
            slots = ", ".join(self._descriptor.api_key_env) or "an API key"
            raise MissingCredentialError(
                self._descriptor.name,
                f"set {slots} or run `switchyard set-key {self._descriptor.name}`",
            )
        return Credential(access_token=key)


class OAuthDeviceFlowStrategy(CredentialStrategy):
    """Device-flow OAuth with persisted, auto-refreshed tokens."""

    def __init__(
        self,
        provider_name: str,
        endpoints: OAuthEndpoints,
        store: CredentialStore,
        *,
        refresh_margin_sec: float = 30.0,
        interactive: bool = True,
        notify: Optional[Notify] = None,
        device_flow_timeout_sec: float = 600.0,
        refresher: Refresher = refresh_access_token,
        device_login: DeviceLogin = login_with_device_code,
        seed: Optional[Callable[[], Optional[Credential]]] = None,
    ) -> None:
        self.provider_name = provider_name
        self._endpoints = endpoints
        self._store = store
        self._refresh_margin_sec = refresh_margin_sec
        self._interactive = interactive
        self._notify = notify
        self._device_flow_timeout_sec = device_flow_timeout_sec
        self._refresher = refresher
        self._device_login = device_login
        self._seed = seed
        self._credential: Optional[Credential] = None
        self._force_refresh = False
        self._inflight: Optional[asyncio.Task[Credential]] = None

    def _current(self) -> Optional[Credential]:
        if self._credential is None:
            self._credential = self._store.load(self.provider_name)
            if self._credential is None and self._seed is not None:
                self._credential = self._seed()
                if self._credential is not None:
                    logger.debug("[credentials] Imported existing session", extra={"provider": self.provider_name})
        return self._credential

    async def get_valid_credential(self) -> Credential:
        credential = self._current()
        if (
            credential is not None
            and not self._force_refresh
            and not credential.expires_within(self._refresh_margin_sec)
        ):
            return credential
        return await self._shared(self._refresh)

    async def login(self) -> Credential:
        """Run the device flow now, replacing any stored credential."""
        return await self._shared(self._run_device_flow)

    def invalidate(self) -> None:
        self._force_refresh = True

    def forget(self) -> bool:
        self._credential = None
        self._force_refresh = False
        return self._store.delete(self.provider_name)

    async def _shared(self, operation: Callable[[], Awaitable[Credential]]) -> Credential:
        # Concurrent callers await the same task instead of starting their own exchange.
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.get_running_loop().create_task(operation())
        return await asyncio.shield(self._inflight)

    def _accept(self, credential: Credential) -> Credential:
        self._store.save(self.provider_name, credential)
        self._credential = credential
        self._force_refresh = False
        return credential

    async def _refresh(self) -> Credential:
        current = self._current()
        if current is not None and current.refresh_token:
            logger.debug("[credentials] Refreshing access token", extra={"provider": self.provider_name})
            try:
                fresh = await self._refresher(self._endpoints, current)
            except OAuthRefreshRejected as exc:
                logger.warning(
                    "[credentials] Refresh token rejected; discarding stored credential: %s",
                    exc,
                    extra={"provider": self.provider_name},
                )
                self._store.delete(self.provider_name)
                self._credential = None
            except httpx.HTTPError as exc:
                raise map_httpx_error(exc, self.provider_name) from exc
            except OAuthResponseError as exc:
                raise WireProtocolError(self.provider_name, str(exc), raw_payload=exc.raw_payload) from exc
            except OAuthError as exc:
                raise AuthExpiredError(self.provider_name, str(exc)) from exc
            else:
                return self._accept(fresh)

        if not self._interactive:
            remedy = f"run `switchyard login {self.provider_name}`"
            if current is None:
                raise MissingCredentialError(self.provider_name, f"not signed in; {remedy}")
            raise AuthExpiredError(self.provider_name, f"session can no longer be refreshed; {remedy}")
        return await self._run_device_flow()

    async def _run_device_flow(self) -> Credential:
        logger.info("[credentials] Starting device authorization", extra={"provider": self.provider_name})
        try:
            fresh = await self._device_login(
                self._endpoints,
                timeout_sec=self._device_flow_timeout_sec,
                notify=self._notify,
            )
        except DeviceFlowDenied as exc:
            raise MissingCredentialError(self.provider_name, str(exc)) from exc
        except httpx.HTTPError as exc:
            raise map_httpx_error(exc, self.provider_name) from exc
        except OAuthResponseError as exc:
            raise WireProtocolError(self.provider_name, str(exc), raw_payload=exc.raw_payload) from exc
        except OAuthError as exc:
            raise MissingCredentialError(self.provider_name, str(exc)) from exc
        return self._accept(fresh)


class CredentialManager:
    """Per-provider credential access behind one interface."""

    def __init__(
        self,
        resolver: Optional[AuthResolver] = None,
        store: Optional[CredentialStore] = None,
        *,
        settings_provider: Callable[[], UserSettings] = get_user_settings,
        interactive: Optional[bool] = None,
        notify: Optional[Notify] = None,
        refresher: Refresher = refresh_access_token,
        device_login: DeviceLogin = login_with_device_code,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._resolver = resolver or AuthResolver()
        self._store = store or CredentialStore()
        self._settings_provider = settings_provider
        self._interactive = interactive
        self._notify = notify
        self._refresher = refresher
        self._device_login = device_login
        self._environ = environ
        self._strategies: Dict[str, CredentialStrategy] = {}

    @property
    def resolver(self) -> AuthResolver:
        return self._resolver

    def strategy_for(self, provider_name: str) -> CredentialStrategy:
        strategy = self._strategies.get(provider_name)
        if strategy is None:
            strategy = self._build_strategy(provider_name)
            self._strategies[provider_name] = strategy
        return strategy

    def _build_strategy(self, provider_name: str) -> CredentialStrategy:
        descriptor = self._resolver.registry.lookup(provider_name)
        method = self._resolver.resolve(provider_name).method
        if method in (AuthMethod.NONE, AuthMethod.CLI_SESSION):
            return NoCredentialStrategy()
        if method is AuthMethod.API_KEY:
            return StaticKeyStrategy(
                descriptor, settings_provider=self._settings_provider, environ=self._environ
            )
        if descriptor.oauth is None:
            raise MissingCredentialError(provider_name, "no OAuth endpoints are configured")
        settings = self._settings_provider()
        interactive = settings.interactive_login if self._interactive is None else self._interactive
        return OAuthDeviceFlowStrategy(
            provider_name,
            descriptor.oauth,
            self._store,
            refresh_margin_sec=settings.token_refresh_margin_sec,
            interactive=interactive,
            notify=self._notify,
            device_flow_timeout_sec=settings.device_flow_timeout_sec,
            refresher=self._refresher,
            device_login=self._device_login,
            seed=load_claude_cli_credential if method is AuthMethod.ANTHROPIC_OAUTH else None,
        )

    async def get_valid_credential(self, provider_name: str) -> Credential:
        return await self.strategy_for(provider_name).get_valid_credential()

    def invalidate(self, provider_name: str) -> None:
        logger.debug("[credentials] Invalidated credential", extra={"provider": provider_name})
        self.strategy_for(provider_name).invalidate()

    async def login(self, provider_name: str) -> Credential:
        strategy = self.strategy_for(provider_name)
        if isinstance(strategy, OAuthDeviceFlowStrategy):
            return await strategy.login()
        return await strategy.get_valid_credential()

    def logout(self, provider_name: str) -> bool:
        strategy = self.strategy_for(provider_name)
        if isinstance(strategy, OAuthDeviceFlowStrategy):
            return strategy.forget()
        return False
