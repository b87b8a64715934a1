"""Request loop over the effective provider/model selection."""

from __future__ import annotations

from contextlib import aclosing
from typing import AsyncIterator, Optional

from switchyard.core.auth_resolver import AuthMethod
from switchyard.core.errors import AuthExpiredError, ProviderNotFoundError
from switchyard.core.messages import CanonicalRequest, CanonicalResponse
from switchyard.core.providers import BackendClient, GeneratorFactory
from switchyard.core.runtime_override import RuntimeOverride
from switchyard.core.session_config import SessionConfig
from switchyard.utils.log import get_logger

logger = get_logger()


class Session:
    """Sends requests to whichever backend the user selected.

    An :class:`AuthExpiredError` triggers one forced credential refresh and a
    single retry against the same backend. Every other error propagates, and
    a failing backend is never replaced by another one.
    """

    def __init__(self, factory: Optional[GeneratorFactory] = None, config: Optional[SessionConfig] = None) -> None:
        self.factory = factory or GeneratorFactory()
        self.config = config or SessionConfig()

    def target(self) -> RuntimeOverride:
        target = self.config.effective_target()
        if target is None:
            raise ProviderNotFoundError("<none selected>", kind="model")
        return target

    async def _client(self, target: RuntimeOverride) -> BackendClient:
        return await self.factory.build(
            target.active_provider_name,
            target.active_model_id,
            endpoint_override=target.endpoint_override,
        )

    def _invalidate(self, target: RuntimeOverride, exc: AuthExpiredError) -> None:
        logger.info(
            "[session] Authentication rejected; refreshing credential and retrying once",
            extra={"provider": target.active_provider_name, "error": str(exc)},
        )
        self.factory.credentials.invalidate(target.active_provider_name)
        self.factory.evict(target.active_provider_name)

    async def send(self, request: CanonicalRequest) -> CanonicalResponse:
        target = self.target()
        try:
            client = await self._client(target)
            return await client.send(request)
        except AuthExpiredError as exc:
            self._invalidate(target, exc)
        client = await self._client(target)
        return await client.send(request)

    async def stream(self, request: CanonicalRequest) -> AsyncIterator[CanonicalResponse]:
        target = self.target()
        emitted = False
        try:
            client = await self._client(target)
            async with aclosing(client.stream(request)) as chunks:
                async for chunk in chunks:
                    emitted = True
                    yield chunk
            return
        except AuthExpiredError as exc:
            if emitted:
                raise
            self._invalidate(target, exc)
        client = await self._client(target)
        async with aclosing(client.stream(request)) as chunks:
            async for chunk in chunks:
                yield chunk

    def refresh_auth(self, auth_method: Optional[AuthMethod] = None) -> None:
        """Host credential-refresh lifecycle event; the runtime selection survives it."""
        if auth_method is None:
            target = self.config.effective_target()
            if target is not None:
                auth_method = self.factory.resolver.resolve(target.active_provider_name).method
        self.config.refresh_auth(auth_method)
