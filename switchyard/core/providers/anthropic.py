"""Backend client for the native Anthropic Messages API with OAuth bearer tokens."""

from __future__ import annotations

import time
from typing import Any, AsyncIterator, Callable, Dict, Optional

from anthropic import AsyncAnthropic

from switchyard.core.converters import FormatConverter
from switchyard.core.error_mapping import map_anthropic_error, run_with_exception_mapper
from switchyard.core.messages import CanonicalRequest, CanonicalResponse
from switchyard.core.oauth import Credential
from switchyard.core.provider_registry import ProviderDescriptor
from switchyard.core.providers.base import BackendClient, iter_with_timeout
from switchyard.utils.log import get_logger
from switchyard.utils.user_agent import build_user_agent

logger = get_logger()

OAUTH_BETA_HEADER = "oauth-2025-04-20"

ClientFactory = Callable[[Dict[str, Any]], Any]


class NativeOAuthClient(BackendClient):
    def __init__(
        self,
        descriptor: ProviderDescriptor,
        model_id: str,
        converter: FormatConverter,
        credential: Credential,
        *,
        base_url: Optional[str] = None,
        request_timeout_sec: Optional[float] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        super().__init__(descriptor, model_id, converter, request_timeout_sec=request_timeout_sec)
        self.base_url = base_url or descriptor.base_endpoint
        self._credential = credential
        self._client_factory = client_factory

    def _client(self) -> Any:
        kwargs: Dict[str, Any] = {
            "auth_token": self._credential.access_token,
            "base_url": self.base_url,
            "timeout": self.request_timeout_sec,
            "max_retries": 0,
            "default_headers": {
                "anthropic-beta": OAUTH_BETA_HEADER,
                "User-Agent": build_user_agent(),
            },
        }
        if self._client_factory:
            return self._client_factory(kwargs)
        return AsyncAnthropic(**kwargs)

    def _map(self, exc: Exception) -> Exception:
        return map_anthropic_error(exc, self.provider_name)

    async def send(self, request: CanonicalRequest) -> CanonicalResponse:
        prepared = self.prepare(request, stream=False)
        payload = self.converter.to_wire(prepared)
        start = time.time()
        async with self._client() as client:
            response = await run_with_exception_mapper(
                lambda: client.messages.create(**payload), self._map
            )
        logger.debug(
            "[anthropic_client] Response received",
            extra={
                "provider": self.provider_name,
                "model": self.model_id,
                "duration_ms": round((time.time() - start) * 1000, 2),
            },
        )
        return self.converter.from_wire(response, prepared)

    async def stream(self, request: CanonicalRequest) -> AsyncIterator[CanonicalResponse]:
        prepared = self.prepare(request, stream=True)
        payload = self.converter.to_wire(prepared)
        async with self._client() as client:
            events = await run_with_exception_mapper(
                lambda: client.messages.create(**payload), self._map
            )
            chunks = self.converter.normalize_stream(
                self._mapped(iter_with_timeout(events, self.request_timeout_sec)), prepared
            )
            async for chunk in chunks:
                yield chunk

    async def _mapped(self, events: Any) -> AsyncIterator[Any]:
        try:
            async for event in events:
                yield event
        except Exception as exc:
            mapped = self._map(exc)
            if mapped is exc:
                raise
            raise mapped from exc
