"""Backend client for OpenAI-compatible HTTP servers."""

from __future__ import annotations

import time
from typing import Any, AsyncIterator, Callable, Dict, Optional

from openai import AsyncOpenAI

from switchyard.core.converters import FormatConverter
from switchyard.core.error_mapping import map_openai_error, run_with_exception_mapper
from switchyard.core.messages import CanonicalRequest, CanonicalResponse
from switchyard.core.oauth import Credential
from switchyard.core.provider_registry import ProviderDescriptor
from switchyard.core.providers.base import BackendClient, iter_with_timeout
from switchyard.utils.log import get_logger
from switchyard.utils.user_agent import build_user_agent

logger = get_logger()

# Local servers accept any key, but the SDK refuses to build a client without one.
_PLACEHOLDER_API_KEY = "not-needed"

ClientFactory = Callable[[Dict[str, Any]], Any]


class OpenAICompatibleClient(BackendClient):
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
            "api_key": self._credential.access_token or _PLACEHOLDER_API_KEY,
            "base_url": self.base_url,
            "timeout": self.request_timeout_sec,
            "max_retries": 0,
            "default_headers": {"User-Agent": build_user_agent()},
        }
        if self._client_factory:
            return self._client_factory(kwargs)
        return AsyncOpenAI(**kwargs)

    def _map(self, exc: Exception) -> Exception:
        return map_openai_error(exc, self.provider_name)

    async def send(self, request: CanonicalRequest) -> CanonicalResponse:
        prepared = self.prepare(request, stream=False)
        payload = self.converter.to_wire(prepared)
        start = time.time()
        async with self._client() as client:
            response = await run_with_exception_mapper(
                lambda: client.chat.completions.create(**payload), self._map
            )
        logger.debug(
            "[openai_client] Response received",
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
            wire_stream = await run_with_exception_mapper(
                lambda: client.chat.completions.create(**payload), self._map
            )
            chunks = self.converter.normalize_stream(
                self._mapped(iter_with_timeout(wire_stream, self.request_timeout_sec)), prepared
            )
            async for chunk in chunks:
                yield chunk

    async def _mapped(self, wire_stream: Any) -> AsyncIterator[Any]:
        try:
            async for event in wire_stream:
                yield event
        except Exception as exc:
            mapped = self._map(exc)
            if mapped is exc:
                raise
            raise mapped from exc
