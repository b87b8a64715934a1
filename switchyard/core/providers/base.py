"""Shared abstractions for backend clients."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, AsyncIterable, AsyncIterator, Optional

from switchyard.core.converters import FormatConverter
from switchyard.core.messages import CanonicalRequest, CanonicalResponse
from switchyard.core.provider_registry import ProviderDescriptor
from switchyard.utils.log import get_logger

logger = get_logger()


class BackendClient(ABC):
    """One backend + model, pre-wired to its format converter."""

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        model_id: str,
        converter: FormatConverter,
        *,
        request_timeout_sec: Optional[float] = None,
    ) -> None:
        self.descriptor = descriptor
        self.model_id = model_id
        self.converter = converter
        self.request_timeout_sec = request_timeout_sec

    @property
    def provider_name(self) -> str:
        return self.descriptor.name

    def prepare(self, request: CanonicalRequest, *, stream: bool) -> CanonicalRequest:
        """Pin the request to this client's model and streaming mode."""
        return request.with_model(self.model_id).with_stream(stream)

    @abstractmethod
    async def send(self, request: CanonicalRequest) -> CanonicalResponse:
        """Execute a request and return the complete response."""

    @abstractmethod
    def stream(self, request: CanonicalRequest) -> AsyncIterator[CanonicalResponse]:
        """Return a single-use async iterator of chunks ending with one terminal chunk."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(provider={self.provider_name!r}, model={self.model_id!r})"


async def iter_with_timeout(stream: AsyncIterable[Any], timeout: Optional[float]) -> AsyncIterator[Any]:
    """Yield items from an async iterable, enforcing a per-item timeout if provided."""
    if timeout is None or timeout <= 0:
        async for item in stream:
            yield item
        return

    iterator = stream.__aiter__()
    while True:
        try:
            yield await asyncio.wait_for(iterator.__anext__(), timeout=timeout)
        except StopAsyncIteration:
            break
