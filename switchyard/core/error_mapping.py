"""Map SDK and transport exceptions onto the Switchyard error taxonomy."""

from __future__ import annotations

import asyncio
from types import ModuleType
from typing import Any, Awaitable, Callable

import anthropic
import httpx
import openai

from switchyard.core.errors import (
    AuthExpiredError,
    BackendRequestError,
    BackendUnavailableError,
    SwitchyardError,
    WireProtocolError,
)

_NETWORK_REMEDIATION = "Check the endpoint URL and your network connection"


def _map_sdk_error(sdk: ModuleType, exc: Exception, provider_name: str) -> Exception:
    if isinstance(exc, SwitchyardError):
        return exc
    message = str(exc)
    if isinstance(exc, (sdk.AuthenticationError, sdk.PermissionDeniedError)):
        return AuthExpiredError(provider_name, message)
    if isinstance(exc, sdk.APITimeoutError):
        return BackendUnavailableError(provider_name, f"request timed out: {message}")
    if isinstance(exc, sdk.APIConnectionError):
        return BackendUnavailableError(
            provider_name, f"connection error: {message}", remediation=_NETWORK_REMEDIATION
        )
    if isinstance(exc, sdk.APIResponseValidationError):
        return WireProtocolError(provider_name, message, raw_payload=getattr(exc, "body", None))
    if isinstance(exc, sdk.APIStatusError):
        return BackendRequestError(provider_name, message, status_code=exc.status_code)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return BackendUnavailableError(provider_name, "request timed out")
    return exc


def map_openai_error(exc: Exception, provider_name: str) -> Exception:
    """Translate an ``openai`` SDK exception; unknown exceptions pass through."""
    return _map_sdk_error(openai, exc, provider_name)


def map_anthropic_error(exc: Exception, provider_name: str) -> Exception:
    """Translate an ``anthropic`` SDK exception; unknown exceptions pass through."""
    return _map_sdk_error(anthropic, exc, provider_name)


def map_httpx_error(exc: Exception, provider_name: str) -> Exception:
    """Translate an ``httpx`` transport or status exception."""
    if isinstance(exc, SwitchyardError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return BackendUnavailableError(provider_name, f"request timed out: {exc}")
    if isinstance(exc, httpx.TransportError):
        return BackendUnavailableError(
            provider_name, f"connection error: {exc}", remediation=_NETWORK_REMEDIATION
        )
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in (401, 403):
            return AuthExpiredError(provider_name, f"HTTP {status}")
        return BackendRequestError(provider_name, exc.response.text[:500], status_code=status)
    return exc


async def run_with_exception_mapper(
    request_fn: Callable[[], Awaitable[Any]],
    mapper: Callable[[Exception], Exception],
) -> Any:
    """Execute request and transform provider exceptions via mapper."""
    try:
        return await request_fn()
    except Exception as exc:
        mapped_exc = mapper(exc)
        if mapped_exc is exc:
            raise
        raise mapped_exc from exc
