"""OAuth 2.0 device authorization flow (RFC 8628) with PKCE, plus token refresh."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import secrets
import time
import webbrowser
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from switchyard.core.oauth import Credential
from switchyard.core.provider_registry import OAuthEndpoints
from switchyard.utils.log import get_logger
from switchyard.utils.user_agent import build_user_agent

logger = get_logger()

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
_POLLING_SAFETY_MARGIN_SEC = 1
_HTTP_TIMEOUT_SEC = 30.0

Notify = Callable[[str], None]
Sleep = Callable[[float], Awaitable[None]]


class OAuthError(RuntimeError):
    """Raised for device flow or refresh failures reported by the authorization server."""


class OAuthRefreshRejected(OAuthError):
    """The authorization server refused the refresh token (revoked or expired)."""


class DeviceFlowDenied(OAuthError):
    """The user denied the request or the device code expired."""


class OAuthResponseError(OAuthError):
    """A successful response whose body is not the expected JSON object."""

    def __init__(self, message: str, raw_payload: str) -> None:
        super().__init__(message)
        self.raw_payload = raw_payload


@dataclass(frozen=True)
class DeviceAuthorization:
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: Optional[str]
    interval: int
    expires_in: int


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_pkce_verifier(length: int = 64) -> str:
    raw = secrets.token_urlsafe(length)
    # PKCE verifier max length is 128.
    return raw[:128]


def pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return _base64url(digest)


def _extract_error_message(response: httpx.Response) -> str:
    text = response.text
    try:
        payload = response.json()
    except ValueError:
        return text or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        for field in ("error_description", "error", "message"):
            value = payload.get(field)
            if isinstance(value, str) and value:
                return value
    return text or f"HTTP {response.status_code}"


def _error_code(response: httpx.Response) -> Optional[str]:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return None


def _json_object(response: httpx.Response, context: str) -> dict:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        logger.warning(
            "[oauth] %s returned a non-JSON-object body",
            context,
            extra={"url": str(response.request.url), "raw_payload": response.text[:2000]},
        )
        raise OAuthResponseError(f"{context} returned unexpected payload.", response.text)
    return payload


def _headers() -> dict:
    return {
        "Accept": "application/json",
        "Content-Type": "application/x-www-form-urlencoded",
        "User-Agent": build_user_agent(),
    }


async def request_device_code(
    client: httpx.AsyncClient,
    endpoints: OAuthEndpoints,
    code_challenge: str,
) -> DeviceAuthorization:
    response = await client.post(
        endpoints.device_authorization_url,
        headers=_headers(),
        data={
            "client_id": endpoints.client_id,
            "scope": endpoints.scope,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        },
    )
    if response.status_code >= 400:
        raise OAuthError(
            f"Device authorization failed ({response.status_code}): {_extract_error_message(response)}"
        )
    payload = _json_object(response, "Device authorization")

    device_code = payload.get("device_code")
    user_code = payload.get("user_code")
    verification_uri = payload.get("verification_uri") or payload.get("verification_url")
    if not isinstance(device_code, str) or not device_code:
        raise OAuthError("Device authorization response missing device_code.")
    if not isinstance(user_code, str) or not user_code:
        raise OAuthError("Device authorization response missing user_code.")
    if not isinstance(verification_uri, str) or not verification_uri:
        raise OAuthError("Device authorization response missing verification_uri.")
    interval_raw = payload.get("interval")
    interval = int(interval_raw) if isinstance(interval_raw, (int, float)) else 5
    expires_raw = payload.get("expires_in")
    expires_in = int(expires_raw) if isinstance(expires_raw, (int, float)) else 900
    complete = payload.get("verification_uri_complete")
    return DeviceAuthorization(
        device_code=device_code,
        user_code=user_code,
        verification_uri=verification_uri,
        verification_uri_complete=complete if isinstance(complete, str) and complete else None,
        interval=max(1, interval),
        expires_in=expires_in,
    )


async def poll_for_token(
    client: httpx.AsyncClient,
    endpoints: OAuthEndpoints,
    authorization: DeviceAuthorization,
    code_verifier: str,
    *,
    timeout_sec: float,
    sleep: Sleep = asyncio.sleep,
) -> Credential:
    """Poll the token endpoint until the user approves, denies, or time runs out."""
    interval = authorization.interval
    deadline = time.monotonic() + min(timeout_sec, float(authorization.expires_in))
    while time.monotonic() < deadline:
        response = await client.post(
            endpoints.token_url,
            headers=_headers(),
            data={
                "grant_type": DEVICE_CODE_GRANT,
                "client_id": endpoints.client_id,
                "device_code": authorization.device_code,
                "code_verifier": code_verifier,
            },
        )
        if response.status_code < 400:
            payload = _json_object(response, "Device token polling")
            if payload.get("access_token"):
                return Credential.from_token_payload(payload)

        error = _error_code(response)
        if error == "authorization_pending" or (error is None and response.status_code < 400):
            await sleep(interval + _POLLING_SAFETY_MARGIN_SEC)
            continue
        if error == "slow_down":
            interval += 5
            await sleep(interval + _POLLING_SAFETY_MARGIN_SEC)
            continue
        if error in ("access_denied", "expired_token"):
            raise DeviceFlowDenied(f"Device authorization failed: {error}")
        raise OAuthError(
            f"Device polling failed ({response.status_code}): {_extract_error_message(response)}"
        )

    raise DeviceFlowDenied("Device authorization timed out.")


async def login_with_device_code(
    endpoints: OAuthEndpoints,
    *,
    timeout_sec: float = 600.0,
    open_browser: bool = True,
    notify: Optional[Notify] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Sleep = asyncio.sleep,
) -> Credential:
    """Run the full device flow and return the issued credential."""
    verifier = generate_pkce_verifier()
    async with httpx.AsyncClient(timeout=_HTTP_TIMEOUT_SEC, transport=transport) as client:
        authorization = await request_device_code(client, endpoints, pkce_challenge(verifier))
        url = authorization.verification_uri_complete or authorization.verification_uri
        if notify:
            notify(f"Open {url} and enter code: {authorization.user_code}")
        if open_browser:
            try:
                webbrowser.open(url, new=2)
            except webbrowser.Error as exc:
                logger.debug("[oauth] Could not open browser: %s", exc)
        logger.debug(
            "[oauth] Waiting for device authorization",
            extra={"verification_uri": authorization.verification_uri},
        )
        return await poll_for_token(
            client, endpoints, authorization, verifier, timeout_sec=timeout_sec, sleep=sleep
        )


async def refresh_access_token(
    endpoints: OAuthEndpoints,
    credential: Credential,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Credential:
    """Exchange the refresh token for a new credential.

    Raises OAuthRefreshRejected when the server rejects the refresh token;
    transport failures propagate as ``httpx`` exceptions.
    """
    if not credential.refresh_token:
        raise OAuthRefreshRejected("Refresh token is missing.")
    async with httpx.AsyncClient(timeout=_HTTP_TIMEOUT_SEC, transport=transport) as client:
        response = await client.post(
            endpoints.token_url,
            headers=_headers(),
            data={
                "grant_type": "refresh_token",
                "client_id": endpoints.client_id,
                "refresh_token": credential.refresh_token,
            },
        )
    if response.status_code in (400, 401, 403):
        raise OAuthRefreshRejected(
            f"OAuth refresh failed ({response.status_code}): {_extract_error_message(response)}"
        )
    if response.status_code >= 400:
        raise OAuthError(
            f"OAuth refresh failed ({response.status_code}): {_extract_error_message(response)}"
        )
    payload = _json_object(response, "OAuth refresh")
    try:
        return Credential.from_token_payload(payload, previous_refresh_token=credential.refresh_token)
    except ValueError as exc:
        raise OAuthError(str(exc)) from exc


__all__ = [
    "DeviceAuthorization",
    "DeviceFlowDenied",
    "OAuthError",
    "OAuthRefreshRejected",
    "OAuthResponseError",
    "generate_pkce_verifier",
    "login_with_device_code",
    "pkce_challenge",
    "poll_for_token",
    "refresh_access_token",
    "request_device_code",
]
