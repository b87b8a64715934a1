"""Error taxonomy for provider routing.

Every error names the backend it concerns so a failure is never mistaken
for a problem with some other provider.
"""

from __future__ import annotations

from typing import Any, Optional


class SwitchyardError(Exception):
    """Base error with a stable error code."""

    error_code = "switchyard_error"

    def __init__(
        self,
        message: str,
        *,
        provider_name: Optional[str] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.provider_name = provider_name
        self.retryable = retryable


class ProviderNotFoundError(SwitchyardError):
    """Unknown provider or nickname. A user/configuration error."""

    error_code = "provider_not_found"

    def __init__(self, name: str, *, kind: str = "provider") -> None:
        super().__init__(f"Unknown {kind} '{name}'", provider_name=name if kind == "provider" else None)
        self.name = name
        self.kind = kind


class MissingCredentialError(SwitchyardError):
    """No credential is available; the user must supply or obtain one."""

    error_code = "missing_credential"

    def __init__(self, provider_name: str, detail: str) -> None:
        super().__init__(f"No credential for '{provider_name}': {detail}", provider_name=provider_name)


class AuthExpiredError(SwitchyardError):
    """The credential was rejected or could not be refreshed."""

    error_code = "auth_expired"

    def __init__(self, provider_name: str, detail: str) -> None:
        super().__init__(
            f"Authentication for '{provider_name}' expired: {detail}",
            provider_name=provider_name,
            retryable=True,
        )


class BackendUnavailableError(SwitchyardError):
    """The backend cannot be reached: missing tooling or network failure."""

    error_code = "backend_unavailable"

    def __init__(self, provider_name: str, detail: str, *, remediation: str = "") -> None:
        message = f"Backend '{provider_name}' is unavailable: {detail}"
        if remediation:
            message = f"{message}. {remediation}"
        super().__init__(message, provider_name=provider_name)
        self.remediation = remediation


class WireProtocolError(SwitchyardError):
    """The backend answered with a malformed or unexpected payload."""

    error_code = "wire_protocol_error"

    def __init__(self, provider_name: str, detail: str, *, raw_payload: Any = None) -> None:
        super().__init__(
            f"Unexpected response from '{provider_name}': {detail}", provider_name=provider_name
        )
        self.raw_payload = raw_payload


class BackendRequestError(SwitchyardError):
    """The backend rejected the request (bad request, rate limit, server error)."""

    error_code = "backend_request_error"

    def __init__(self, provider_name: str, detail: str, *, status_code: Optional[int] = None) -> None:
        prefix = f"HTTP {status_code} from" if status_code else "Request rejected by"
        super().__init__(f"{prefix} '{provider_name}': {detail}", provider_name=provider_name)
        self.status_code = status_code


__all__ = [
    "AuthExpiredError",
    "BackendRequestError",
    "BackendUnavailableError",
    "MissingCredentialError",
    "ProviderNotFoundError",
    "SwitchyardError",
    "WireProtocolError",
]
