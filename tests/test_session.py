"""Tests for the backend clients, the generator factory and the session loop.

The OpenAI and Anthropic SDK clients are replaced through the clients'
``client_factory`` hook, so requests never leave the process.
"""

from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace
from typing import Any, AsyncIterator, Dict, List

import anthropic
import httpx
import openai
import pytest

from switchyard.core.auth_resolver import AuthMethod, AuthResolver
from switchyard.core.config import UserSettings
from switchyard.core.credentials import CredentialManager
from switchyard.core.error_mapping import map_anthropic_error, map_httpx_error, map_openai_error
from switchyard.core.errors import (
    AuthExpiredError,
    BackendRequestError,
    BackendUnavailableError,
    ProviderNotFoundError,
)
from switchyard.core.messages import CanonicalRequest
from switchyard.core.oauth import Credential, CredentialStore, utc_now
from switchyard.core.provider_registry import (
    AuthScheme,
    OAuthEndpoints,
    ProtocolFamily,
    ProviderDescriptor,
    ProviderRegistry,
)
from switchyard.core.providers import GeneratorFactory, NativeOAuthClient, OpenAICompatibleClient
from switchyard.core.runtime_override import RuntimeOverride, StatePreservationManager
from switchyard.core.session import Session
from switchyard.core.session_config import SessionConfig

LOCAL = ProviderDescriptor(
    name="local-oai",
    protocol_family=ProtocolFamily.OPENAI_COMPATIBLE,
    auth_scheme=AuthScheme.STATIC_KEY,
    base_endpoint="http://localhost:9999/v1",
    api_key_env=("LOCAL_OAI_KEY",),
)
CLOUD = ProviderDescriptor(
    name="cloud-oauth",
    protocol_family=ProtocolFamily.NATIVE_OAUTH,
    auth_scheme=AuthScheme.OAUTH_DEVICE_FLOW,
    base_endpoint="https://cloud.example",
    model_alias_table={"large": "cloud-large-2025"},
    oauth=OAuthEndpoints(
        client_id="c",
        device_authorization_url="https://cloud.example/device",
        token_url="https://cloud.example/token",
    ),
)

_REQUEST = httpx.Request("POST", "http://localhost:9999/v1/chat/completions")


def _status_error(cls, status: int, sdk_request: httpx.Request = _REQUEST):
    return cls("rejected", response=httpx.Response(status, request=sdk_request), body=None)


async def _aiter(items: List[Any]) -> AsyncIterator[Any]:
    for item in items:
        yield item


class ScriptedEndpoint:
    """Plays back one scripted outcome per ``create`` call."""

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)
        self.calls: List[Dict[str, Any]] = []

    async def create(self, **payload: Any) -> Any:
        self.calls.append(payload)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        if payload.get("stream"):
            return _aiter(outcome)
        return outcome


class FakeSDKClient:
    def __init__(self, endpoint: ScriptedEndpoint, kwargs: Dict[str, Any]) -> None:
        self.kwargs = kwargs
        self.chat = SimpleNamespace(completions=endpoint)
        self.messages = endpoint

    async def __aenter__(self) -> "FakeSDKClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


def _completion(text: str) -> Dict[str, Any]:
    return {
        "model": "m",
        "choices": [{"message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 3, "completion_tokens": 2},
    }


def _chunk(text: str, finish: Any = None) -> Dict[str, Any]:
    return {"choices": [{"delta": {"content": text}, "finish_reason": finish}]}


@pytest.fixture
def endpoint() -> ScriptedEndpoint:
    return ScriptedEndpoint()


@pytest.fixture
def built_clients() -> List[FakeSDKClient]:
    return []


@pytest.fixture
def credential_store(tmp_path) -> CredentialStore:
    return CredentialStore(tmp_path / "credentials")


@pytest.fixture
def factory(endpoint, built_clients, credential_store) -> GeneratorFactory:
    def make_client(kwargs: Dict[str, Any]) -> FakeSDKClient:
        client = FakeSDKClient(endpoint, kwargs)
        built_clients.append(client)
        return client

    resolver = AuthResolver(ProviderRegistry([LOCAL, CLOUD]))
    credentials = CredentialManager(
        resolver, credential_store, interactive=False, environ={"LOCAL_OAI_KEY": "sk-local"}
    )
    options = {"client_factory": make_client}
    return GeneratorFactory(
        resolver=resolver,
        credentials=credentials,
        settings_provider=lambda: UserSettings(request_timeout_sec=30),
        client_options={ProtocolFamily.OPENAI_COMPATIBLE: options, ProtocolFamily.NATIVE_OAUTH: options},
    )


@pytest.fixture
def manager() -> StatePreservationManager:
    return StatePreservationManager()


@pytest.fixture
def session(factory, manager) -> Session:
    manager.set_override("local-oai", "qwen3-4b")
    return Session(factory, SessionConfig(settings_provider=UserSettings, manager=manager))


class TestGeneratorFactory:
    @pytest.mark.asyncio
    async def test_builds_client_per_family(self, factory, credential_store) -> None:
        credential_store.save(
            "cloud-oauth", Credential(access_token="oauth-token", expiry_instant=utc_now() + timedelta(hours=1))
        )
        local = await factory.build("local-oai", "qwen3-4b")
        cloud = await factory.build("cloud-oauth", "large")

        assert isinstance(local, OpenAICompatibleClient)
        assert isinstance(cloud, NativeOAuthClient)
        assert cloud.model_id == "cloud-large-2025"
        assert local.request_timeout_sec == 30

    @pytest.mark.asyncio
    async def test_cache_and_evict(self, factory) -> None:
        first = await factory.build("local-oai", "qwen3-4b")
        assert await factory.build("local-oai", "qwen3-4b") is first
        assert await factory.build("local-oai", "qwen3-4b", endpoint_override="http://other/v1") is not first

        factory.evict("local-oai")
        assert await factory.build("local-oai", "qwen3-4b") is not first

    @pytest.mark.asyncio
    async def test_unknown_provider(self, factory) -> None:
        with pytest.raises(ProviderNotFoundError):
            await factory.build("nowhere", "m")


class TestOpenAICompatibleClient:
    @pytest.mark.asyncio
    async def test_send_builds_sdk_client_and_payload(self, factory, endpoint, built_clients) -> None:
        endpoint.outcomes.append(_completion("pong"))
        client = await factory.build("local-oai", "qwen3-4b", endpoint_override="http://127.0.0.1:8080/v1")
        response = await client.send(CanonicalRequest.from_prompt("ping", system="sys"))

        assert response.text == "pong"
        assert response.usage is not None and response.usage.input_tokens == 3
        kwargs = built_clients[0].kwargs
        assert kwargs["api_key"] == "sk-local"
        assert kwargs["base_url"] == "http://127.0.0.1:8080/v1"
        assert kwargs["max_retries"] == 0
        assert kwargs["default_headers"]["User-Agent"].startswith("switchyard/")
        payload = endpoint.calls[0]
        assert payload["model"] == "qwen3-4b"
        assert payload["messages"][0] == {"role": "system", "content": "sys"}
        assert payload["stream"] is False

    @pytest.mark.asyncio
    async def test_stream(self, factory, endpoint) -> None:
        endpoint.outcomes.append([_chunk("a"), _chunk("b"), _chunk("", "stop")])
        client = await factory.build("local-oai", "qwen3-4b")
        chunks = [chunk async for chunk in client.stream(CanonicalRequest.from_prompt("x"))]

        assert [c.text for c in chunks] == ["a", "b", ""]
        assert chunks[-1].is_terminal and chunks[-1].finish_reason == "stop"
        assert endpoint.calls[0]["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_sdk_errors_are_mapped(self, factory, endpoint) -> None:
        endpoint.outcomes.append(_status_error(openai.InternalServerError, 500))
        client = await factory.build("local-oai", "qwen3-4b")
        with pytest.raises(BackendRequestError) as exc_info:
            await client.send(CanonicalRequest.from_prompt("x"))
        assert exc_info.value.status_code == 500
        assert exc_info.value.provider_name == "local-oai"


class TestNativeOAuthClient:
    @pytest.mark.asyncio
    async def test_send_uses_bearer_token_and_hoisted_system(
        self, factory, endpoint, built_clients, credential_store
    ) -> None:
        credential_store.save(
            "cloud-oauth", Credential(access_token="oauth-token", expiry_instant=utc_now() + timedelta(hours=1))
        )
        endpoint.outcomes.append(
            {
                "model": "cloud-large-2025",
                "content": [{"type": "text", "text": "hello"}],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 4, "output_tokens": 1},
            }
        )
        client = await factory.build("cloud-oauth", "large")
        response = await client.send(CanonicalRequest.from_prompt("hi", system="You are X"))

        assert response.text == "hello"
        kwargs = built_clients[0].kwargs
        assert kwargs["auth_token"] == "oauth-token"
        assert kwargs["default_headers"]["anthropic-beta"] == "oauth-2025-04-20"
        payload = endpoint.calls[0]
        assert payload["system"] == "You are X"
        assert payload["max_tokens"] == 4000
        assert payload["model"] == "cloud-large-2025"


class TestSession:
    @pytest.mark.asyncio
    async def test_send_retries_once_after_auth_expired(self, session, endpoint) -> None:
        endpoint.outcomes.extend([_status_error(openai.AuthenticationError, 401), _completion("second try")])
        response = await session.send(CanonicalRequest.from_prompt("hi"))
        assert response.text == "second try"
        assert len(endpoint.calls) == 2

    @pytest.mark.asyncio
    async def test_second_auth_failure_propagates(self, session, endpoint) -> None:
        endpoint.outcomes.extend(
            [_status_error(openai.AuthenticationError, 401), _status_error(openai.AuthenticationError, 401)]
        )
        with pytest.raises(AuthExpiredError):
            await session.send(CanonicalRequest.from_prompt("hi"))
        assert len(endpoint.calls) == 2

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self, session, endpoint) -> None:
        endpoint.outcomes.append(_status_error(openai.RateLimitError, 429))
        with pytest.raises(BackendRequestError):
            await session.send(CanonicalRequest.from_prompt("hi"))
        assert len(endpoint.calls) == 1

    @pytest.mark.asyncio
    async def test_stream_retries_before_first_chunk(self, session, endpoint) -> None:
        endpoint.outcomes.extend(
            [_status_error(openai.AuthenticationError, 401), [_chunk("ok"), _chunk("", "stop")]]
        )
        chunks = [chunk async for chunk in session.stream(CanonicalRequest.from_prompt("hi"))]
        assert [c.text for c in chunks] == ["ok", ""]

    @pytest.mark.asyncio
    async def test_no_selection_raises(self, factory, manager) -> None:
        session = Session(factory, SessionConfig(settings_provider=UserSettings, manager=manager))
        with pytest.raises(ProviderNotFoundError):
            await session.send(CanonicalRequest.from_prompt("hi"))

    def test_refresh_auth_keeps_target(self, session) -> None:
        session.refresh_auth()
        assert session.target() == RuntimeOverride("local-oai", "qwen3-4b")
        assert session.config.auth_method is AuthMethod.API_KEY
        assert session.config.refresh_count == 1

    @pytest.mark.asyncio
    async def test_switched_model_receives_requests_across_refreshes(
        self, factory, manager, endpoint, built_clients, credential_store
    ) -> None:
        credential_store.save(
            "cloud-oauth",
            Credential(access_token="oauth-token", expiry_instant=utc_now() + timedelta(hours=1)),
        )
        host_defaults = UserSettings(default_provider="cloud-oauth", default_model="large")
        session = Session(
            factory, SessionConfig(settings_provider=lambda: host_defaults, manager=manager)
        )
        manager.set_override("local-oai", "qwen3-4b")

        for refreshes in range(51):
            endpoint.outcomes.append(_completion(f"after {refreshes}"))
            response = await session.send(CanonicalRequest.from_prompt("hi"))

            assert response.text == f"after {refreshes}"
            assert endpoint.calls[-1]["model"] == "qwen3-4b"
            assert session.config.refresh_count == refreshes
            session.refresh_auth()

        assert {client.kwargs.get("api_key") for client in built_clients} == {"sk-local"}
        assert not any("auth_token" in client.kwargs for client in built_clients)


def test_error_mapping() -> None:
    assert isinstance(map_openai_error(_status_error(openai.PermissionDeniedError, 403), "p"), AuthExpiredError)
    assert isinstance(map_openai_error(openai.APIConnectionError(request=_REQUEST), "p"), BackendUnavailableError)
    assert isinstance(
        map_anthropic_error(_status_error(anthropic.AuthenticationError, 401), "p"), AuthExpiredError
    )
    assert isinstance(map_httpx_error(httpx.ConnectError("refused"), "p"), BackendUnavailableError)
    unrelated = ValueError("x")
    assert map_openai_error(unrelated, "p") is unrelated
