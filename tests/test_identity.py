"""Tests for the identity provider client using httpx.MockTransport."""

import json
from datetime import datetime, timedelta, timezone

import fakeredis.aioredis
import httpx
import pytest

from errors import NetworkUnreachable, ProviderRejected, Timeout, UpstreamError
from identity import TOKEN_STORAGE_KEY, IdentityProvider
from models import AuthEvent
from session_cache import SessionCache

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
BASE = "https://project.supabase.co"


def _token_payload(access="access-1", refresh="refresh-1", role="client", expires_in=3600):
    return {
        "access_token": access,
        "refresh_token": refresh,
        "expires_at": int((NOW + timedelta(seconds=expires_in)).timestamp()),
        "user": {
            "id": "user-1",
            "email": "ada@example.com",
            "user_metadata": {"role": role},
        },
    }


class Backend:
    """Minimal GoTrue stand-in; records every request it sees."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], tuple[int, dict | None]] = {}

    def route(self, method, path, status=200, body=None):
        self.routes[(method, path)] = (status, body)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"msg": "not found"})
        status, body = self.routes[key]
        return httpx.Response(status, json=body)


@pytest.fixture
def backend():
    return Backend()


@pytest.fixture
async def cache():
    c = SessionCache(client=fakeredis.aioredis.FakeRedis(), namespace="test")
    yield c
    await c.close()


@pytest.fixture
async def provider(backend, cache):
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend))
    p = IdentityProvider(BASE, "anon-key", storage=cache, client=client, now=lambda: NOW)
    yield p
    await client.aclose()


@pytest.fixture
def events(provider):
    received = []
    provider.on_auth_event(lambda event, session: received.append((event, session)))
    return received


async def test_sign_in(provider, backend, events):
    backend.route("POST", "/auth/v1/token", body=_token_payload(role="clinician"))

    session = await provider.sign_in("ada@example.com", "secret")

    assert session.identity.id == "user-1"
    assert session.role == "clinician"
    assert session.expiry == NOW + timedelta(hours=1)
    request = backend.requests[0]
    assert request.url.params["grant_type"] == "password"
    assert json.loads(request.content) == {"email": "ada@example.com", "password": "secret"}
    assert request.headers["apikey"] == "anon-key"
    assert events == [(AuthEvent.SIGNED_IN, session)]


async def test_role_defaults_to_client(provider, backend):
    payload = _token_payload()
    payload["user"]["user_metadata"] = {}
    backend.route("POST", "/auth/v1/token", body=payload)
    session = await provider.sign_in("ada@example.com", "secret")
    assert session.role == "client"


async def test_sign_in_bad_credentials(provider, backend, events):
    backend.route(
        "POST",
        "/auth/v1/token",
        status=400,
        body={"error": "invalid_grant", "error_description": "Invalid login credentials"},
    )
    with pytest.raises(ProviderRejected) as exc_info:
        await provider.sign_in("ada@example.com", "wrong")
    assert exc_info.value.message == "Invalid login credentials"
    assert exc_info.value.status_code == 400
    assert events == []


async def test_rate_limited_is_rejected(provider, backend):
    backend.route("POST", "/auth/v1/token", status=429, body={"msg": "Too many requests"})
    with pytest.raises(ProviderRejected):
        await provider.sign_in("ada@example.com", "secret")


async def test_server_error_is_upstream(provider, backend):
    backend.route("POST", "/auth/v1/token", status=503, body={"msg": "unavailable"})
    with pytest.raises(UpstreamError) as exc_info:
        await provider.sign_in("ada@example.com", "secret")
    assert exc_info.value.retryable is True


async def test_transport_errors_are_mapped(cache):
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    def slow(request):
        raise httpx.ReadTimeout("slow", request=request)

    for handler, error in ((refuse, NetworkUnreachable), (slow, Timeout)):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = IdentityProvider(BASE, "anon-key", storage=cache, client=client)
            with pytest.raises(error):
                await provider.sign_in("ada@example.com", "secret")


async def test_get_session_without_tokens(provider, backend):
    assert await provider.get_session() is None
    assert backend.requests == []


async def test_get_session_validates_with_provider(provider, backend):
    backend.route("POST", "/auth/v1/token", body=_token_payload())
    await provider.sign_in("ada@example.com", "secret")
    backend.route(
        "GET",
        "/auth/v1/user",
        body={"id": "user-1", "email": "ada@example.com", "user_metadata": {"role": "admin"}},
    )

    session = await provider.get_session()

    assert session.role == "admin"
    assert backend.requests[-1].headers["Authorization"] == "Bearer access-1"


async def test_get_session_rejected_token_clears(provider, backend, cache):
    backend.route("POST", "/auth/v1/token", body=_token_payload())
    await provider.sign_in("ada@example.com", "secret")
    backend.route("GET", "/auth/v1/user", status=401, body={"msg": "invalid JWT"})

    assert await provider.get_session() is None
    assert await cache.get(TOKEN_STORAGE_KEY) is None


async def test_get_session_refreshes_expired_token(provider, backend, events):
    backend.route("POST", "/auth/v1/token", body=_token_payload(expires_in=30))
    await provider.sign_in("ada@example.com", "secret")
    backend.route("POST", "/auth/v1/token", body=_token_payload(access="access-2"))

    session = await provider.get_session()

    assert session.access_token == "access-2"
    assert backend.requests[-1].url.params["grant_type"] == "refresh_token"
    assert events[-1][0] == AuthEvent.TOKEN_REFRESHED


async def test_refresh_rejected_signs_out(provider, backend, events):
    backend.route("POST", "/auth/v1/token", body=_token_payload())
    await provider.sign_in("ada@example.com", "secret")
    backend.route("POST", "/auth/v1/token", status=400, body={"msg": "Invalid Refresh Token"})

    assert await provider.refresh_session() is None
    assert events[-1] == (AuthEvent.SIGNED_OUT, None)
    assert await provider.access_token() is None


async def test_refresh_without_session(provider, backend):
    assert await provider.refresh_session() is None
    assert backend.requests == []


async def test_tokens_survive_restart(provider, backend, cache):
    backend.route("POST", "/auth/v1/token", body=_token_payload())
    await provider.sign_in("ada@example.com", "secret")

    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        restarted = IdentityProvider(BASE, "anon-key", storage=cache, client=client, now=lambda: NOW)
        assert await restarted.access_token() == "access-1"


async def test_sign_out_clears_even_on_failure(provider, backend, events, cache):
    backend.route("POST", "/auth/v1/token", body=_token_payload())
    await provider.sign_in("ada@example.com", "secret")
    backend.route("POST", "/auth/v1/logout", status=503, body={"msg": "unavailable"})

    with pytest.raises(UpstreamError):
        await provider.sign_out()

    assert await provider.access_token() is None
    assert await cache.get(TOKEN_STORAGE_KEY) is None
    assert events[-1] == (AuthEvent.SIGNED_OUT, None)


async def test_clear_local_makes_no_request(provider, backend, cache):
    backend.route("POST", "/auth/v1/token", body=_token_payload())
    await provider.sign_in("ada@example.com", "secret")
    seen = len(backend.requests)

    await provider.clear_local()

    assert len(backend.requests) == seen
    assert await provider.access_token() is None
    assert await cache.get(TOKEN_STORAGE_KEY) is None


async def test_update_user_emits_event(provider, backend, events):
    backend.route("POST", "/auth/v1/token", body=_token_payload())
    await provider.sign_in("ada@example.com", "secret")
    backend.route(
        "PUT",
        "/auth/v1/user",
        body={"id": "user-1", "email": "ada@example.com", "user_metadata": {"role": "clinician"}},
    )

    session = await provider.update_user({"role": "clinician"})

    assert session.role == "clinician"
    assert events[-1] == (AuthEvent.USER_UPDATED, session)


async def test_reset_password(provider, backend):
    backend.route("POST", "/auth/v1/recover", body={})
    await provider.reset_password_for_email("ada@example.com", redirect_to="https://portal/reset")
    request = backend.requests[0]
    assert json.loads(request.content) == {"email": "ada@example.com"}
    assert request.url.params["redirect_to"] == "https://portal/reset"


async def test_unsubscribe(provider, backend):
    received = []
    unsubscribe = provider.on_auth_event(lambda event, session: received.append(event))
    unsubscribe()
    backend.route("POST", "/auth/v1/token", body=_token_payload())
    await provider.sign_in("ada@example.com", "secret")
    assert received == []
