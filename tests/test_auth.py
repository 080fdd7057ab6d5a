from __future__ import annotations

import asyncio

import httpx
import pytest

from liveness_demo.backend.auth import AuthClient, Credential, TokenCache
from liveness_demo.backend.http_client import HttpTransport
from liveness_demo.errors import AuthError


class Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_is_expired_boundary_is_closed():
    clock = Clock()
    cache = TokenCache(margin_seconds=60, clock=clock)
    credential = Credential("t", "Bearer", expires_in=3600, issued_at=1_000.0)

    clock.now = 1_000.0 + 3540 - 0.001
    assert not cache.is_expired(credential)
    clock.now = 1_000.0 + 3540
    assert cache.is_expired(credential)
    clock.now = 1_000.0 + 3600
    assert cache.is_expired(credential)


def test_short_lived_credential_is_expired_immediately():
    clock = Clock()
    cache = TokenCache(margin_seconds=60, clock=clock)
    assert cache.is_expired(Credential("t", "Bearer", expires_in=30, issued_at=clock.now))


def test_cache_holds_single_slot():
    cache = TokenCache()
    assert cache.get() is None
    first = Credential("a", "Bearer", 3600, 0.0)
    second = Credential("b", "Bearer", 3600, 0.0)
    cache.set(first)
    cache.set(second)
    assert cache.get() is second
    cache.clear()
    assert cache.get() is None


def _auth(settings, backend, clock=None) -> AuthClient:
    transport = HttpTransport(settings, client=httpx.AsyncClient(transport=httpx.MockTransport(backend)))
    return AuthClient(settings, transport, clock=clock or Clock())


@pytest.mark.asyncio
async def test_token_request_shape(settings, backend):
    auth = _auth(settings, backend)
    credential = await auth.get_valid_credential()

    assert credential.access_token == "t1"
    assert credential.token_type == "Bearer"
    assert credential.expires_in == 3600

    (request,) = backend.token_requests()
    assert request.method == "POST"
    assert request.url.params["grant_type"] == "client_credentials"
    assert request.url.params["scope"] == settings.oauth_scope
    assert request.headers["authorization"] == f"Basic {settings.api_key.get_secret_value()}"
    assert request.headers["content-type"] == "application/x-www-form-urlencoded"
    assert request.content == b"{}"


@pytest.mark.asyncio
async def test_cached_credential_avoids_second_request(settings, backend):
    auth = _auth(settings, backend)
    first = await auth.get_valid_credential()
    second = await auth.get_valid_credential()
    assert first is second
    assert len(backend.token_requests()) == 1


@pytest.mark.asyncio
async def test_expired_credential_is_refreshed(settings, backend):
    clock = Clock()
    auth = _auth(settings, backend, clock)
    first = await auth.get_valid_credential()

    clock.now += 3540
    backend.token_body = {"access_token": "t2", "token_type": "Bearer", "expires_in": 3600}
    second = await auth.get_valid_credential()

    assert first.access_token == "t1"
    assert second.access_token == "t2"
    assert len(backend.token_requests()) == 2


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(settings, backend):
    auth = _auth(settings, backend)
    results = await asyncio.gather(*(auth.get_valid_credential() for _ in range(5)))
    assert len(backend.token_requests()) == 1
    assert all(result is results[0] for result in results)


@pytest.mark.asyncio
async def test_rejected_exchange_raises_auth_error(settings, backend):
    backend.token_status = 401
    backend.token_body = {"error": "invalid_client"}
    auth = _auth(settings, backend)
    with pytest.raises(AuthError):
        await auth.get_valid_credential()
    assert auth.cache.get() is None


@pytest.mark.asyncio
async def test_malformed_body_raises_auth_error(settings, backend):
    backend.token_body = {"token_type": "Bearer"}
    auth = _auth(settings, backend)
    with pytest.raises(AuthError):
        await auth.get_valid_credential()


@pytest.mark.asyncio
async def test_failed_refresh_is_not_cached(settings, backend):
    backend.token_status = 500
    auth = _auth(settings, backend)
    with pytest.raises(AuthError):
        await auth.get_valid_credential()

    backend.token_status = 200
    await asyncio.sleep(0)
    credential = await auth.get_valid_credential()
    assert credential.access_token == "t1"
    assert len(backend.token_requests()) == 2
