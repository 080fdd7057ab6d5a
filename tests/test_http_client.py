from __future__ import annotations

import httpx
import pytest

from liveness_demo.backend.http_client import HttpTransport
from liveness_demo.errors import MalformedResponseError, ResourceError, SessionError, TransportError


def _transport(settings, handler) -> HttpTransport:
    return HttpTransport(settings, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
@pytest.mark.parametrize("code", [204, 205])
async def test_empty_status_body_is_not_parsed(settings, code):
    transport = _transport(settings, lambda request: httpx.Response(code))
    response = await transport.send("https://x.test/r", "POST")
    assert response.status == code
    assert response.data is None


@pytest.mark.asyncio
async def test_error_status_body_is_still_parsed(settings):
    transport = _transport(settings, lambda request: httpx.Response(400, json={"error": "bad_tx"}))
    response = await transport.send("https://x.test/r", "GET")
    assert response.status == 400
    assert response.data == {"error": "bad_tx"}


@pytest.mark.asyncio
async def test_unparseable_body_raises_transport_error(settings):
    transport = _transport(settings, lambda request: httpx.Response(200, text="<html>oops</html>"))
    with pytest.raises(TransportError):
        await transport.send("https://x.test/r", "GET")


@pytest.mark.asyncio
async def test_network_failure_raises_transport_error(settings):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    transport = _transport(settings, handler)
    with pytest.raises(TransportError):
        await transport.send("https://x.test/r", "GET")


@pytest.mark.asyncio
async def test_post_sends_json_body_and_headers(settings):
    seen = {}

    def handler(request):
        seen["body"] = request.content
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"ok": True})

    transport = _transport(settings, handler)
    response = await transport.post("https://x.test/r", {"tx_id": "abc"}, headers={"Authorization": "Bearer t"})
    assert response.data == {"ok": True}
    assert seen["body"] == b'{"tx_id": "abc"}'
    assert seen["auth"] == "Bearer t"


@pytest.mark.asyncio
async def test_post_resource_rejects_unexpected_status(settings):
    transport = _transport(settings, lambda request: httpx.Response(500, json={"error": "boom"}))
    with pytest.raises(ResourceError) as excinfo:
        await transport.post_resource("https://x.test/v1/session", {}, expected_status=200)
    err = excinfo.value
    assert err.actual == 500
    assert err.expected == 200
    assert err.body == {"error": "boom"}
    assert str(err) == 'POST https://x.test/v1/session failed! Expected 200 but got 500. Body:{"error": "boom"}'


@pytest.mark.asyncio
async def test_post_resource_accepts_listed_error_codes(settings):
    transport = _transport(settings, lambda request: httpx.Response(409, json={"error": "already_exists"}))
    result = await transport.post_resource(
        "https://x.test/r", {}, expected_status=[200, 201], acceptable_errors=["already_exists"]
    )
    assert result == "already_exists"


@pytest.mark.asyncio
async def test_post_resource_uses_requested_error_class(settings):
    transport = _transport(settings, lambda request: httpx.Response(403, json={}))
    with pytest.raises(SessionError):
        await transport.post_resource("https://x.test/r", {}, expected_status=200, error_cls=SessionError)


@pytest.mark.asyncio
async def test_unparseable_body_keeps_status_and_text(settings):
    transport = _transport(settings, lambda request: httpx.Response(502, text="Bad Gateway"))
    with pytest.raises(MalformedResponseError) as excinfo:
        await transport.send("https://x.test/r", "GET")
    assert excinfo.value.status == 502
    assert excinfo.value.text == "Bad Gateway"


@pytest.mark.asyncio
async def test_post_resource_turns_unparseable_body_into_resource_error(settings):
    transport = _transport(settings, lambda request: httpx.Response(500, text="<html>oops</html>"))
    with pytest.raises(SessionError) as excinfo:
        await transport.post_resource("https://x.test/v1/session", {}, expected_status=200, error_cls=SessionError)
    assert excinfo.value.actual == 500
    assert excinfo.value.body == "<html>oops</html>"


@pytest.mark.asyncio
async def test_post_checked_returns_status_of_tolerated_error(settings):
    transport = _transport(settings, lambda request: httpx.Response(409, json={"error": "already_exists"}))
    response = await transport.post_checked(
        "https://x.test/r", {}, expected_status=200, acceptable_errors=["already_exists"]
    )
    assert response.status == 409
    assert response.data == {"error": "already_exists"}
