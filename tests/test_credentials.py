import httpx
import pytest

from p2pdrop.config import DEFAULT_ICE_SERVERS
from p2pdrop.credentials import CredentialsError, fetch_ice_servers, fetch_upstream_credentials

TURN = [{"urls": "turn:turn.example.com:3478", "username": "u", "credential": "p"}]


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_client_fetch_returns_relay_servers():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = request.content
        return httpx.Response(200, json={"iceServers": TURN})

    async with mock_client(handler) as client:
        servers = await fetch_ice_servers("http://relay:8081/", "abcdefghij0123456789", client=client)
    assert servers == TURN
    assert seen["url"] == "http://relay:8081/turn-credentials"
    assert b"abcdefghij0123456789" in seen["body"]


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(500, json={"error": "internal_error"}),
    httpx.Response(200, json={"nothing": []}),
    httpx.Response(200, content=b"<html>"),
])
async def test_client_fetch_falls_back_to_stun(response):
    async with mock_client(lambda request: response) as client:
        assert await fetch_ice_servers("http://relay", "room", client=client) == DEFAULT_ICE_SERVERS


@pytest.mark.asyncio
async def test_client_fetch_falls_back_when_relay_unreachable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with mock_client(handler) as client:
        assert await fetch_ice_servers("http://relay", "room", client=client) == DEFAULT_ICE_SERVERS


@pytest.mark.asyncio
async def test_upstream_without_url_uses_default():
    servers = await fetch_upstream_credentials(None)
    assert servers == DEFAULT_ICE_SERVERS
    servers[0]["urls"] = "changed"
    assert DEFAULT_ICE_SERVERS[0]["urls"] != "changed"


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [TURN, {"iceServers": TURN}])
async def test_upstream_accepts_list_or_wrapped_list(payload):
    async with mock_client(lambda request: httpx.Response(200, json=payload)) as client:
        assert await fetch_upstream_credentials("https://turn.example.com/creds", client=client) == TURN


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(401, json={"error": "bad key"}),
    httpx.Response(200, json={"unexpected": True}),
])
async def test_upstream_failures_raise(response):
    async with mock_client(lambda request: response) as client:
        with pytest.raises(CredentialsError):
            await fetch_upstream_credentials("https://turn.example.com/creds", client=client)
