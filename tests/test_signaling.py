import asyncio
import json
from contextlib import asynccontextmanager

import pytest
import websockets

from p2pdrop.models import RoomInfoMessage
from p2pdrop.signaling import SignalingClient

from conftest import ROOM, TOKEN


@asynccontextmanager
async def local_relay(handler):
    async with websockets.serve(handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        yield f"ws://127.0.0.1:{port}"


def collecting_handler(received: asyncio.Queue):
    async def handler(ws):
        async for raw in ws:
            await received.put(json.loads(raw))

    return handler


@pytest.mark.asyncio
async def test_join_sends_room_and_token():
    received = asyncio.Queue()
    async with local_relay(collecting_handler(received)) as url:
        async with SignalingClient(url, keepalive_interval=None) as client:
            await client.join(ROOM, TOKEN)
            message = await asyncio.wait_for(received.get(), timeout=5)
    assert message == {"type": "join", "room": ROOM, "token": TOKEN}


@pytest.mark.asyncio
async def test_messages_skip_binary_and_malformed_frames_and_end_on_close():
    async def handler(ws):
        await ws.send(b"\x00\x01")
        await ws.send("not json")
        await ws.send('{"type": "bogus"}')
        await ws.send('{"type": "room-info"}')
        await ws.send('{"type": "room-info", "clients": 2}')

    async with local_relay(handler) as url:
        async with SignalingClient(url, keepalive_interval=None) as client:
            messages = await asyncio.wait_for(_collect(client), timeout=5)
    assert messages == [RoomInfoMessage(clients=2)]


async def _collect(client):
    return [message async for message in client.messages()]


@pytest.mark.asyncio
async def test_keepalive_pings_while_connected():
    received = asyncio.Queue()
    async with local_relay(collecting_handler(received)) as url:
        async with SignalingClient(url, keepalive_interval=0.05):
            first = await asyncio.wait_for(received.get(), timeout=5)
            second = await asyncio.wait_for(received.get(), timeout=5)
    assert first == second == {"type": "ping"}


@pytest.mark.asyncio
async def test_close_stops_keepalive():
    received = asyncio.Queue()
    async with local_relay(collecting_handler(received)) as url:
        client = await SignalingClient(url, keepalive_interval=0.05).connect()
        task = client._keepalive_task
        await client.close()
        assert client._keepalive_task is None
        with pytest.raises(asyncio.CancelledError):
            await task
        assert task.cancelled()


@pytest.mark.asyncio
async def test_no_keepalive_task_when_disabled():
    async with local_relay(collecting_handler(asyncio.Queue())) as url:
        async with SignalingClient(url, keepalive_interval=None) as client:
            assert client._keepalive_task is None
