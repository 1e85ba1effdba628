import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import websockets

from .config import Settings
from .models import InvalidMessage, JoinMessage, SignalMessage, dump_signal, parse_signal

logger = logging.getLogger(__name__)


class SignalingClient:
    """Websocket connection to the signaling relay.

    Sends a ``ping`` every ``keepalive_interval`` seconds while connected so
    the relay and intermediaries keep the connection alive.
    """

    def __init__(self, url: str, keepalive_interval: Optional[float] = 25.0):
        self.url = url
        self.keepalive_interval = keepalive_interval
        self.ws = None
        self._keepalive_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "SignalingClient":
        return cls(settings.signaling_url, settings.keepalive_interval)

    async def connect(self):
        logger.info(f"🔌 Connecting to signaling server {self.url}")
        self.ws = await websockets.connect(self.url)
        if self.keepalive_interval:
            self._keepalive_task = asyncio.create_task(self._keepalive())
        return self

    async def send(self, message: Dict[str, Any]):
        await self.ws.send(json.dumps(message))

    async def join(self, room: str, token: str, jwt: Optional[str] = None):
        await self.ws.send(dump_signal(JoinMessage(room=room, token=token, jwt=jwt or None)))
        logger.info(f"🚪 Join requested for room {room}")

    async def messages(self) -> AsyncIterator[SignalMessage]:
        """Yield decoded messages until the relay closes the connection"""
        try:
            async for raw in self.ws:
                if isinstance(raw, bytes):
                    logger.warning("⚠️ Ignoring binary frame on signaling channel")
                    continue
                try:
                    yield parse_signal(raw)
                except InvalidMessage as e:
                    logger.warning(f"⚠️ Ignoring malformed signaling frame: {e}")
        except websockets.ConnectionClosed as e:
            logger.info(f"🔌 Signaling connection closed: {e}")

    async def _keepalive(self):
        try:
            while True:
                await asyncio.sleep(self.keepalive_interval)
                await self.send({"type": "ping"})
        except websockets.ConnectionClosed:
            logger.debug("Keepalive stopped, connection closed")

    async def close(self):
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None
        if self.ws is not None:
            await self.ws.close()
            logger.info("🔌 Disconnected from signaling server")

    async def __aenter__(self):
        return await self.connect()

    async def __aexit__(self, *exc):
        await self.close()
