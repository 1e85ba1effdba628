"""
aiortc implementation of the peer connection and data channel interfaces.

Descriptions and candidates cross the relay in the same JSON shape browsers
use: ``{"type", "sdp"}`` and ``{"candidate", "sdpMid", "sdpMLineIndex"}``.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from .negotiation import Description, PeerConnection
from .transfer import DataChannel, Frame

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "fileTransfer"
DELIVERY_POLL_INTERVAL = 0.05


def rtc_configuration(ice_servers: List[Dict[str, Any]]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[
        RTCIceServer(urls=s["urls"], username=s.get("username"), credential=s.get("credential"))
        for s in ice_servers
    ])


def description_to_json(description: Optional[RTCSessionDescription]) -> Optional[Description]:
    if description is None:
        return None
    return {"type": description.type, "sdp": description.sdp}


def description_from_json(data: Description) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=data["sdp"], type=data["type"])


def candidate_from_json(data: Any):
    """Build an aiortc candidate from its browser JSON form; None for end-of-candidates"""
    if isinstance(data, str):
        data = {"candidate": data}
    line = (data or {}).get("candidate") or ""
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


class AiortcDataChannel(DataChannel):
    def __init__(self, channel, on_message: Optional[Callable[[Frame], None]] = None):
        self.channel = channel
        self._on_message = on_message
        self._pending: List[Frame] = []
        self.on_buffered_amount_low = None
        self.opened = asyncio.Event()
        self.closed = asyncio.Event()
        if channel.readyState == "open":
            self.opened.set()

        @channel.on("open")
        def _on_open():
            logger.info("📂 DataChannel open")
            self.opened.set()

        @channel.on("close")
        def _on_close():
            logger.info("📁 DataChannel closed")
            self.closed.set()
            # wake a sender waiting for drain so it sees the closed state
            self._notify_low()

        @channel.on("bufferedamountlow")
        def _on_low():
            self._notify_low()

        @channel.on("message")
        def _on_message(message):
            if self._on_message:
                self._on_message(message)
            else:
                self._pending.append(message)

    @property
    def on_message(self) -> Optional[Callable[[Frame], None]]:
        return self._on_message

    @on_message.setter
    def on_message(self, callback: Optional[Callable[[Frame], None]]):
        """Set the message handler, replaying frames that arrived before it"""
        self._on_message = callback
        while callback and self._pending:
            callback(self._pending.pop(0))

    def _notify_low(self):
        if self.on_buffered_amount_low:
            self.on_buffered_amount_low()

    @property
    def ready_state(self) -> str:
        return self.channel.readyState

    @property
    def buffered_amount(self) -> int:
        return self.channel.bufferedAmount

    @property
    def buffered_amount_low_threshold(self) -> int:
        return self.channel.bufferedAmountLowThreshold

    @buffered_amount_low_threshold.setter
    def buffered_amount_low_threshold(self, value: int):
        self.channel.bufferedAmountLowThreshold = value

    def send(self, data: Frame):
        if isinstance(data, (bytearray, memoryview)):
            data = bytes(data)
        self.channel.send(data)

    def close(self):
        self.channel.close()


class AiortcPeerConnection(PeerConnection):
    """Wraps ``aiortc.RTCPeerConnection``.

    aiortc gathers all of its candidates before ``set_local_description``
    returns and puts them in the SDP, so ``on_ice_candidate`` is never called
    from this side; remote candidates trickled by a browser are still applied.
    """

    def __init__(self, ice_servers: List[Dict[str, Any]]):
        self.pc = RTCPeerConnection(configuration=rtc_configuration(ice_servers))
        self.on_ice_candidate = None
        self.on_connection_state_change = None
        self._incoming: asyncio.Future = asyncio.get_running_loop().create_future()

        @self.pc.on("connectionstatechange")
        def _on_state():
            logger.info(f"Connection state: {self.pc.connectionState}")
            if self.on_connection_state_change:
                self.on_connection_state_change(self.pc.connectionState)

        @self.pc.on("datachannel")
        def _on_datachannel(channel):
            logger.info(f"Data channel received: {channel.label}")
            if not self._incoming.done():
                self._incoming.set_result(AiortcDataChannel(channel))

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    @property
    def local_description(self) -> Optional[Description]:
        return description_to_json(self.pc.localDescription)

    async def create_offer(self) -> Description:
        return description_to_json(await self.pc.createOffer())

    async def create_answer(self) -> Description:
        return description_to_json(await self.pc.createAnswer())

    async def set_local_description(self, description: Description):
        await self.pc.setLocalDescription(description_from_json(description))

    async def set_remote_description(self, description: Description):
        await self.pc.setRemoteDescription(description_from_json(description))

    async def add_ice_candidate(self, candidate: Any):
        parsed = candidate_from_json(candidate)
        if parsed is not None:
            await self.pc.addIceCandidate(parsed)

    def create_data_channel(self, label: str = DATA_CHANNEL_LABEL) -> AiortcDataChannel:
        return AiortcDataChannel(self.pc.createDataChannel(label))

    async def accept_data_channel(self, on_message: Optional[Callable[[Frame], None]] = None) -> AiortcDataChannel:
        """Wait for the remote side to open a data channel"""
        channel = await self._incoming
        channel.on_message = on_message
        return channel

    def _undelivered(self) -> int:
        sctp = self.pc.sctp
        if sctp is None or sctp.state != "connected":
            return 0
        queues = ("_data_channel_queue", "_outbound_queue", "_sent_queue")
        return sum(len(getattr(sctp, name, ())) for name in queues)

    async def wait_for_delivery(self):
        """Wait until the remote side has acknowledged everything sent.

        Closing the connection aborts the SCTP association and drops whatever
        is still queued or unacknowledged, so senders call this before closing.
        Returns early if the transport goes away.
        """
        while self._undelivered():
            await asyncio.sleep(DELIVERY_POLL_INTERVAL)
        logger.debug("All data channel messages acknowledged")

    async def close(self):
        await self.pc.close()
