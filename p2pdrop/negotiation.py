"""
Client-side offer/answer/candidate sequence.

The driver never looks inside descriptions or candidates; it only decides
when to call into the ``PeerConnection`` capability and what to hand to the
signaling relay.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from .models import (
    AnswerMessage,
    CandidateMessage,
    ErrorMessage,
    OfferMessage,
    RoomInfoMessage,
    SignalMessage,
)

logger = logging.getLogger(__name__)

Description = Dict[str, Any]
SendSignal = Callable[[Dict[str, Any]], Awaitable[None]]

TERMINAL_STATES = frozenset({"failed", "disconnected", "closed"})


class NegotiationError(Exception):
    pass


class SignalingError(NegotiationError):
    """The relay rejected one of our messages."""

    def __init__(self, code: str):
        super().__init__(f"signaling error: {code}")
        self.code = code


class PeerConnection:
    """The direct-channel establishment capability the driver relies on.

    ``on_ice_candidate`` is awaited for every locally discovered candidate and
    ``on_connection_state_change`` is called with each new connection state.
    """

    connection_state: str = "new"
    on_ice_candidate: Optional[Callable[[Any], Awaitable[None]]] = None
    on_connection_state_change: Optional[Callable[[str], None]] = None

    @property
    def local_description(self) -> Optional[Description]:
        raise NotImplementedError

    async def create_offer(self) -> Description:
        raise NotImplementedError

    async def create_answer(self) -> Description:
        raise NotImplementedError

    async def set_local_description(self, description: Description):
        raise NotImplementedError

    async def set_remote_description(self, description: Description):
        raise NotImplementedError

    async def add_ice_candidate(self, candidate: Any):
        raise NotImplementedError


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class NegotiationDriver:
    def __init__(
        self,
        role: Role,
        peer: PeerConnection,
        send: SendSignal,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.role = Role(role)
        self.peer = peer
        self.send = send
        self.on_status = on_status
        self.status = "new"
        self.offer_sent = False
        self.remote_applied = False
        self.error: Optional[Exception] = None
        self._settled = asyncio.Event()

        peer.on_ice_candidate = self.on_local_candidate
        peer.on_connection_state_change = self.on_connection_state

    def _set_status(self, text: str):
        self.status = text
        logger.info(f"[{self.role.value}] {text}")
        if self.on_status:
            self.on_status(text)

    def _fail(self, error: Exception):
        self._set_status(f"Error: {error}")
        if not self._settled.is_set():
            self.error = error
            self._settled.set()

    @property
    def connected(self) -> bool:
        return self._settled.is_set() and self.error is None

    async def wait_connected(self):
        """Wait until the peer connection is up; raises on terminal failure"""
        await self._settled.wait()
        if self.error is not None:
            raise self.error

    async def send_offer(self):
        if self.offer_sent:
            return
        self.offer_sent = True
        try:
            offer = await self.peer.create_offer()
            await self.peer.set_local_description(offer)
            await self.send({"type": "offer", "sdp": self.peer.local_description})
        except Exception as e:
            logger.error(f"❌ Error creating/sending offer: {e}")
            self._fail(NegotiationError(f"offer failed: {e}"))
            raise self.error from e
        self._set_status("Offer sent, waiting for answer...")

    async def _answer(self, offer: Description):
        try:
            await self.peer.set_remote_description(offer)
            self.remote_applied = True
            answer = await self.peer.create_answer()
            await self.peer.set_local_description(answer)
            await self.send({"type": "answer", "sdp": self.peer.local_description})
        except Exception as e:
            logger.error(f"❌ Error answering offer: {e}")
            self._fail(NegotiationError(f"answer failed: {e}"))
            raise self.error from e
        self._set_status("Peer connected. Establishing secure channel...")

    async def _apply_answer(self, answer: Description):
        try:
            await self.peer.set_remote_description(answer)
        except Exception as e:
            logger.error(f"❌ Error applying answer: {e}")
            self._fail(NegotiationError(f"applying answer failed: {e}"))
            raise self.error from e
        self.remote_applied = True
        self._set_status("Answer received, connecting...")

    async def handle_signal(self, message: SignalMessage):
        """React to one message received from the relay"""
        if isinstance(message, RoomInfoMessage):
            if self.role is Role.INITIATOR and message.clients >= 2:
                await self.send_offer()
            elif message.clients < 2:
                self._set_status("Waiting for peer...")
        elif isinstance(message, OfferMessage):
            if self.role is not Role.RESPONDER:
                logger.warning("⚠️ Initiator ignoring unexpected offer")
                return
            await self._answer(message.sdp)
        elif isinstance(message, AnswerMessage):
            if self.role is not Role.INITIATOR:
                logger.warning("⚠️ Responder ignoring unexpected answer")
                return
            await self._apply_answer(message.sdp)
        elif isinstance(message, CandidateMessage):
            if message.candidate is None:
                return
            try:
                await self.peer.add_ice_candidate(message.candidate)
            except Exception as e:
                logger.warning(f"⚠️ Error adding ICE candidate: {e}")
        elif isinstance(message, ErrorMessage):
            self._fail(SignalingError(message.error.value))
        else:
            logger.warning(f"⚠️ Ignoring {message.type} message from relay")

    def on_signaling_closed(self):
        if not self._settled.is_set():
            self._fail(NegotiationError("signaling connection closed before the peer connected"))

    async def on_local_candidate(self, candidate: Any):
        if candidate is None:
            return
        await self.send({"type": "candidate", "candidate": candidate})

    def on_connection_state(self, state: str):
        if state == "connected":
            self._set_status("Connected to peer!")
            self._settled.set()
        elif state in TERMINAL_STATES:
            self._fail(NegotiationError(f"connection {state}"))
        else:
            self._set_status(f"Connection state: {state}")
