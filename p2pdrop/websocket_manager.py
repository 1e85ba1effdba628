from datetime import datetime
from typing import Dict, List, Optional, Union
import json
import logging
import uuid

from pydantic import BaseModel, ConfigDict, Field

from .identity import is_valid_room_id, is_valid_token
from .models import ErrorCode, RoomStats, RoomsOverview

logger = logging.getLogger(__name__)


class Connection:
    """A signaling connection as seen by the relay.

    Wraps anything with an async ``send_text`` (a Starlette ``WebSocket`` in
    production) and remembers the one room it was admitted to.
    """

    def __init__(self, websocket, socket_id: Optional[str] = None):
        self.websocket = websocket
        self.socket_id = socket_id or str(uuid.uuid4())
        self.room_id: Optional[str] = None
        self.open = True

    async def send_text(self, text: str):
        await self.websocket.send_text(text)

    async def send_json(self, message: dict):
        await self.send_text(json.dumps(message))

    async def send_error(self, code: ErrorCode):
        await self.send_json({"type": "error", "error": code.value})

    def __repr__(self):
        return f"<Connection {self.socket_id} room={self.room_id}>"


class Room(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    room_id: str
    token: str
    members: List[Connection] = []
    created_at: datetime = Field(default_factory=datetime.now)


class JoinResult(BaseModel):
    room_id: str
    clients: int
    created: bool = False


class RoomRegistry:
    """In-memory rooms keyed by room id.

    ``join`` and ``leave`` never await, so on a single event loop each call
    runs to completion before any other handler touches the table.
    """

    def __init__(self, max_members: Optional[int] = 2):
        self.rooms: Dict[str, Room] = {}
        self.max_members = max_members

    def join(self, room_id: str, token: str, connection: Connection) -> Union[JoinResult, ErrorCode]:
        """Admit a connection to a room, creating the room on first join"""
        if connection.room_id is not None:
            logger.warning(f"⚠️ {connection.socket_id} already joined room {connection.room_id}")
            return ErrorCode.ALREADY_JOINED
        if not is_valid_room_id(room_id):
            return ErrorCode.INVALID_ROOM
        if not is_valid_token(token):
            return ErrorCode.INVALID_TOKEN

        created = False
        room = self.rooms.get(room_id)
        if room is None:
            # First joiner sets the token
            room = Room(room_id=room_id, token=token)
            self.rooms[room_id] = room
            created = True
            logger.info(f"🏠 Created room {room_id}")
        elif room.token != token:
            logger.warning(f"🔒 Token mismatch for room {room_id} from {connection.socket_id}")
            return ErrorCode.TOKEN_MISMATCH
        elif self.max_members is not None and len(room.members) >= self.max_members:
            logger.warning(f"🚫 Room {room_id} is full, rejecting {connection.socket_id}")
            return ErrorCode.ROOM_FULL

        room.members.append(connection)
        connection.room_id = room_id
        logger.info(f"🚪 {connection.socket_id} joined room {room_id}. Clients: {len(room.members)}")
        return JoinResult(room_id=room_id, clients=len(room.members), created=created)

    def leave(self, connection: Connection) -> Optional[Room]:
        """Drop a connection from its room; returns the room if it still exists"""
        connection.open = False
        room = self.rooms.get(connection.room_id) if connection.room_id else None
        if room is None or connection not in room.members:
            logger.info(f"❌ {connection.socket_id} disconnected (not in a room)")
            return None

        room.members = [m for m in room.members if m is not connection]
        logger.info(f"❌ {connection.socket_id} left room {room.room_id}. Remaining: {len(room.members)}")
        if not room.members:
            del self.rooms[room.room_id]
            logger.info(f"🗑️ Deleted empty room {room.room_id}")
            return None
        return room

    def room_of(self, connection: Connection) -> Optional[Room]:
        """The room the connection is currently an open member of"""
        room = self.rooms.get(connection.room_id) if connection.room_id else None
        if room is None or not connection.open or connection not in room.members:
            return None
        return room

    def peers_of(self, connection: Connection) -> List[Connection]:
        room = self.room_of(connection)
        if room is None:
            return []
        return [m for m in room.members if m is not connection and m.open]

    async def relay(self, connection: Connection, raw: str) -> int:
        """Forward a raw signaling frame to the other members of the sender's room.

        Returns the number of members the frame was handed to.
        """
        if self.room_of(connection) is None:
            logger.warning(f"⚠️ Signaling message from {connection.socket_id} which is not in a room")
            await connection.send_error(ErrorCode.NOT_IN_ROOM)
            return 0

        delivered = 0
        failed = []
        for peer in self.peers_of(connection):
            try:
                await peer.send_text(raw)
                delivered += 1
            except Exception as e:
                logger.error(f"❌ Error relaying to {peer.socket_id}: {e}")
                failed.append(peer)

        await self.evict(failed)
        logger.debug(f"📡 Relayed frame from {connection.socket_id} to {delivered} peer(s)")
        return delivered

    async def broadcast_room_info(self, room: Room):
        """Tell every member how many clients the room holds"""
        message = {"type": "room-info", "clients": len(room.members)}
        failed = []
        for member in list(room.members):
            if not member.open:
                continue
            try:
                await member.send_json(message)
            except Exception as e:
                logger.error(f"❌ Error sending room-info to {member.socket_id}: {e}")
                failed.append(member)
        await self.evict(failed)

    async def evict(self, connections: List[Connection]):
        """Remove dead connections and update whoever is left in their rooms"""
        remaining = {}
        for connection in connections:
            room = self.leave(connection)
            if room is not None:
                remaining[room.room_id] = room
        for room_id, room in remaining.items():
            if self.rooms.get(room_id) is room:
                await self.broadcast_room_info(room)

    def get(self, room_id: str) -> Optional[Room]:
        return self.rooms.get(room_id)

    def stats(self) -> RoomsOverview:
        rooms = [
            RoomStats(room_id=room.room_id, clients=len(room.members), created_at=room.created_at)
            for room in self.rooms.values()
        ]
        return RoomsOverview(
            total_rooms=len(rooms),
            total_connections=sum(r.clients for r in rooms),
            rooms=rooms,
        )
