import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .config import DEFAULT_MIME_TYPE, META_PREFIX


class ErrorCode(str, Enum):
    INVALID_ROOM = "invalid_room"
    INVALID_TOKEN = "invalid_token"
    TOKEN_MISMATCH = "token_mismatch"
    NOT_IN_ROOM = "not_in_room"
    ROOM_FULL = "room_full"
    ALREADY_JOINED = "already_joined"
    INVALID_MESSAGE = "invalid_message"
    UNKNOWN_TYPE = "unknown_type"


# Rejections after which the server closes the signaling connection
FATAL_ERRORS = frozenset({
    ErrorCode.INVALID_ROOM,
    ErrorCode.INVALID_TOKEN,
    ErrorCode.TOKEN_MISMATCH,
    ErrorCode.ROOM_FULL,
})


class JoinMessage(BaseModel):
    type: Literal["join"] = "join"
    room: str = ""
    token: str = ""
    jwt: Optional[str] = None

    @field_validator("room", "token", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> str:
        return str(value or "").lower()


class RoomInfoMessage(BaseModel):
    type: Literal["room-info"] = "room-info"
    clients: int


class OfferMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["offer"] = "offer"
    sdp: Any


class AnswerMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["answer"] = "answer"
    sdp: Any


class CandidateMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["candidate"] = "candidate"
    candidate: Any = None


class PingMessage(BaseModel):
    type: Literal["ping"] = "ping"


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    error: ErrorCode


SignalMessage = Annotated[
    Union[
        JoinMessage,
        RoomInfoMessage,
        OfferMessage,
        AnswerMessage,
        CandidateMessage,
        PingMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_signal_adapter = TypeAdapter(SignalMessage)

SIGNAL_TYPES = frozenset({"join", "room-info", "offer", "answer", "candidate", "ping", "error"})
RELAYED_TYPES = frozenset({"offer", "answer", "candidate"})


class InvalidMessage(ValueError):
    """A signaling frame that is not a well-formed message."""


class UnknownMessageType(InvalidMessage):
    """A signaling frame whose ``type`` tag is not part of the protocol."""

    def __init__(self, tag: Any):
        super().__init__(f"unknown message type: {tag!r}")
        self.tag = tag


def parse_signal(raw: str) -> SignalMessage:
    """Decode one signaling text frame into its message model"""
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise InvalidMessage(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidMessage("signaling frame must be a JSON object")
    tag = data.get("type")
    if tag not in SIGNAL_TYPES:
        raise UnknownMessageType(tag)
    try:
        return _signal_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidMessage(str(e)) from e


def dump_signal(message: BaseModel) -> str:
    return message.model_dump_json(exclude_none=True)


class IceServer(BaseModel):
    model_config = ConfigDict(extra="allow")

    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None


class CredentialsRequest(BaseModel):
    room: Optional[str] = None


class FileMetadata(BaseModel):
    """Metadata frame sent ahead of a file's chunks on the direct channel"""

    name: str
    type: str = DEFAULT_MIME_TYPE
    size: int = Field(ge=0)

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, value: Any) -> str:
        return value or DEFAULT_MIME_TYPE

    def to_frame(self) -> str:
        return META_PREFIX + self.model_dump_json()


class ReceivedFile(BaseModel):
    name: str
    mime_type: str
    data: bytes
    received_at: datetime = Field(default_factory=datetime.now)

    @property
    def size(self) -> int:
        return len(self.data)


class RoomStats(BaseModel):
    room_id: str
    clients: int
    created_at: datetime


class RoomsOverview(BaseModel):
    total_rooms: int
    total_connections: int
    rooms: List[RoomStats] = []
