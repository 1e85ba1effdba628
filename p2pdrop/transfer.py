"""
Chunked file transfer over an established direct channel.

Each file is a text metadata frame (``meta:`` + JSON ``{name, type, size}``)
followed by raw binary chunks whose concatenation is the file. Chunks carry no
sequence number or checksum: ordering and integrity come from the channel,
which must be reliable and ordered. Moving this protocol to a transport that
can drop or reorder messages requires adding both.

Sending is paced by the channel's outbound buffer: above ``HIGH_WATERMARK``
the sender suspends until the buffer drains to ``LOW_WATERMARK``.
"""
import asyncio
import io
import logging
import mimetypes
import os
from enum import Enum
from typing import BinaryIO, Callable, Iterable, List, Optional, Union

from pydantic import BaseModel, ValidationError

from .config import CHUNK_SIZE, DEFAULT_MIME_TYPE, HIGH_WATERMARK, LOW_WATERMARK, META_PREFIX
from .models import FileMetadata, ReceivedFile

logger = logging.getLogger(__name__)

Frame = Union[str, bytes, bytearray, memoryview]
ProgressCallback = Callable[[str, int, int], None]


class TransferError(Exception):
    """Sending a file over the direct channel failed."""


class FrameError(ValueError):
    """A frame on the direct channel is not part of the transfer protocol."""


class DataChannel:
    """What the transfer engine needs from a direct channel.

    ``on_buffered_amount_low`` is invoked by the channel once
    ``buffered_amount`` falls to ``buffered_amount_low_threshold`` or below.
    """

    ready_state: str = "connecting"
    buffered_amount_low_threshold: int = 0
    on_buffered_amount_low: Optional[Callable[[], None]] = None

    @property
    def buffered_amount(self) -> int:
        raise NotImplementedError

    def send(self, data: Frame):
        raise NotImplementedError


def decode_frame(data: Frame) -> Union[FileMetadata, bytes]:
    """Split an incoming frame into metadata or a binary fragment"""
    if isinstance(data, str):
        if not data.startswith(META_PREFIX):
            raise FrameError(f"unexpected text frame: {data[:40]!r}")
        try:
            return FileMetadata.model_validate_json(data[len(META_PREFIX):])
        except ValidationError as e:
            raise FrameError(f"malformed metadata frame: {e}") from e
    return bytes(data)


class TransferSession(BaseModel):
    name: str
    mime_type: str
    size: int
    transferred: int = 0
    fragments: List[bytes] = []

    @classmethod
    def from_metadata(cls, meta: FileMetadata) -> "TransferSession":
        return cls(name=meta.name, mime_type=meta.type, size=meta.size)

    @property
    def complete(self) -> bool:
        return self.transferred >= self.size

    def assemble(self) -> ReceivedFile:
        return ReceivedFile(name=self.name, mime_type=self.mime_type, data=b"".join(self.fragments))


class FileSender:
    def __init__(
        self,
        channel: DataChannel,
        chunk_size: int = CHUNK_SIZE,
        high_watermark: int = HIGH_WATERMARK,
        low_watermark: int = LOW_WATERMARK,
        on_progress: Optional[ProgressCallback] = None,
    ):
        if low_watermark > high_watermark:
            raise ValueError("low watermark must not exceed high watermark")
        self.channel = channel
        self.chunk_size = chunk_size
        self.high_watermark = high_watermark
        self.low_watermark = low_watermark
        self.on_progress = on_progress

    async def wait_for_drain(self):
        """Suspend while the channel holds more than the high watermark"""
        if self.channel.buffered_amount <= self.high_watermark:
            return
        logger.debug(f"⏸️ Buffer at {self.channel.buffered_amount} bytes, waiting for drain")
        await self._wait_until_at_most(self.low_watermark)

    async def flush(self):
        """Wait until everything queued on the channel has been handed to the transport"""
        await self._wait_until_at_most(0)

    async def _wait_until_at_most(self, threshold: int):
        if self.channel.buffered_amount <= threshold:
            return
        drained = asyncio.Event()
        self.channel.buffered_amount_low_threshold = threshold
        self.channel.on_buffered_amount_low = drained.set
        try:
            while self.channel.buffered_amount > threshold:
                if self.channel.ready_state != "open":
                    raise TransferError("channel closed while waiting for buffer drain")
                drained.clear()
                await drained.wait()
        finally:
            self.channel.on_buffered_amount_low = None

    def _send(self, data: Frame):
        if self.channel.ready_state != "open":
            raise TransferError(f"channel is {self.channel.ready_state}, not open")
        try:
            self.channel.send(data)
        except Exception as e:
            raise TransferError(f"channel send failed: {e}") from e

    async def send_stream(self, stream: BinaryIO, name: str, size: int, mime_type: str = DEFAULT_MIME_TYPE) -> TransferSession:
        """Send metadata then ``size`` bytes read from ``stream``"""
        session = TransferSession(name=name, mime_type=mime_type or DEFAULT_MIME_TYPE, size=size)
        self._send(FileMetadata(name=name, type=session.mime_type, size=size).to_frame())
        logger.info(f"📤 Sending {name} ({size} bytes)")

        while session.transferred < size:
            chunk = stream.read(min(self.chunk_size, size - session.transferred))
            if not chunk:
                raise TransferError(f"{name} ended after {session.transferred} of {size} bytes")
            await self.wait_for_drain()
            self._send(chunk)
            session.transferred += len(chunk)
            if self.on_progress:
                self.on_progress(name, session.transferred, size)

        logger.info(f"✅ Sent {name}: {session.transferred}/{size} bytes")
        return session

    async def send_bytes(self, name: str, data: bytes, mime_type: str = DEFAULT_MIME_TYPE) -> TransferSession:
        return await self.send_stream(io.BytesIO(data), name, len(data), mime_type)

    async def send_path(self, path: str) -> TransferSession:
        name = os.path.basename(path)
        mime_type = mimetypes.guess_type(name)[0] or DEFAULT_MIME_TYPE
        with open(path, "rb") as f:
            return await self.send_stream(f, name, os.fstat(f.fileno()).st_size, mime_type)

    async def send_files(self, paths: Iterable[str]) -> List[TransferSession]:
        """Send files one after another; the first failure aborts the rest"""
        sessions = []
        for path in paths:
            try:
                sessions.append(await self.send_path(path))
            except OSError as e:
                raise TransferError(f"cannot read {path}: {e}") from e
        return sessions


class ReceiverState(str, Enum):
    IDLE = "idle"
    RECEIVING = "receiving"
    COMPLETE = "complete"


class FileReceiver:
    """Reassembles files from the frames arriving on a direct channel.

    Files are strictly sequential: a metadata frame that arrives while a file
    is still incomplete abandons that file and reports a warning.
    """

    def __init__(
        self,
        on_file: Optional[Callable[[ReceivedFile], None]] = None,
        on_warning: Optional[Callable[[str], None]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.on_file = on_file
        self.on_warning = on_warning
        self.on_progress = on_progress
        self.state = ReceiverState.IDLE
        self.session: Optional[TransferSession] = None

    def _warn(self, text: str):
        logger.warning(f"⚠️ {text}")
        if self.on_warning:
            self.on_warning(text)

    def handle_message(self, data: Frame) -> Optional[ReceivedFile]:
        """Feed one channel frame; returns the file it completed, if any"""
        try:
            frame = decode_frame(data)
        except FrameError as e:
            self._warn(f"Dropping frame: {e}")
            return None

        if isinstance(frame, FileMetadata):
            return self._start(frame)
        return self._append(frame)

    def _start(self, meta: FileMetadata) -> Optional[ReceivedFile]:
        if self.state is ReceiverState.RECEIVING:
            self._warn(
                f"Abandoning {self.session.name} after {self.session.transferred}/{self.session.size} bytes, "
                f"{meta.name} started"
            )
        self.session = TransferSession.from_metadata(meta)
        self.state = ReceiverState.RECEIVING
        logger.info(f"📥 Receiving {meta.name} ({meta.size} bytes)")
        if self.session.complete:
            return self._finish()
        return None

    def _append(self, fragment: bytes) -> Optional[ReceivedFile]:
        if self.state is not ReceiverState.RECEIVING:
            self._warn(f"Discarding {len(fragment)} byte fragment with no file in progress")
            return None

        session = self.session
        remaining = session.size - session.transferred
        if len(fragment) > remaining:
            self._warn(f"{session.name} overran its declared size, discarding {len(fragment) - remaining} bytes")
            fragment = fragment[:remaining]
        session.fragments.append(fragment)
        session.transferred += len(fragment)
        logger.debug(f"Received {session.transferred}/{session.size} bytes of {session.name}")
        if self.on_progress:
            self.on_progress(session.name, session.transferred, session.size)

        if session.complete:
            return self._finish()
        return None

    def _finish(self) -> ReceivedFile:
        received = self.session.assemble()
        self.session = None
        self.state = ReceiverState.COMPLETE
        logger.info(f"✅ Received {received.name} ({received.size} bytes)")
        try:
            if self.on_file:
                self.on_file(received)
        finally:
            self.state = ReceiverState.IDLE
        return received
