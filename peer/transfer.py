"""Chunked payload transfer over an ordered, reliable data channel.

A payload of S bytes travels as one JSON control frame

    {"type": "file-header", "chunks": ceil(S / CHUNK_SIZE), "size": S}

followed by that many binary frames of at most CHUNK_SIZE bytes, in order.
Frames carry no sequence numbers or checksums: the channel must preserve order
and never drop a frame. Any other text frame is a chat message.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Literal, Optional, Protocol, Union

from pydantic import BaseModel, Field, ValidationError

from constants import BUFFER_POLL_INTERVAL, CHUNK_SIZE, MAX_BUFFERED_AMOUNT
from logging_config import get_logger

logger = get_logger(__name__)


class DataChannel(Protocol):
    """The slice of aiortc's RTCDataChannel the transfer code relies on."""

    @property
    def readyState(self) -> str: ...

    @property
    def bufferedAmount(self) -> int: ...

    def send(self, data: Union[str, bytes]) -> None: ...


class FileHeader(BaseModel):
    type: Literal["file-header"] = "file-header"
    chunks: int = Field(ge=0)
    size: int = Field(ge=0)


class InvalidHeaderError(ValueError):
    """A file-header frame whose fields are out of range or disagree with each other."""


def chunk_count(size: int, chunk_size: int = CHUNK_SIZE) -> int:
    return -(-size // chunk_size)


def iter_chunks(payload: bytes, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    for start in range(0, len(payload), chunk_size):
        yield payload[start:start + chunk_size]


def parse_header(text: str, chunk_size: int = CHUNK_SIZE) -> Optional[FileHeader]:
    """Return the header if `text` is a file-header control frame, otherwise None.

    Raises InvalidHeaderError for a frame tagged file-header that fails
    validation, including one whose chunk count does not match its size.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or data.get("type") != "file-header":
        return None
    try:
        header = FileHeader.model_validate(data)
    except ValidationError as e:
        raise InvalidHeaderError(f"malformed file-header: {e.error_count()} validation errors") from e
    if header.chunks != chunk_count(header.size, chunk_size):
        raise InvalidHeaderError(
            f"file-header declares {header.chunks} chunks for {header.size} bytes, expected {chunk_count(header.size, chunk_size)}"
        )
    return header


class ChunkedSender:
    """Sends payloads as header + binary frames, pausing while the channel's buffer is above the high-water mark."""

    def __init__(
        self,
        channel: DataChannel,
        chunk_size: int = CHUNK_SIZE,
        high_water_mark: int = MAX_BUFFERED_AMOUNT,
        poll_interval: float = BUFFER_POLL_INTERVAL,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.channel = channel
        self.chunk_size = chunk_size
        self.high_water_mark = high_water_mark
        self.poll_interval = poll_interval
        # Frames of two payloads must never interleave
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self.channel.readyState == "open"

    def send_text(self, text: str) -> bool:
        if not self.is_open:
            return False
        self.channel.send(text)
        return True

    async def send(self, payload: bytes) -> bool:
        """Send `payload` in chunks. Returns False if the channel closed before every frame went out.

        Concurrent calls are queued and go out one whole payload after another.
        """
        async with self._lock:
            return await self._send(payload)

    async def _send(self, payload: bytes) -> bool:
        if not self.is_open:
            logger.debug("Channel not open, payload not sent")
            return False

        header = FileHeader(chunks=chunk_count(len(payload), self.chunk_size), size=len(payload))
        self.channel.send(header.model_dump_json())
        logger.debug(f"Sending {header.size} bytes in {header.chunks} chunks")

        for index, chunk in enumerate(iter_chunks(payload, self.chunk_size)):
            if not await self._wait_for_buffer():
                logger.info(f"Channel closed mid-transfer, {header.chunks - index} of {header.chunks} chunks unsent")
                return False
            self.channel.send(chunk)
        return True

    async def _wait_for_buffer(self) -> bool:
        # bufferedAmount is a point-in-time value, so poll it
        while self.channel.bufferedAmount > self.high_water_mark:
            await asyncio.sleep(self.poll_interval)
            if not self.is_open:
                return False
        return self.is_open


@dataclass
class TransferSession:
    expected_chunks: int
    declared_size: int
    chunks: List[bytes] = field(default_factory=list)
    received: int = 0

    def add(self, chunk: bytes) -> None:
        self.chunks.append(chunk)
        self.received += len(chunk)

    @property
    def complete(self) -> bool:
        return len(self.chunks) == self.expected_chunks

    @property
    def overflowed(self) -> bool:
        return self.received > self.declared_size

    def assemble(self) -> bytes:
        return b"".join(self.chunks)


class ChunkedReceiver:
    """Reassembles header + binary frame sequences. At most one inbound transfer is in progress."""

    def __init__(
        self,
        on_payload: Callable[[bytes], None],
        on_text: Optional[Callable[[str], None]] = None,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.on_payload = on_payload
        self.on_text = on_text
        self.chunk_size = chunk_size
        self.session: Optional[TransferSession] = None

    def feed(self, frame: Union[str, bytes]) -> None:
        if isinstance(frame, str):
            try:
                header = parse_header(frame, self.chunk_size)
            except InvalidHeaderError as e:
                # Chunks that follow a rejected header have nowhere to go
                logger.warning(f"Rejected {e}, dropping the transfer")
                self.reset()
                return
            if header is None:
                if self.on_text is not None:
                    self.on_text(frame)
                return
            self._start(header)
            return

        if self.session is None:
            logger.debug(f"Dropping {len(frame)}-byte frame with no transfer in progress")
            return
        self.session.add(bytes(frame))
        if self.session.overflowed:
            logger.warning(
                f"Transfer exceeded its declared {self.session.declared_size} bytes, dropping it"
            )
            self.reset()
            return
        if self.session.complete:
            self._finish()

    def reset(self) -> None:
        """Discard any incomplete transfer. Partial data is never delivered."""
        if self.session is not None:
            logger.debug(
                f"Discarding incomplete transfer ({len(self.session.chunks)}/{self.session.expected_chunks} chunks)"
            )
        self.session = None

    def _start(self, header: FileHeader) -> None:
        self.reset()
        self.session = TransferSession(expected_chunks=header.chunks, declared_size=header.size)
        logger.debug(f"Receiving {header.size} bytes in {header.chunks} chunks")
        # Nothing will follow a zero-chunk header
        if self.session.complete:
            self._finish()

    def _finish(self) -> None:
        session, self.session = self.session, None
        if session.received != session.declared_size:
            logger.warning(f"Reassembled {session.received} bytes but header declared {session.declared_size}, dropping it")
            return
        self.on_payload(session.assemble())
