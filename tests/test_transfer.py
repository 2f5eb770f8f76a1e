import asyncio
import json
import os

import pytest

from conftest import FakeChannel, settle
from constants import CHUNK_SIZE, MAX_BUFFERED_AMOUNT
from peer.transfer import (
    ChunkedReceiver,
    ChunkedSender,
    FileHeader,
    InvalidHeaderError,
    chunk_count,
    parse_header,
)


class DrainingChannel:
    """Channel whose buffer fills on send and drains by `drain` bytes every time it is polled."""

    def __init__(self, drain: int):
        self.readyState = "open"
        self.drain = drain
        self.sent = []
        self.buffered_at_send = []
        self.polls = 0
        self._buffered = 0
        self._last_read = 0

    @property
    def bufferedAmount(self) -> int:
        self.polls += 1
        value = self._buffered
        self._last_read = value
        self._buffered = max(0, self._buffered - self.drain)
        return value

    def send(self, data) -> None:
        if isinstance(data, bytes):
            self.buffered_at_send.append(self._last_read)
            self._buffered += len(data)
        self.sent.append(data)


class StalledChannel:
    """Channel stuck above the high-water mark that closes after a few polls."""

    def __init__(self, close_after: int):
        self.readyState = "open"
        self.close_after = close_after
        self.sent = []
        self.polls = 0

    @property
    def bufferedAmount(self) -> int:
        self.polls += 1
        if self.polls >= self.close_after:
            self.readyState = "closed"
        return MAX_BUFFERED_AMOUNT * 4

    def send(self, data) -> None:
        self.sent.append(data)


def collecting_receiver():
    payloads, texts = [], []
    return ChunkedReceiver(payloads.append, texts.append), payloads, texts


def replay(frames, receiver):
    for frame in frames:
        receiver.feed(frame)


def test_chunk_count():
    assert chunk_count(0) == 0
    assert chunk_count(1) == 1
    assert chunk_count(CHUNK_SIZE) == 1
    assert chunk_count(CHUNK_SIZE + 1) == 2
    assert chunk_count(40000) == 3
    assert chunk_count(2**64 + 1, 2) == 2**63 + 1


@pytest.mark.asyncio
async def test_forty_thousand_bytes_go_out_as_header_and_three_chunks():
    channel = FakeChannel()
    payload = os.urandom(40000)

    assert await ChunkedSender(channel).send(payload)

    header, *chunks = channel.sent
    assert json.loads(header) == {"type": "file-header", "chunks": 3, "size": 40000}
    assert [len(chunk) for chunk in chunks] == [16384, 16384, 7232]

    receiver, payloads, texts = collecting_receiver()
    replay(channel.sent, receiver)
    assert payloads == [payload]
    assert texts == []


@pytest.mark.asyncio
@pytest.mark.parametrize("size", [0, 1, CHUNK_SIZE - 1, CHUNK_SIZE, 2 * CHUNK_SIZE, 40000])
async def test_payload_arrives_byte_for_byte(size):
    channel = FakeChannel()
    payload = os.urandom(size)

    await ChunkedSender(channel).send(payload)

    assert len(channel.sent) == 1 + chunk_count(size)
    assert all(len(frame) <= CHUNK_SIZE for frame in channel.sent[1:])
    receiver, payloads, _ = collecting_receiver()
    replay(channel.sent, receiver)
    assert payloads == [payload]
    assert receiver.session is None


@pytest.mark.asyncio
async def test_sender_never_sends_while_buffer_is_above_high_water_mark():
    channel = DrainingChannel(drain=4096)
    payload = os.urandom(200_000)

    assert await ChunkedSender(channel, poll_interval=0).send(payload)

    assert len(channel.buffered_at_send) == chunk_count(len(payload))
    assert max(channel.buffered_at_send) <= MAX_BUFFERED_AMOUNT
    # it had to wait at least once
    assert channel.polls > len(channel.buffered_at_send)

    receiver, payloads, _ = collecting_receiver()
    replay(channel.sent, receiver)
    assert payloads == [payload]


@pytest.mark.asyncio
async def test_sender_aborts_when_channel_closes_while_waiting():
    channel = StalledChannel(close_after=3)

    assert await ChunkedSender(channel, poll_interval=0).send(os.urandom(40000)) is False

    assert len(channel.sent) == 1
    assert parse_header(channel.sent[0]).chunks == 3


@pytest.mark.asyncio
async def test_send_on_closed_channel_sends_nothing():
    channel = FakeChannel()
    channel.close()
    sender = ChunkedSender(channel)

    assert await sender.send(b"data") is False
    assert sender.send_text("hi") is False
    assert channel.sent == []


def test_sender_rejects_non_positive_chunk_size():
    with pytest.raises(ValueError):
        ChunkedSender(FakeChannel(), chunk_size=0)


def test_new_header_discards_incomplete_transfer():
    receiver, payloads, _ = collecting_receiver()
    receiver.feed(FileHeader(chunks=3, size=40000).model_dump_json())
    receiver.feed(b"a" * CHUNK_SIZE)

    receiver.feed(FileHeader(chunks=1, size=3).model_dump_json())
    receiver.feed(b"xyz")

    assert payloads == [b"xyz"]


def test_reset_drops_partial_data():
    receiver, payloads, _ = collecting_receiver()
    receiver.feed(FileHeader(chunks=2, size=20000).model_dump_json())
    receiver.feed(b"a" * CHUNK_SIZE)

    receiver.reset()
    receiver.feed(b"b" * 3616)

    assert payloads == []
    assert receiver.session is None


def test_binary_frame_without_header_is_dropped():
    receiver, payloads, texts = collecting_receiver()

    receiver.feed(b"stray")

    assert payloads == [] and texts == []


@pytest.mark.parametrize(
    "text",
    [
        "hello there",
        '{"type": "chat", "body": "hi"}',
        '["file-header"]',
    ],
)
def test_non_header_text_is_a_chat_message(text):
    receiver, payloads, texts = collecting_receiver()

    receiver.feed(text)

    assert texts == [text]
    assert payloads == []
    assert receiver.session is None


def test_chat_text_between_chunks_does_not_disturb_transfer():
    receiver, payloads, texts = collecting_receiver()
    receiver.feed(FileHeader(chunks=2, size=CHUNK_SIZE + 2).model_dump_json())
    receiver.feed(b"a" * CHUNK_SIZE)
    receiver.feed("still here")
    receiver.feed(b"de")

    assert payloads == [b"a" * CHUNK_SIZE + b"de"]
    assert texts == ["still here"]


@pytest.mark.asyncio
async def test_concurrent_sends_do_not_interleave():
    channel = FakeChannel()
    channel.bufferedAmount = 100_000
    sender = ChunkedSender(channel, poll_interval=0)
    first = asyncio.create_task(sender.send(b"A" * 40000))
    second = asyncio.create_task(sender.send(b"B" * 40000))
    await settle()

    # only the first header can go out while the buffer is full
    assert channel.sent == [FileHeader(chunks=3, size=40000).model_dump_json()]

    channel.bufferedAmount = 0
    assert await asyncio.gather(first, second) == [True, True]

    receiver, payloads, _ = collecting_receiver()
    replay(channel.sent, receiver)
    assert payloads == [b"A" * 40000, b"B" * 40000]


@pytest.mark.parametrize(
    "header",
    [
        {"type": "file-header", "chunks": -1, "size": 10},
        {"type": "file-header", "chunks": 1, "size": -5},
        {"type": "file-header", "chunks": 2, "size": 5},
        {"type": "file-header", "chunks": 0, "size": 5},
        {"type": "file-header", "chunks": "many", "size": 5},
        {"type": "file-header"},
    ],
)
def test_inconsistent_headers_are_rejected(header):
    with pytest.raises(InvalidHeaderError):
        parse_header(json.dumps(header))


def test_chunks_after_negative_header_are_not_buffered():
    receiver, payloads, texts = collecting_receiver()

    receiver.feed('{"type": "file-header", "chunks": -1, "size": 10}')
    for _ in range(5):
        receiver.feed(b"x" * CHUNK_SIZE)

    assert receiver.session is None
    assert payloads == [] and texts == []


def test_rejected_header_drops_transfer_in_progress():
    receiver, payloads, _ = collecting_receiver()
    receiver.feed(FileHeader(chunks=2, size=20000).model_dump_json())
    receiver.feed(b"a" * CHUNK_SIZE)

    receiver.feed('{"type": "file-header", "chunks": 2, "size": 5}')
    receiver.feed(b"b" * CHUNK_SIZE)
    receiver.feed(b"c" * CHUNK_SIZE)

    assert payloads == []
    assert receiver.session is None


def test_frames_larger_than_declared_size_are_dropped():
    receiver, payloads, _ = collecting_receiver()
    receiver.feed(FileHeader(chunks=1, size=5).model_dump_json())

    receiver.feed(b"x" * CHUNK_SIZE)

    assert payloads == []
    assert receiver.session is None


def test_short_transfer_is_not_delivered():
    receiver, payloads, _ = collecting_receiver()
    receiver.feed(FileHeader(chunks=2, size=CHUNK_SIZE + 2).model_dump_json())

    receiver.feed(b"a" * CHUNK_SIZE)
    receiver.feed(b"b")

    assert payloads == []
    assert receiver.session is None
