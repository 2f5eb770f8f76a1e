"""Shared fixtures and fakes.

- FakeWebSocket: stands in for a Starlette WebSocket inside the relay
- FakeRedis: the handful of redis-py calls RedisBackend makes, kept in dicts
- FakeTransport / FakeChannel: peer transport and data channel for the client side
- FakeSignaling: relay connection for PeerClient
"""

import asyncio
import fnmatch
import json
import threading
from typing import Any, List

import pytest
from starlette.websockets import WebSocketState

from registry import ConnectionRef, RoomRegistry
from relay import SignalingRelay


class FakeWebSocket:
    def __init__(self):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent: List[str] = []

    async def send_text(self, data: str) -> None:
        self.sent.append(data)

    def drop(self) -> None:
        self.client_state = WebSocketState.DISCONNECTED

    def messages(self) -> List[dict]:
        return [json.loads(data) for data in self.sent]


class FakeLock:
    def __init__(self, owner):
        self.owner = owner

    def acquire(self):
        self.owner.lock_threads.append(threading.get_ident())
        return self.owner.lock_available

    def release(self):
        self.owner.lock_releases += 1


class FakeRedis:
    def __init__(self):
        self.hashes = {}
        self.strings = {}
        self.ttls = {}
        self.published = []
        self.lock_available = True
        self.lock_threads = []
        self.lock_releases = 0

    def exists(self, key):
        return int(key in self.hashes or key in self.strings)

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update(mapping)
        return len(mapping)

    def hdel(self, key, *fields):
        removed = 0
        for name in fields:
            if self.hashes.get(key, {}).pop(name, None) is not None:
                removed += 1
        return removed

    def expire(self, key, ttl):
        if not self.exists(key):
            return False
        self.ttls[key] = ttl
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += int(self.hashes.pop(key, None) is not None)
            removed += int(self.strings.pop(key, None) is not None)
        return removed

    def get(self, key):
        return self.strings.get(key)

    def set(self, key, value, ex=None):
        self.strings[key] = value
        if ex:
            self.ttls[key] = ex
        return True

    def scan_iter(self, match="*"):
        return [key for key in list(self.hashes) if fnmatch.fnmatch(key, match)]

    def lock(self, name, timeout=None, blocking_timeout=None, thread_local=True):
        return FakeLock(self)

    def publish(self, channel, data):
        self.published.append((channel, data))
        return 1


class FakeChannel:
    """Data channel whose buffer never fills unless a test sets bufferedAmount."""

    def __init__(self):
        self.readyState = "open"
        self.bufferedAmount = 0
        self.sent: List[Any] = []

    def send(self, data) -> None:
        self.sent.append(data)

    def close(self) -> None:
        self.readyState = "closed"


class FakeTransport:
    def __init__(self, on_message=None):
        self.on_message = on_message
        self.calls: List[Any] = []
        self.applied_candidates: List[Any] = []
        self.channel = None
        self.post = None
        self.tracks = []
        self.closed = False
        self.reject_remote_description = False
        self._offers = 0
        self._answers = 0

    def bind(self, post) -> None:
        self.post = post

    @property
    def has_data_channel(self) -> bool:
        return self.channel is not None

    def create_data_channel(self) -> None:
        self.calls.append("create_data_channel")
        self.channel = FakeChannel()

    def add_track(self, track) -> None:
        self.tracks.append(track)

    def replace_track(self, old_track, new_track) -> bool:
        if old_track not in self.tracks:
            return False
        self.tracks[self.tracks.index(old_track)] = new_track
        return True

    async def create_offer(self) -> dict:
        self._offers += 1
        self.calls.append("create_offer")
        return {"type": "offer", "sdp": f"offer-{self._offers}"}

    async def create_answer(self) -> dict:
        self._answers += 1
        self.calls.append("create_answer")
        return {"type": "answer", "sdp": f"answer-{self._answers}"}

    async def set_remote_description(self, description) -> None:
        if self.reject_remote_description:
            raise ValueError("bad description")
        self.calls.append(("set_remote_description", description))

    async def add_ice_candidate(self, candidate) -> None:
        self.calls.append(("add_ice_candidate", candidate))
        self.applied_candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True
        if self.channel is not None:
            self.channel.close()


class FakeSignaling:
    def __init__(self, inbound=()):
        self.inbound = list(inbound)
        self.sent: List[dict] = []
        self.closed = False

    async def send(self, message: dict) -> None:
        self.sent.append(message)

    async def create_room(self) -> None:
        await self.send({"type": "create-room"})

    async def join_room(self, code: str) -> None:
        await self.send({"type": "join-room", "code": code})

    async def messages(self):
        for message in self.inbound:
            yield message

    async def close(self) -> None:
        self.closed = True

    def sent_types(self) -> List[str]:
        return [message["type"] for message in self.sent]


async def settle(rounds: int = 20) -> None:
    """Give queued tasks a chance to run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def relay(registry):
    return SignalingRelay(registry)


@pytest.fixture
def connect():
    """Factory for connections backed by FakeWebSocket. Holds strong refs for the registry's weak map."""
    held = []

    def _connect() -> ConnectionRef:
        connection = ConnectionRef(FakeWebSocket())
        held.append(connection)
        return connection

    return _connect


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def signals():
    sent = []

    async def send_signal(message: dict) -> None:
        sent.append(message)

    send_signal.sent = sent
    return send_signal
