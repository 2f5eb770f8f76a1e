import asyncio
import random
import uuid
import weakref
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from starlette.websockets import WebSocketState

from constants import ROOM_CODE_ALPHABET, ROOM_CODE_LENGTH
from logging_config import get_logger

logger = get_logger(__name__)

_random = random.SystemRandom()


def generate_room_code(length: int = ROOM_CODE_LENGTH) -> str:
    return ''.join(_random.choices(ROOM_CODE_ALPHABET, k=length))


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


class RoomError(Exception):
    """Base class for join failures. The message is safe to show to clients."""

    message = "Room error"

    def __init__(self, code: str):
        super().__init__(self.message)
        self.code = code


class RoomNotFoundError(RoomError):
    message = "Room not found"


class RoomFullError(RoomError):
    message = "Room is full"


class RoomStoreBusyError(RoomError):
    """The shared room store could not be locked in time."""

    message = "Server busy, try again"


class Role(str, Enum):
    HOST = "host"
    GUEST = "guest"
    UNASSIGNED = "unassigned"


class ConnectionRef:
    """Handle to one relay connection. The transport layer owns it, the registry only points at it."""

    def __init__(self, websocket, connection_id: Optional[str] = None):
        self.id = connection_id or uuid.uuid4().hex
        self.websocket = websocket
        self.role = Role.UNASSIGNED
        self.closed = False

    @property
    def is_open(self) -> bool:
        if self.closed or self.websocket is None:
            return False
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, data: str) -> bool:
        """Write one frame without waiting for any acknowledgment. Returns False if it could not be sent."""
        if not self.is_open:
            return False
        try:
            await self.websocket.send_text(data)
            return True
        except Exception as e:
            logger.warning(f"Failed to send to connection {self.id}: {e}")
            return False

    def __repr__(self) -> str:
        return f"ConnectionRef(id={self.id!r}, role={self.role.value})"


@dataclass
class Room:
    code: str
    host: Optional[str] = None
    guest: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def is_empty(self) -> bool:
        return self.host is None and self.guest is None

    @property
    def is_full(self) -> bool:
        return self.guest is not None

    def other(self, connection_id: str) -> Optional[str]:
        if self.host == connection_id:
            return self.guest
        if self.guest == connection_id:
            return self.host
        return None


class MemoryRoomStore:
    """Room table kept in this process. Callers must hold the registry lock while mutating.

    `lock()` returns an async context manager; in one process the registry lock is enough.
    """

    name = "memory"

    def __init__(self):
        self._rooms: Dict[str, Room] = {}
        # connection id -> room code
        self._memberships: Dict[str, str] = {}

    def lock(self):
        return nullcontext()

    def exists(self, code: str) -> bool:
        return code in self._rooms

    def get_room(self, code: str) -> Optional[Room]:
        room = self._rooms.get(code)
        return replace(room) if room else None

    def save_room(self, room: Room) -> None:
        self._rooms[room.code] = replace(room)

    def refresh(self, room: Room) -> None:
        """Rooms in memory never expire."""

    def delete_room(self, code: str) -> None:
        self._rooms.pop(code, None)

    def room_of(self, connection_id: str) -> Optional[str]:
        return self._memberships.get(connection_id)

    def bind(self, connection_id: str, code: str) -> None:
        self._memberships[connection_id] = code

    def unbind(self, connection_id: str) -> None:
        self._memberships.pop(connection_id, None)

    def codes(self) -> List[str]:
        return list(self._rooms)


class RoomRegistry:
    """Maps room codes to their host and guest slots.

    Every mutation runs under one registry-wide lock (plus the store's own lock,
    which is a Redis lock when rooms are shared between instances), so no caller
    can observe a half-updated room. Reads go straight to the store.
    """

    def __init__(self, store=None, code_generator: Callable[[], str] = generate_room_code):
        self.store = store if store is not None else MemoryRoomStore()
        self._generate_code = code_generator
        self._connections: "weakref.WeakValueDictionary[str, ConnectionRef]" = weakref.WeakValueDictionary()
        self._lock = asyncio.Lock()

    def local(self, connection_id: Optional[str]) -> Optional[ConnectionRef]:
        """Return the connection with this id if it is handled by this process."""
        if connection_id is None:
            return None
        return self._connections.get(connection_id)

    async def create_room(self, connection: ConnectionRef) -> str:
        async with self._lock:
            async with self.store.lock():
                code = self._generate_code()
                while self.store.exists(code):
                    logger.debug(f"Room code {code} already in use, regenerating")
                    code = self._generate_code()
                self.store.save_room(Room(code=code, host=connection.id))
                self.store.bind(connection.id, code)
        self._connections[connection.id] = connection
        connection.role = Role.HOST
        logger.info(f"[Room {code}] Created by connection {connection.id}")
        return code

    async def join_room(self, code: str, connection: ConnectionRef) -> Room:
        """Put `connection` in the guest slot. Raises RoomNotFoundError or RoomFullError without touching any room."""
        code = normalize_code(code)
        async with self._lock:
            async with self.store.lock():
                room = self.store.get_room(code)
                if room is None:
                    logger.info(f"Join rejected: room {code!r} not found")
                    raise RoomNotFoundError(code)
                if room.guest is not None:
                    logger.info(f"Join rejected: room {code} is full")
                    raise RoomFullError(code)
                room.guest = connection.id
                self.store.save_room(room)
                self.store.bind(connection.id, code)
        self._connections[connection.id] = connection
        connection.role = Role.GUEST
        logger.info(f"[Room {code}] Guest {connection.id} joined")
        return room

    async def leave(self, connection: ConnectionRef) -> Optional[str]:
        """Vacate the connection's slot and return the id of whoever is still in the room.

        Deletes the room once both slots are empty. A connection that is in no
        room is a no-op.
        """
        remaining = None
        async with self._lock:
            async with self.store.lock():
                code = self.store.room_of(connection.id)
                if code is None:
                    return None
                self.store.unbind(connection.id)
                room = self.store.get_room(code)
                if room is None:
                    logger.warning(f"[Room {code}] Expired before connection {connection.id} left")
                else:
                    if room.host == connection.id:
                        room.host = None
                        logger.info(f"[Room {code}] Host disconnected")
                    elif room.guest == connection.id:
                        room.guest = None
                        logger.info(f"[Room {code}] Guest disconnected")
                    remaining = room.host or room.guest
                    if room.is_empty:
                        self.store.delete_room(code)
                        logger.info(f"[Room {code}] Deleted")
                    else:
                        self.store.save_room(room)
        connection.role = Role.UNASSIGNED
        self._connections.pop(connection.id, None)
        return remaining

    def touch(self, connection: ConnectionRef) -> None:
        """Keep the connection's room from expiring while it is in use."""
        code = self.store.room_of(connection.id)
        room = self.store.get_room(code) if code else None
        if room is not None:
            self.store.refresh(room)

    def room_of(self, connection: ConnectionRef) -> Optional[str]:
        return self.store.room_of(connection.id)

    def peer_id_of(self, connection: ConnectionRef) -> Optional[str]:
        code = self.store.room_of(connection.id)
        if code is None:
            return None
        room = self.store.get_room(code)
        return room.other(connection.id) if room else None

    def peer_of(self, connection: ConnectionRef) -> Optional[ConnectionRef]:
        return self.local(self.peer_id_of(connection))

    def get_room(self, code: str) -> Optional[Room]:
        return self.store.get_room(normalize_code(code))

    def codes(self) -> List[str]:
        return self.store.codes()

    def __len__(self) -> int:
        return len(self.store.codes())
