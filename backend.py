import asyncio
import redis
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional
from redis.exceptions import LockError
from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, ROOM_TTL_SECONDS
from redis_keys import REDIS_ROOM_KEY, REDIS_CONN_ROOM_KEY, REDIS_CONN_CHANNEL, REDIS_CONN_CHANNEL_PATTERN, REDIS_REGISTRY_LOCK
from registry import Room, RoomStoreBusyError
from logging_config import get_logger

logger = get_logger(__name__)


def connect_redis() -> redis.Redis:
    client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
    try:
        # Test connection
        client.ping()
        logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
    except redis.RedisError as e:
        logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
        raise
    return client


class RedisBackend:
    """Room store and connection bus shared by every relay instance.

    Implements the same store interface as registry.MemoryRoomStore, and adds
    publish/subscribe on per-connection channels so an envelope can reach a
    peer whose WebSocket lives in another process.
    """

    name = "redis"

    def __init__(self, redis_client: Optional[redis.Redis] = None, pubsub_client: Optional[redis.Redis] = None, ttl: int = ROOM_TTL_SECONDS, lock_timeout: float = 5, lock_wait: float = 5):
        self.redis_client = redis_client if redis_client is not None else connect_redis()
        # Separate connection for pub/sub (required by Redis)
        self.pubsub_client = pubsub_client if pubsub_client is not None else connect_redis()
        self.ttl = ttl
        self.lock_timeout = lock_timeout
        self.lock_wait = lock_wait
        logger.info(f"Initialized RedisBackend with room TTL {ttl} seconds")

    @asynccontextmanager
    async def lock(self) -> AsyncIterator[None]:
        """Hold the registry lock shared by every relay instance.

        Raises RoomStoreBusyError when it cannot be acquired within `lock_wait` seconds.
        """
        # Acquired in a worker thread and released here, so the token must not be thread-local
        lock = self.redis_client.lock(
            REDIS_REGISTRY_LOCK, timeout=self.lock_timeout, blocking_timeout=self.lock_wait, thread_local=False
        )
        loop = asyncio.get_running_loop()
        # Lock.acquire polls with time.sleep, keep it off the event loop
        try:
            acquired = await loop.run_in_executor(None, lock.acquire)
        except redis.RedisError as e:
            logger.error(f"Could not acquire {REDIS_REGISTRY_LOCK}: {e}", exc_info=True)
            raise RoomStoreBusyError("") from e
        if not acquired:
            logger.error(f"Timed out after {self.lock_wait}s waiting for {REDIS_REGISTRY_LOCK}")
            raise RoomStoreBusyError("")
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError as e:
                logger.warning(f"Registry lock expired before release: {e}")

    def exists(self, code: str) -> bool:
        return bool(self.redis_client.exists(REDIS_ROOM_KEY.format(code=code)))

    def get_room(self, code: str) -> Optional[Room]:
        key = REDIS_ROOM_KEY.format(code=code)
        room_data = self.redis_client.hgetall(key)
        if not room_data:
            logger.debug(f"Room {code} not found in Redis")
            return None
        return Room(
            code=code,
            host=room_data.get("host") or None,
            guest=room_data.get("guest") or None,
            created_at=room_data.get("created_at", ""),
        )

    def save_room(self, room: Room) -> None:
        key = REDIS_ROOM_KEY.format(code=room.code)
        mapping = {"code": room.code, "created_at": room.created_at}
        # Redis hashes can't hold None, an empty slot is a missing field
        for slot in ("host", "guest"):
            value = getattr(room, slot)
            if value is None:
                self.redis_client.hdel(key, slot)
            else:
                mapping[slot] = value
        self.redis_client.hset(key, mapping=mapping)
        self.refresh(room)
        logger.debug(f"Saved room {room.code}: host={room.host}, guest={room.guest}")

    def refresh(self, room: Room) -> None:
        """Push back the expiry of a room and of its occupants' bindings together."""
        if not self.ttl:
            return
        self.redis_client.expire(REDIS_ROOM_KEY.format(code=room.code), self.ttl)
        for connection_id in (room.host, room.guest):
            if connection_id is not None:
                self.redis_client.expire(REDIS_CONN_ROOM_KEY.format(connection_id=connection_id), self.ttl)

    def delete_room(self, code: str) -> None:
        deleted = self.redis_client.delete(REDIS_ROOM_KEY.format(code=code))
        logger.debug(f"Room {code} deleted: meta_key={deleted}")

    def room_of(self, connection_id: str) -> Optional[str]:
        return self.redis_client.get(REDIS_CONN_ROOM_KEY.format(connection_id=connection_id))

    def bind(self, connection_id: str, code: str) -> None:
        self.redis_client.set(REDIS_CONN_ROOM_KEY.format(connection_id=connection_id), code, ex=self.ttl or None)

    def unbind(self, connection_id: str) -> None:
        self.redis_client.delete(REDIS_CONN_ROOM_KEY.format(connection_id=connection_id))

    def codes(self) -> List[str]:
        prefix = REDIS_ROOM_KEY.format(code="")
        return [key[len(prefix):] for key in self.redis_client.scan_iter(match=REDIS_ROOM_KEY.format(code="*"))]

    def get_connection_channel_name(self, connection_id: str) -> str:
        return REDIS_CONN_CHANNEL.format(connection_id=connection_id)

    @staticmethod
    def connection_id_from_channel(channel: str) -> str:
        return channel.rsplit(":", 1)[-1]

    def publish(self, connection_id: str, data: str) -> int:
        """Publish a raw envelope to the instance holding `connection_id`. Returns the subscriber count."""
        channel = self.get_connection_channel_name(connection_id)
        subscribers = self.redis_client.publish(channel, data)
        logger.debug(f"Published envelope to {channel}, {subscribers} subscribers")
        return subscribers

    def subscribe_connections(self):
        """Create a pubsub subscriber for every connection channel."""
        pubsub = self.pubsub_client.pubsub()
        pubsub.psubscribe(REDIS_CONN_CHANNEL_PATTERN)
        logger.debug(f"Subscribed to Redis pattern {REDIS_CONN_CHANNEL_PATTERN}")
        return pubsub
