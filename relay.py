import asyncio
from typing import Optional

import redis
from fastapi import WebSocket
from pydantic import BaseModel, ValidationError

from logging_config import get_logger
from registry import ConnectionRef, RoomError, RoomRegistry
from schemas.signaling import (
    INVALID_MESSAGE_FORMAT,
    CreateRoomMessage,
    ErrorMessage,
    JoinRoomMessage,
    PeerJoinedMessage,
    PeerLeftMessage,
    RoomCreatedMessage,
    RoomJoinedMessage,
    inbound_message_adapter,
)

logger = get_logger(__name__)


class SignalingRelay:
    """Routes signaling envelopes between the two occupants of a room.

    Only the `type` tag (and the code of a join) is ever read; `sdp` and
    `candidate` payloads are forwarded as the exact text the sender wrote.

    `bus` is optional. When set (see backend.RedisBackend) envelopes for a peer
    connected to another relay instance are published on that peer's channel
    instead of being dropped.
    """

    def __init__(self, registry: RoomRegistry, bus=None):
        self.registry = registry
        self.bus = bus

    async def serve(self, websocket: WebSocket) -> None:
        """Run one client connection from accept to close."""
        await websocket.accept()
        connection = ConnectionRef(websocket)
        logger.info(f"New WebSocket connection {connection.id}")
        message_count = 0
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info(f"WebSocket disconnected normally for connection {connection.id}")
                    break
                message_count += 1
                logger.debug(f"Received message #{message_count} from connection {connection.id}")
                await self.handle(connection, message.get("text"))
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection.id}: {e}", exc_info=True)
            try:
                await websocket.close()
            except Exception as close_error:
                logger.debug(f"Error closing WebSocket: {close_error}")
        finally:
            await self.disconnect(connection)

    async def handle(self, connection: ConnectionRef, raw: Optional[str]) -> None:
        """Validate one inbound frame and act on it. `raw` is None for binary frames."""
        if raw is None:
            logger.debug(f"Rejected binary frame from connection {connection.id}")
            await self._send(connection, ErrorMessage(message=INVALID_MESSAGE_FORMAT))
            return

        try:
            message = inbound_message_adapter.validate_json(raw)
        except ValidationError as e:
            # The client only ever sees the generic message
            logger.debug(f"Rejected envelope from connection {connection.id}: {e.error_count()} validation errors")
            await self._send(connection, ErrorMessage(message=INVALID_MESSAGE_FORMAT))
            return

        if not isinstance(message, (CreateRoomMessage, JoinRoomMessage)):
            await self._forward(connection, message.type, raw)
            return
        try:
            if isinstance(message, CreateRoomMessage):
                await self._create_room(connection)
            else:
                await self._join_room(connection, message.code)
        except RoomError as e:
            await self._send(connection, ErrorMessage(message=e.message))

    async def disconnect(self, connection: ConnectionRef) -> None:
        connection.closed = True
        try:
            await self._leave_current_room(connection)
        except RoomError as e:
            logger.error(f"Could not release the room of connection {connection.id}: {e}")
        logger.info(f"Connection {connection.id} closed")

    async def deliver_local(self, connection_id: str, data: str) -> bool:
        """Send `data` to a connection held by this process, if it is still open."""
        peer = self.registry.local(connection_id)
        if peer is None or not peer.is_open:
            logger.debug(f"Dropping envelope for connection {connection_id}: not open here")
            return False
        return await peer.send_text(data)

    async def listen(self) -> None:
        """Background task delivering envelopes that other instances published for our connections."""
        logger.info("Starting Redis pub/sub listener for relayed envelopes")
        pubsub = None
        loop = asyncio.get_running_loop()
        try:
            pubsub = self.bus.subscribe_connections()
            while True:
                try:
                    # Blocking call, run it off the event loop
                    message = await loop.run_in_executor(
                        None, lambda: pubsub.get_message(timeout=1.0, ignore_subscribe_messages=True)
                    )
                except redis.RedisError as e:
                    logger.error(f"Error reading from Redis pub/sub: {e}", exc_info=True)
                    await asyncio.sleep(1.0)
                    continue
                if message is None or message.get("type") != "pmessage":
                    continue
                connection_id = self.bus.connection_id_from_channel(message["channel"])
                await self.deliver_local(connection_id, message["data"])
        except asyncio.CancelledError:
            logger.info("Redis listener task cancelled")
            raise
        finally:
            if pubsub is not None:
                try:
                    pubsub.close()
                except redis.RedisError as e:
                    logger.error(f"Error closing pub/sub: {e}")

    async def _create_room(self, connection: ConnectionRef) -> None:
        await self._leave_current_room(connection)
        code = await self.registry.create_room(connection)
        await self._send(connection, RoomCreatedMessage(code=code))

    async def _join_room(self, connection: ConnectionRef, code: str) -> None:
        await self._leave_current_room(connection)
        room = await self.registry.join_room(code, connection)
        await self._send(connection, RoomJoinedMessage(code=room.code))
        # This is what makes the host start its offer
        if room.host is not None:
            await self._deliver(room.host, PeerJoinedMessage().model_dump_json())

    async def _forward(self, connection: ConnectionRef, message_type: str, raw: str) -> None:
        peer_id = self.registry.peer_id_of(connection)
        if peer_id is None:
            logger.debug(f"Dropping {message_type} from connection {connection.id}: no peer")
            return
        self.registry.touch(connection)
        if await self._deliver(peer_id, raw):
            logger.debug(f"Relayed {message_type} from {connection.id} to {peer_id}")

    async def _leave_current_room(self, connection: ConnectionRef) -> None:
        peer_id = await self.registry.leave(connection)
        if peer_id is not None:
            await self._deliver(peer_id, PeerLeftMessage().model_dump_json())

    async def _deliver(self, connection_id: str, data: str) -> bool:
        if self.registry.local(connection_id) is not None or self.bus is None:
            return await self.deliver_local(connection_id, data)
        return self.bus.publish(connection_id, data) > 0

    async def _send(self, connection: ConnectionRef, message: BaseModel) -> None:
        await connection.send_text(message.model_dump_json())
