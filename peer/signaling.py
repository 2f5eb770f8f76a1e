import json
from typing import Any, AsyncIterator, Optional

import websockets

from constants import SIGNALING_URL
from logging_config import get_logger

logger = get_logger(__name__)


class SignalingClient:
    """Client side of the relay protocol: one JSON envelope per WebSocket text frame."""

    def __init__(self, url: str = SIGNALING_URL):
        self.url = url
        self.ws = None

    async def connect(self) -> None:
        logger.info(f"Connecting to signaling server at {self.url}")
        self.ws = await websockets.connect(self.url)
        logger.info("Connected to signaling server")

    async def close(self) -> None:
        if self.ws is not None:
            await self.ws.close()
            self.ws = None
            logger.info("Signaling connection closed")

    async def send(self, message: dict) -> None:
        if self.ws is None:
            logger.debug(f"Not connected, dropping {message.get('type')}")
            return
        try:
            await self.ws.send(json.dumps(message))
        except websockets.ConnectionClosed as e:
            logger.warning(f"Signaling connection closed while sending {message.get('type')}: {e}")

    async def create_room(self) -> None:
        await self.send({"type": "create-room"})

    async def join_room(self, code: str) -> None:
        await self.send({"type": "join-room", "code": code})

    async def send_offer(self, sdp: Any) -> None:
        await self.send({"type": "offer", "sdp": sdp})

    async def send_answer(self, sdp: Any) -> None:
        await self.send({"type": "answer", "sdp": sdp})

    async def send_ice_candidate(self, candidate: Any) -> None:
        await self.send({"type": "ice-candidate", "candidate": candidate})

    async def messages(self) -> AsyncIterator[dict]:
        """Yield relay envelopes until the connection closes. Unparseable frames are skipped."""
        if self.ws is None:
            return
        try:
            async for raw in self.ws:
                message = self._decode(raw)
                if message is not None:
                    yield message
        except websockets.ConnectionClosed as e:
            logger.info(f"Signaling connection lost: {e}")

    @staticmethod
    def _decode(raw: Any) -> Optional[dict]:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Ignoring non-JSON frame from signaling server")
            return None
        if not isinstance(message, dict) or "type" not in message:
            logger.warning("Ignoring frame without a type from signaling server")
            return None
        return message
