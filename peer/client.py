import asyncio
from typing import Any, Callable, Optional

from logging_config import get_logger
from peer.negotiation import EventType, NegotiationState, NegotiationStateMachine, PeerRole
from peer.signaling import SignalingClient
from peer.transfer import ChunkedReceiver, ChunkedSender
from peer.transport import AiortcTransport

logger = get_logger(__name__)


class PeerClient:
    """Runs one side of a paired session: relay events in, peer session and transfers out.

    The host's session is built when its room is created (and again when a new
    guest joins after the previous one left); the guest's is built on the first
    offer. `transport_factory` is called with `on_message=` and must return an
    object with the AiortcTransport surface.
    """

    def __init__(
        self,
        signaling: SignalingClient,
        transport_factory: Callable[..., Any] = AiortcTransport,
        on_text: Optional[Callable[[str], None]] = None,
        on_payload: Optional[Callable[[bytes], None]] = None,
        on_state_change: Optional[Callable[[NegotiationState], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.signaling = signaling
        self.transport_factory = transport_factory
        self.on_text = on_text
        self.on_payload = on_payload
        self.on_state_change = on_state_change
        self.on_error = on_error
        self.role: Optional[PeerRole] = None
        self.room_code: Optional[str] = None
        self.transport = None
        self.machine: Optional[NegotiationStateMachine] = None
        self.receiver = ChunkedReceiver(on_payload=self._deliver_payload, on_text=self._deliver_text)
        self._loop_task: Optional[asyncio.Task] = None
        self._chunked_sender: Optional[ChunkedSender] = None

    @property
    def state(self) -> NegotiationState:
        return self.machine.state if self.machine is not None else NegotiationState.IDLE

    async def create_room(self) -> None:
        await self.signaling.create_room()

    async def join_room(self, code: str) -> None:
        await self.signaling.join_room(code)

    async def run(self) -> None:
        """Handle relay envelopes until the signaling connection closes."""
        try:
            async for message in self.signaling.messages():
                await self.handle_signal(message)
        finally:
            await self.teardown()

    async def handle_signal(self, message: dict) -> None:
        kind = message.get("type")
        if kind == "room-created":
            self.room_code = message.get("code")
            self.role = PeerRole.HOST
            logger.info(f"Room {self.room_code} created, waiting for a peer")
            self._start_session()
        elif kind == "room-joined":
            self.room_code = message.get("code")
            self.role = PeerRole.GUEST
            logger.info(f"Joined room {self.room_code}, waiting for the host's offer")
        elif kind == "peer-joined":
            if not self._has_live_session():
                self._start_session()
            self.machine.post(EventType.PEER_JOINED)
        elif kind == "offer":
            if not self._has_live_session():
                self._start_session()
            self.machine.post(EventType.REMOTE_OFFER, message.get("sdp"))
        elif kind == "answer":
            if self._has_live_session():
                self.machine.post(EventType.REMOTE_ANSWER, message.get("sdp"))
        elif kind == "ice-candidate":
            if self._has_live_session():
                self.machine.post(EventType.REMOTE_CANDIDATE, message.get("candidate"))
            else:
                logger.debug("Dropping ICE candidate with no session")
        elif kind == "peer-left":
            logger.info("Peer left the room")
            await self.teardown()
        elif kind == "error":
            logger.warning(f"Relay error: {message.get('message')}")
            if self.on_error is not None:
                self.on_error(message.get("message", ""))
        else:
            logger.debug(f"Ignoring relay message of type {kind!r}")

    def send_text(self, text: str) -> bool:
        sender = self._sender()
        return sender.send_text(text) if sender is not None else False

    async def send_bytes(self, payload: bytes) -> bool:
        sender = self._sender()
        if sender is None:
            return False
        return await sender.send(payload)

    def add_track(self, track) -> None:
        """Attach a local media track, renegotiating if the session is already up."""
        if self.transport is None:
            raise RuntimeError("No active peer session")
        self.transport.add_track(track)
        if self.state is NegotiationState.CONNECTED:
            self.machine.post(EventType.RENEGOTIATE)

    def replace_track(self, old_track, new_track) -> bool:
        """Switch a sent track (e.g. another camera) in place, keeping the negotiated session."""
        if self.transport is None:
            raise RuntimeError("No active peer session")
        return self.transport.replace_track(old_track, new_track)

    async def teardown(self) -> None:
        """Close the current peer session, if any. The signaling connection stays up."""
        machine, task = self.machine, self._loop_task
        self.machine = None
        self.transport = None
        self._loop_task = None
        self._chunked_sender = None
        self.receiver.reset()
        if machine is None:
            return
        await machine.close()
        if task is not None:
            await task

    async def close(self) -> None:
        await self.teardown()
        await self.signaling.close()

    def _has_live_session(self) -> bool:
        return self.machine is not None and not self.machine.closed

    def _start_session(self) -> None:
        if self.machine is not None and not self.machine.closed:
            return
        self.transport = self.transport_factory(on_message=self.receiver.feed)
        self.machine = NegotiationStateMachine(
            self.role or PeerRole.GUEST,
            self.transport,
            self.signaling.send,
            on_state_change=self._state_changed,
        )
        self.transport.bind(self.machine.post)
        self.receiver.reset()
        self._loop_task = asyncio.create_task(self.machine.run())
        logger.debug(f"Started {self.machine.session.role.value} session")

    def _sender(self) -> Optional[ChunkedSender]:
        """One sender per data channel, so overlapping transfers queue behind each other."""
        if self.transport is None or self.transport.channel is None:
            return None
        if self._chunked_sender is None or self._chunked_sender.channel is not self.transport.channel:
            self._chunked_sender = ChunkedSender(self.transport.channel)
        return self._chunked_sender

    def _state_changed(self, state: NegotiationState) -> None:
        if state in (NegotiationState.DISCONNECTED, NegotiationState.FAILED):
            self.receiver.reset()
        if self.on_state_change is not None:
            self.on_state_change(state)

    def _deliver_text(self, text: str) -> None:
        if self.on_text is not None:
            self.on_text(text)

    def _deliver_payload(self, payload: bytes) -> None:
        if self.on_payload is not None:
            self.on_payload(payload)
