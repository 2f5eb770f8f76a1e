"""Per-session negotiation state machine.

The machine owns one PeerSession and turns events (signaling messages from the
relay, callbacks from the peer transport, local requests) into transport calls
and outgoing signaling envelopes. Events are queued and handled one at a time by
a single control loop, so a candidate that races ahead of its offer or answer is
still handled in a well-defined order.

    idle ──peer-joined / offer──▶ negotiating ──transport up + channel open──▶ connected
                                     │   ▲                                       │
                                     │   └──────── renegotiate / offer ◀─────────┘
                                     ▼
                      disconnected (closed)   failed (ICE/transport failure)

There is no timeout and no retry: a failed session is discarded and a new one
built from scratch.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, FrozenSet, Iterator, Optional, Protocol

from logging_config import get_logger

logger = get_logger(__name__)


class PeerRole(str, Enum):
    HOST = "host"
    GUEST = "guest"


class NegotiationState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class ChannelState(str, Enum):
    NONE = "none"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class EventType(str, Enum):
    PEER_JOINED = "peer-joined"
    REMOTE_OFFER = "remote-offer"
    REMOTE_ANSWER = "remote-answer"
    REMOTE_CANDIDATE = "remote-candidate"
    LOCAL_CANDIDATE = "local-candidate"
    CONNECTION_STATE = "connection-state"
    ICE_CONNECTION_STATE = "ice-connection-state"
    CHANNEL_OPEN = "channel-open"
    CHANNEL_CLOSE = "channel-close"
    RENEGOTIATE = "renegotiate"
    PEER_LEFT = "peer-left"
    CLOSE = "close"


@dataclass(frozen=True)
class Event:
    type: EventType
    payload: Any = None


TERMINAL_STATES = frozenset({NegotiationState.DISCONNECTED, NegotiationState.FAILED})

_TEARDOWN = frozenset({EventType.PEER_LEFT, EventType.CLOSE})
_IN_FLIGHT = frozenset({
    EventType.REMOTE_OFFER,
    EventType.REMOTE_ANSWER,
    EventType.REMOTE_CANDIDATE,
    EventType.LOCAL_CANDIDATE,
    EventType.CONNECTION_STATE,
    EventType.ICE_CONNECTION_STATE,
    EventType.CHANNEL_OPEN,
    EventType.CHANNEL_CLOSE,
})

# Events each state reacts to; anything else is logged and ignored.
ACCEPTED_EVENTS: Dict[NegotiationState, FrozenSet[EventType]] = {
    NegotiationState.IDLE: frozenset({
        EventType.PEER_JOINED,
        EventType.REMOTE_OFFER,
        EventType.REMOTE_CANDIDATE,
        EventType.LOCAL_CANDIDATE,
    }) | _TEARDOWN,
    NegotiationState.NEGOTIATING: _IN_FLIGHT | _TEARDOWN,
    NegotiationState.CONNECTED: _IN_FLIGHT | _TEARDOWN | {EventType.RENEGOTIATE},
    NegotiationState.DISCONNECTED: _TEARDOWN,
    NegotiationState.FAILED: _TEARDOWN,
}


class CandidateQueue:
    """FIFO of remote candidates that arrived before a remote description was set."""

    def __init__(self):
        self._items: Deque[Any] = deque()

    def push(self, candidate: Any) -> None:
        self._items.append(candidate)

    async def flush(self, apply: Callable[[Any], Awaitable[None]]) -> int:
        """Apply every queued candidate in arrival order, then leave the queue empty."""
        flushed = 0
        while self._items:
            candidate = self._items.popleft()
            try:
                await apply(candidate)
            except Exception as e:
                logger.warning(f"Dropping queued ICE candidate that could not be applied: {e}")
            flushed += 1
        return flushed

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._items)


@dataclass
class PeerSession:
    role: PeerRole
    state: NegotiationState = NegotiationState.IDLE
    remote_description_set: bool = False
    pending_candidates: CandidateQueue = field(default_factory=CandidateQueue)
    channel_state: ChannelState = ChannelState.NONE
    transport_connected: bool = False
    awaiting_answer: bool = False


class PeerTransport(Protocol):
    """What the machine needs from a peer connection. peer.transport.AiortcTransport is the real one."""

    @property
    def has_data_channel(self) -> bool: ...

    def create_data_channel(self) -> None: ...

    async def create_offer(self) -> dict: ...

    async def create_answer(self) -> dict: ...

    async def set_remote_description(self, description: dict) -> None: ...

    async def add_ice_candidate(self, candidate: Any) -> None: ...

    async def close(self) -> None: ...


SendSignal = Callable[[dict], Awaitable[None]]
StateListener = Callable[[NegotiationState], None]


class NegotiationStateMachine:
    def __init__(
        self,
        role: PeerRole,
        transport: PeerTransport,
        send_signal: SendSignal,
        on_state_change: Optional[StateListener] = None,
    ):
        self.session = PeerSession(role=PeerRole(role))
        self.transport = transport
        self.send_signal = send_signal
        self.on_state_change = on_state_change
        self._events: "asyncio.Queue[Event]" = asyncio.Queue()
        self._closed = False
        self._handlers: Dict[EventType, Callable[[Any], Awaitable[None]]] = {
            EventType.PEER_JOINED: self._on_peer_joined,
            EventType.REMOTE_OFFER: self._on_remote_offer,
            EventType.REMOTE_ANSWER: self._on_remote_answer,
            EventType.REMOTE_CANDIDATE: self._on_remote_candidate,
            EventType.LOCAL_CANDIDATE: self._on_local_candidate,
            EventType.CONNECTION_STATE: self._on_connection_state,
            EventType.ICE_CONNECTION_STATE: self._on_ice_connection_state,
            EventType.CHANNEL_OPEN: self._on_channel_open,
            EventType.CHANNEL_CLOSE: self._on_channel_close,
            EventType.RENEGOTIATE: self._on_renegotiate,
            EventType.PEER_LEFT: self._on_teardown,
            EventType.CLOSE: self._on_teardown,
        }

    @property
    def state(self) -> NegotiationState:
        return self.session.state

    @property
    def closed(self) -> bool:
        return self._closed

    def post(self, event_type: EventType, payload: Any = None) -> None:
        """Queue an event for the control loop. Safe to call from transport callbacks."""
        self._events.put_nowait(Event(event_type, payload))

    async def run(self) -> None:
        """Control loop: handle queued events one at a time until the session is torn down."""
        logger.debug(f"Negotiation loop started for {self.session.role.value}")
        while not self._closed:
            event = await self._events.get()
            await self.dispatch(event)
        logger.debug(f"Negotiation loop finished in state {self.state.value}")

    async def dispatch(self, event: Event) -> None:
        if event.type not in ACCEPTED_EVENTS[self.state]:
            logger.debug(f"Ignoring {event.type.value} in state {self.state.value}")
            return
        await self._handlers[event.type](event.payload)

    async def close(self) -> None:
        await self.dispatch(Event(EventType.CLOSE))

    # Descriptions

    async def _on_peer_joined(self, _payload: Any) -> None:
        if self.session.role is not PeerRole.HOST:
            logger.debug("Ignoring peer-joined on the guest side")
            return
        if not self.transport.has_data_channel:
            self.transport.create_data_channel()
            self.session.channel_state = ChannelState.CONNECTING
        await self._send_offer()

    async def _on_renegotiate(self, _payload: Any) -> None:
        logger.info("Renegotiating session")
        await self._send_offer()

    async def _send_offer(self) -> None:
        # Candidates for the new offer's generation must wait for its answer
        self.session.remote_description_set = False
        self.session.awaiting_answer = True
        self._set_state(NegotiationState.NEGOTIATING)
        try:
            offer = await self.transport.create_offer()
        except Exception as e:
            logger.error(f"Could not create offer: {e}", exc_info=True)
            self._set_state(NegotiationState.FAILED)
            return
        await self.send_signal({"type": "offer", "sdp": offer})

    async def _on_remote_offer(self, sdp: Any) -> None:
        self._set_state(NegotiationState.NEGOTIATING)
        if not await self._apply_remote_description(sdp):
            return
        try:
            answer = await self.transport.create_answer()
        except Exception as e:
            logger.error(f"Could not create answer: {e}", exc_info=True)
            self._set_state(NegotiationState.FAILED)
            return
        await self.send_signal({"type": "answer", "sdp": answer})
        self._check_connected()

    async def _on_remote_answer(self, sdp: Any) -> None:
        if not self.session.awaiting_answer:
            logger.warning("Ignoring answer with no offer outstanding")
            return
        self.session.awaiting_answer = False
        if await self._apply_remote_description(sdp):
            self._check_connected()

    async def _apply_remote_description(self, sdp: Any) -> bool:
        try:
            await self.transport.set_remote_description(sdp)
        except Exception as e:
            logger.error(f"Remote description rejected: {e}", exc_info=True)
            self._set_state(NegotiationState.FAILED)
            return False
        self.session.remote_description_set = True
        flushed = await self.session.pending_candidates.flush(self.transport.add_ice_candidate)
        if flushed:
            logger.debug(f"Applied {flushed} queued ICE candidates")
        return True

    # Candidates

    async def _on_remote_candidate(self, candidate: Any) -> None:
        if not self.session.remote_description_set:
            self.session.pending_candidates.push(candidate)
            logger.debug(f"Queued ICE candidate ({len(self.session.pending_candidates)} pending)")
            return
        try:
            await self.transport.add_ice_candidate(candidate)
        except Exception as e:
            logger.warning(f"Could not apply ICE candidate: {e}")

    async def _on_local_candidate(self, candidate: Any) -> None:
        await self.send_signal({"type": "ice-candidate", "candidate": candidate})

    # Transport events

    async def _on_connection_state(self, value: str) -> None:
        logger.debug(f"Connection state: {value}")
        if value == "connected":
            self.session.transport_connected = True
            self._check_connected()
        elif value == "failed":
            self.session.transport_connected = False
            self._set_state(NegotiationState.FAILED)
        elif value in ("disconnected", "closed"):
            self.session.transport_connected = False
            self._set_state(NegotiationState.DISCONNECTED)
        elif value in ("new", "connecting") and self.state is NegotiationState.IDLE:
            self._set_state(NegotiationState.NEGOTIATING)

    async def _on_ice_connection_state(self, value: str) -> None:
        logger.debug(f"ICE connection state: {value}")
        if value == "failed":
            self._set_state(NegotiationState.FAILED)
        elif value == "checking" and self.state is NegotiationState.IDLE:
            self._set_state(NegotiationState.NEGOTIATING)

    async def _on_channel_open(self, _payload: Any) -> None:
        self.session.channel_state = ChannelState.OPEN
        self._check_connected()

    async def _on_channel_close(self, _payload: Any) -> None:
        self.session.channel_state = ChannelState.CLOSED
        self._set_state(NegotiationState.DISCONNECTED)

    def _check_connected(self) -> None:
        if (
            self.session.transport_connected
            and self.session.channel_state is ChannelState.OPEN
            and not self.session.awaiting_answer
            and self.state is not NegotiationState.FAILED
        ):
            self._set_state(NegotiationState.CONNECTED)

    # Teardown

    async def _on_teardown(self, _payload: Any) -> None:
        if self._closed:
            return
        self._closed = True
        self.session.pending_candidates.clear()
        self.session.channel_state = ChannelState.CLOSED
        self.session.transport_connected = False
        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(f"Error closing peer transport: {e}")
        if self.state is not NegotiationState.FAILED:
            self._set_state(NegotiationState.DISCONNECTED)
        # Wake the control loop so it can exit
        self._events.put_nowait(Event(EventType.CLOSE))

    def _set_state(self, state: NegotiationState) -> None:
        if self.session.state is state:
            return
        if self.session.state in TERMINAL_STATES:
            return
        logger.info(f"Session state {self.session.state.value} -> {state.value}")
        self.session.state = state
        if self.on_state_change is not None:
            self.on_state_change(state)
