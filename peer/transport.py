from typing import Any, Callable, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from constants import DATA_CHANNEL_LABEL, ICE_SERVERS
from logging_config import get_logger
from peer.negotiation import EventType

logger = get_logger(__name__)

PostEvent = Callable[..., None]


class AiortcTransport:
    """aiortc-backed peer transport driven by NegotiationStateMachine.

    Descriptions go over the wire as {"sdp": ..., "type": ...} dicts, remote
    candidates as the browser's RTCIceCandidateInit shape. aiortc gathers its own
    candidates up front and embeds them in the SDP, so it never reports local
    candidates one by one; browser peers still trickle theirs.
    """

    def __init__(
        self,
        ice_servers: Optional[List[dict]] = None,
        label: str = DATA_CHANNEL_LABEL,
        on_message: Optional[Callable[[Any], None]] = None,
        on_track: Optional[Callable[[Any], None]] = None,
    ):
        servers = ICE_SERVERS if ice_servers is None else ice_servers
        self.pc = RTCPeerConnection(RTCConfiguration(iceServers=[RTCIceServer(**server) for server in servers]))
        self.label = label
        self.channel = None
        self.on_message = on_message
        self.on_track = on_track
        self._post: Optional[PostEvent] = None

    def bind(self, post: PostEvent) -> None:
        """Route peer connection callbacks into the state machine's event queue."""
        self._post = post
        pc = self.pc

        @pc.on("connectionstatechange")
        def on_connectionstatechange():
            post(EventType.CONNECTION_STATE, pc.connectionState)

        @pc.on("iceconnectionstatechange")
        def on_iceconnectionstatechange():
            post(EventType.ICE_CONNECTION_STATE, pc.iceConnectionState)

        # The guest receives the channel the host created
        @pc.on("datachannel")
        def on_datachannel(channel):
            logger.info(f"Remote data channel '{channel.label}' received")
            self._wire_channel(channel)

        @pc.on("track")
        def on_track(track):
            logger.info(f"Remote {track.kind} track received")
            if self.on_track is not None:
                self.on_track(track)

    @property
    def has_data_channel(self) -> bool:
        return self.channel is not None

    def create_data_channel(self) -> None:
        # Ordered and reliable: chunked transfers depend on it
        self._wire_channel(self.pc.createDataChannel(self.label, ordered=True))

    def add_track(self, track) -> None:
        self.pc.addTrack(track)

    def replace_track(self, old_track, new_track) -> bool:
        """Swap the track an existing sender carries. Needs no renegotiation; returns False if nothing sends `old_track`."""
        for sender in self.pc.getSenders():
            if sender.track is old_track:
                sender.replaceTrack(new_track)
                logger.debug(f"Replaced local {new_track.kind if new_track else 'empty'} track")
                return True
        logger.debug("No sender carries the track to replace")
        return False

    async def create_offer(self) -> dict:
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return self._local_description()

    async def create_answer(self) -> dict:
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return self._local_description()

    async def set_remote_description(self, description: dict) -> None:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def add_ice_candidate(self, candidate: Any) -> None:
        if not candidate or not candidate.get("candidate"):
            # End-of-candidates marker, nothing to add
            return
        sdp = candidate["candidate"]
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        ice_candidate = candidate_from_sdp(sdp)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice_candidate)

    async def close(self) -> None:
        if self.channel is not None:
            self.channel.close()
        await self.pc.close()
        logger.debug("Peer connection closed")

    def _local_description(self) -> dict:
        return {"sdp": self.pc.localDescription.sdp, "type": self.pc.localDescription.type}

    def _wire_channel(self, channel) -> None:
        self.channel = channel

        @channel.on("open")
        def on_open():
            self._emit(EventType.CHANNEL_OPEN)

        @channel.on("close")
        def on_close():
            self._emit(EventType.CHANNEL_CLOSE)

        @channel.on("message")
        def on_message(message):
            if self.on_message is not None:
                self.on_message(message)

        # Channels announced by the remote side arrive already open
        if channel.readyState == "open":
            self._emit(EventType.CHANNEL_OPEN)

    def _emit(self, event_type: EventType) -> None:
        if self._post is not None:
            self._post(event_type)
