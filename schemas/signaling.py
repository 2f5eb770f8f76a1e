from pydantic import BaseModel, Field, TypeAdapter
from typing import Annotated, Any, Literal, Union


# Client -> relay

class CreateRoomMessage(BaseModel):
    type: Literal["create-room"]

class JoinRoomMessage(BaseModel):
    type: Literal["join-room"]
    code: str

class OfferMessage(BaseModel):
    type: Literal["offer"]
    sdp: Any  # opaque session description, never inspected

class AnswerMessage(BaseModel):
    type: Literal["answer"]
    sdp: Any

class IceCandidateMessage(BaseModel):
    type: Literal["ice-candidate"]
    candidate: Any  # opaque candidate blob

InboundMessage = Annotated[
    Union[CreateRoomMessage, JoinRoomMessage, OfferMessage, AnswerMessage, IceCandidateMessage],
    Field(discriminator="type"),
]

inbound_message_adapter = TypeAdapter(InboundMessage)


# Relay -> client

class RoomCreatedMessage(BaseModel):
    type: Literal["room-created"] = "room-created"
    code: str

class RoomJoinedMessage(BaseModel):
    type: Literal["room-joined"] = "room-joined"
    code: str

class PeerJoinedMessage(BaseModel):
    type: Literal["peer-joined"] = "peer-joined"

class PeerLeftMessage(BaseModel):
    type: Literal["peer-left"] = "peer-left"

class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    message: str

INVALID_MESSAGE_FORMAT = "Invalid message format"
