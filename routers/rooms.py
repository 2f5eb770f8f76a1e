from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import RoomDetailsResponse
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("/{code}", response_model=RoomDetailsResponse)
async def get_room_details(code: str, request: Request):
    """
    Look up a live room by its code (case-insensitive).

    Lets a client check a code before opening the signaling socket. Connection
    ids are never exposed, only which slots are taken.
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {code} from {client_host}")

    registry = request.app.state.relay.registry
    room = registry.get_room(code)
    if room is None:
        logger.warning(f"Room details failed: Room {code} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    return RoomDetailsResponse(
        code=room.code,
        created_at=room.created_at,
        has_host=room.host is not None,
        has_guest=room.guest is not None,
        is_full=room.is_full,
    )
