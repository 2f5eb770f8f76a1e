from fastapi import APIRouter, Request
from schemas.rooms import ClientConfigResponse, HealthResponse, IceServer
from constants import CHUNK_SIZE, ICE_SERVERS, MAX_BUFFERED_AMOUNT

config_router = APIRouter(tags=["config"])


@config_router.get("/config", response_model=ClientConfigResponse)
async def get_client_config():
    """ICE servers and transfer limits every peer must agree on."""
    return ClientConfigResponse(
        ice_servers=[IceServer(**server) for server in ICE_SERVERS],
        chunk_size=CHUNK_SIZE,
        max_buffered_amount=MAX_BUFFERED_AMOUNT,
    )


@config_router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    registry = request.app.state.relay.registry
    return HealthResponse(status="ok", rooms=len(registry), backend=registry.store.name)
