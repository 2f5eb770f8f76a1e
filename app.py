from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from routers.rooms import rooms_router
from routers.config import config_router
from backend import RedisBackend
from registry import RoomRegistry
from relay import SignalingRelay
from constants import ALLOWED_ORIGINS, LOG_FILE, LOG_LEVEL, ROOM_BACKEND
from logging_config import get_logger, setup_logging
import asyncio

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def build_relay(room_backend: str = ROOM_BACKEND) -> SignalingRelay:
    """Create the registry and relay for the configured room backend."""
    if room_backend == "redis":
        redis_backend = RedisBackend()
        return SignalingRelay(RoomRegistry(store=redis_backend), bus=redis_backend)
    if room_backend != "memory":
        raise ValueError(f"Unknown ROOM_BACKEND {room_backend!r}, expected 'memory' or 'redis'")
    return SignalingRelay(RoomRegistry())


@asynccontextmanager
async def lifespan(app: FastAPI):
    relay = build_relay()
    app.state.relay = relay

    # Envelopes for peers on other instances arrive through Redis pub/sub
    listener = None
    if relay.bus is not None:
        listener = asyncio.create_task(relay.listen())
    logger.info(f"Signaling relay ready, room backend: {relay.registry.store.name}")
    try:
        yield
    finally:
        if listener is not None:
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
            logger.debug("Cancelled pub/sub listener")


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)
app.include_router(config_router)

logger.info("FastAPI application initialized")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Signaling endpoint. One JSON envelope per text frame, see schemas.signaling."""
    await websocket.app.state.relay.serve(websocket)
