import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

REDIS_URL = f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}"

# "memory" keeps rooms inside this process, "redis" shares them between relay instances
ROOM_BACKEND = os.getenv("ROOM_BACKEND", "memory")
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 24 * 60 * 60))

ALLOWED_ORIGINS = [origin.strip() for origin in os.getenv("ALLOWED_ORIGINS", "*").split(",")]

SIGNALING_URL = os.getenv("SIGNALING_URL", f"ws://localhost:{PORT}/ws")

# No 0/O or 1/I
ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ROOM_CODE_LENGTH = 6

ICE_SERVERS = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
    {"urls": "stun:stun.cloudflare.com:3478"},
    {"urls": "stun:stun.stunprotocol.org:3478"},
]

DATA_CHANNEL_LABEL = "chat"
CHUNK_SIZE = 16384
MAX_BUFFERED_AMOUNT = 64 * 1024
BUFFER_POLL_INTERVAL = 0.05
