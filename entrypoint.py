import uvicorn
from constants import HOST, PORT, LOG_LEVEL, LOG_FILE
from logging_config import setup_logging

# Setup logging before importing app
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)

from app import app
from logging_config import get_logger

logger = get_logger(__name__)


def main():
    logger.info(f"Starting Sheath signaling relay on {HOST}:{PORT}")
    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    main()
