import uvicorn
from constants import HOST, PORT, RELOAD, LOG_LEVEL, LOG_FILE
from logging_config import setup_logging, get_logger

# Handlers must exist before app (and every module logger) is imported
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)

from app import app  # noqa: E402

logger = get_logger(__name__)

if __name__ == "__main__":
    logger.info(f"Starting collaboration rooms server on {HOST}:{PORT} (reload={RELOAD})")
    uvicorn.run("app:app", host=HOST, port=PORT, reload=RELOAD)
