# app/core/logging_setup.py
import logging

from app.core.config import settings

LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(name)s] - %(message)s"


def setup_logging() -> None:
    """Configure the root logger once; later calls are no-ops."""
    logging.basicConfig(level=settings.LOG_LEVEL, format=LOG_FORMAT)
    # motor/pymongo heartbeat chatter is only useful when debugging
    if not settings.DEBUG:
        logging.getLogger("pymongo").setLevel(logging.WARNING)
