# app/db/store_errors.py
import functools
import logging

from pymongo.errors import AutoReconnect, ExecutionTimeout, ServerSelectionTimeoutError, WTimeoutError

from app.core.errors import TransientStoreFailure

logger = logging.getLogger(__name__)

# NetworkTimeout / ConnectionFailure are AutoReconnect subclasses
TRANSIENT_MONGO_ERRORS = (AutoReconnect, ServerSelectionTimeoutError, ExecutionTimeout, WTimeoutError)


def translate_store_errors(func):
    """Surface Mongo timeouts and connection drops as TransientStoreFailure."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except TRANSIENT_MONGO_ERRORS as e:
            logger.warning("Store operation %s failed transiently: %s", func.__qualname__, e)
            raise TransientStoreFailure(f"Store unavailable during {func.__name__}") from e

    return wrapper
