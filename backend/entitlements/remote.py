"""Timeout and error mapping for remote document store calls."""

import asyncio
import logging

from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import NetworkError

logger = logging.getLogger(__name__)


async def bounded_call(operation: str, awaitable, timeout_seconds: float):
    """
    Await a driver call with a timeout.

    Timeouts and driver failures become NetworkError. DuplicateKeyError is
    re-raised untouched so callers can map it to a domain error.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        logger.warning(f"Remote call {operation} timed out after {timeout_seconds}s")
        raise NetworkError(operation, e)
    except DuplicateKeyError:
        raise
    except PyMongoError as e:
        logger.error(f"Remote call {operation} failed: {e}")
        raise NetworkError(operation, e)
