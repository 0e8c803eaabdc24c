# vamo/infra/db_resilience_async.py
"""
Retry on transient asyncpg errors.

Only connection acquisition is retried: a query that already started is
never replayed by this module.
"""
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager

import asyncpg
from vamo.infra.db_async import db_conn
from vamo.infra.logging_config import get_logger

logger = get_logger(__name__)

_TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "closed",
    "network",
    "too many connections",
    "connection reset",
)


def is_transient_error(exc: Exception) -> bool:
    """
    True for errors worth a reconnect: dropped connections, pool exhaustion,
    timeouts. Syntax errors, missing columns and similar are not transient.
    """
    if isinstance(exc, (asyncpg.PostgresConnectionError, asyncpg.TooManyConnectionsError)):
        return True

    if isinstance(exc, (asyncio.TimeoutError, ConnectionError, OSError)):
        return True

    if isinstance(exc, asyncpg.UndefinedColumnError):
        return False

    error_message = str(exc).lower()
    return any(pattern in error_message for pattern in _TRANSIENT_PATTERNS)


@asynccontextmanager
async def safe_db_conn(max_retries: int = 3, initial_delay: float = 0.1):
    """
    ``db_conn()`` with retry on transient errors while acquiring.

    Errors raised from inside the ``async with`` body propagate unchanged.
    """
    delay = initial_delay

    for attempt in range(max_retries + 1):
        try:
            ctx = db_conn()
            conn = await ctx.__aenter__()
        except Exception as exc:
            if not is_transient_error(exc) or attempt >= max_retries:
                logger.error(
                    f"Could not acquire DB connection (attempt {attempt + 1}): {exc}"
                )
                raise

            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)
            continue

        try:
            yield conn
        except BaseException as exc:
            if not await ctx.__aexit__(type(exc), exc, exc.__traceback__):
                raise
        else:
            await ctx.__aexit__(None, None, None)
        return
