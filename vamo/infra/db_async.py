# vamo/infra/db_async.py
"""
asyncpg connection pool for the read side of the dispatch engine.

The engine only reads recipient snapshots (providers, positions, push
tokens, preferences); it never writes recipient state.
"""
from __future__ import annotations
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from vamo.config import settings
from vamo.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    logger.info("Initializing asyncpg connection pool")

    _pool = await asyncpg.create_pool(
        dsn=settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        timeout=settings.pg_connect_timeout,
        command_timeout=settings.pg_statement_timeout_ms / 1000,
        server_settings={
            "application_name": "vamo_dispatch",
        },
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None


def is_pool_ready() -> bool:
    return _pool is not None


@asynccontextmanager
async def db_conn() -> AsyncIterator[asyncpg.Connection]:
    """
    Acquire a connection from the pool.

    Usage:
        async with db_conn() as conn:
            rows = await conn.fetch("SELECT ... WHERE id = $1", some_id)
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    conn = await _pool.acquire()
    try:
        yield conn
    finally:
        await _pool.release(conn)
