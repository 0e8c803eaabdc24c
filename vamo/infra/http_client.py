# vamo/infra/http_client.py
"""
Shared aiohttp sessions.

The push gateway client is stateless and is called concurrently from
every chunk task, so all chunks share one pooled session instead of
opening a connection per call.

Session profiles
~~~~~~~~~~~~~~~~
- **push**    – push gateway send/receipt calls (pool limit=20)

Call ``close_all_sessions()`` once during application shutdown.
"""
from __future__ import annotations

import aiohttp

from vamo.config import settings
from vamo.infra.logging_config import get_logger

logger = get_logger(__name__)

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(
    name: str,
    timeout: aiohttp.ClientTimeout,
    limit: int = 10,
) -> aiohttp.ClientSession:
    """Return an existing session or create a new one."""
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d)", name, limit)
    return session


def get_push_session() -> aiohttp.ClientSession:
    """Session for push gateway calls; chunks run concurrently on it."""
    return _get_or_create(
        "push",
        aiohttp.ClientTimeout(total=settings.push_request_timeout_seconds, connect=5),
        limit=20,
    )


async def close_all_sessions() -> None:
    """Gracefully close every managed session.  Call during app shutdown."""
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)
