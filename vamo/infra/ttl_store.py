# vamo/infra/ttl_store.py
from __future__ import annotations
import time
from threading import Lock
from typing import Any, Callable
from vamo.infra.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryTTLStore:
    """
    Key-value store with a per-entry TTL.

    Expired entries are invisible to ``get`` immediately, but memory is only
    reclaimed by ``sweep_expired()``, which the owner calls on its own
    schedule. The clock is injectable so tests can move time by hand.

    ⚠️ Process-local: with several replicas each one sees only the entries
    it wrote itself.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = Lock()

    def put(self, key: str, value: Any, ttl: float) -> None:
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                return None
            return value

    def sweep_expired(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.debug(f"TTL store sweep: removed={len(expired)}, remaining={len(self)}")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
