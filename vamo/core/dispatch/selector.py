# vamo/core/dispatch/selector.py
"""
Proximity selection of providers for a new ride/delivery request.

The store does the heavy lifting (availability, approval, push address,
freshness, distance ordering, LIMIT). The selector validates input before
touching the store and re-checks freshness, push address and ``k`` on
whatever comes back, so the guarantees hold for any store implementation.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Callable

from vamo.config import settings
from vamo.core.dispatch.domain import Recipient, RecipientRole
from vamo.core.dispatch.errors import DispatchConfigError
from vamo.core.dispatch.ports import CandidateStore
from vamo.infra.logging_config import get_logger, mask_coordinates

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive timestamps from the store are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def validate_reference_point(lat: float, lng: float) -> None:
    for name, value, bound in (("lat", lat, 90.0), ("lng", lng, 180.0)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise DispatchConfigError(f"{name} must be a number, got {value!r}")
        if not math.isfinite(value) or abs(value) > bound:
            raise DispatchConfigError(f"{name} out of range: {value!r}")


def coerce_role(role: RecipientRole | str) -> RecipientRole:
    try:
        return RecipientRole(role)
    except ValueError:
        raise DispatchConfigError(f"Unknown recipient role: {role!r}") from None


def validate_k(k: int) -> None:
    if isinstance(k, bool) or not isinstance(k, int) or k < 1:
        raise DispatchConfigError(f"k must be a positive integer, got {k!r}")


class GeoCandidateSelector:
    """k nearest available providers with a fresh position."""

    def __init__(
        self,
        store: CandidateStore,
        *,
        default_k: int | None = None,
        freshness: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._default_k = default_k or settings.dispatch_max_candidates
        self._freshness = freshness or timedelta(seconds=settings.dispatch_freshness_window_seconds)
        self._clock = clock

    async def select(
        self,
        *,
        lat: float,
        lng: float,
        role: RecipientRole | str = RecipientRole.DRIVER,
        k: int | None = None,
        freshness: timedelta | None = None,
    ) -> list[Recipient]:
        """
        Returns at most ``k`` recipients, nearest first. An empty list means
        nobody qualifies, which is a normal outcome.

        Raises:
            DispatchConfigError: bad reference point, k, window or role.
        """
        validate_reference_point(lat, lng)
        role = coerce_role(role)
        if not role.is_provider:
            raise DispatchConfigError(f"Proximity selection only targets providers, got {role.value}")

        limit = self._default_k if k is None else k
        validate_k(limit)

        window = freshness if freshness is not None else self._freshness
        if window <= timedelta(0):
            raise DispatchConfigError(f"Freshness window must be positive, got {window}")

        cutoff = as_utc(self._clock()) - window

        rows = await self._store.find_nearest(
            role=role, lat=lat, lng=lng, observed_after=cutoff, limit=limit,
        )

        candidates: list[Recipient] = []
        seen: set[str] = set()
        dropped = 0
        for recipient in rows:
            if len(candidates) >= limit:
                dropped += 1
                continue
            position = recipient.last_position
            if (
                recipient.id in seen
                or recipient.role is not role
                or not (recipient.push_address or "").strip()
                or position is None
                or as_utc(position.observed_at) <= cutoff
            ):
                dropped += 1
                continue
            seen.add(recipient.id)
            candidates.append(recipient)

        if dropped:
            logger.warning(
                "Store returned %d candidate(s) outside the selection contract (role=%s)",
                dropped, role.value,
            )

        logger.info(
            "Selected %d/%d %s candidate(s) near %s (window=%ds)",
            len(candidates), limit, role.value, mask_coordinates(lat, lng),
            int(window.total_seconds()),
        )
        return candidates
