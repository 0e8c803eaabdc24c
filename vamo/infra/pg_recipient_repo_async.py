# vamo/infra/pg_recipient_repo_async.py
"""
Async PostgreSQL recipient repository (asyncpg).

Reads the backend's own tables; nothing here writes.

    client     (id_client, push_token, platform, notification_preferences)
    chauffeur  (id_chauffeur, push_token, platform, disponibilite, statut_validation, ...)
    livreur    (id_livreur, push_token, platform, disponibilite, statut_validation, ...)
    position_chauffeur / position_livreur (id_*, latitude, longitude, timestamp)

Older databases lack ``notification_preferences``; lookups then fall back
to a query without it and treat every category as allowed. ``platform`` is
created together with ``push_token``, so it is always selected.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import asyncpg

from vamo.core.dispatch.domain import GeoPosition, Recipient, RecipientRole
from vamo.core.dispatch.ports import CandidateStore, RecipientPreferenceStore
from vamo.infra.db_resilience_async import safe_db_conn
from vamo.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class _RoleTables:
    table: str
    id_column: str
    positions: str | None = None


# Fixed identifiers only; never interpolate caller input into SQL.
ROLE_TABLES: dict[RecipientRole, _RoleTables] = {
    RecipientRole.CLIENT: _RoleTables("client", "id_client"),
    RecipientRole.DRIVER: _RoleTables("chauffeur", "id_chauffeur", "position_chauffeur"),
    RecipientRole.COURIER: _RoleTables("livreur", "id_livreur", "position_livreur"),
}

APPROVED_STATUS = "approuve"


def parse_preferences(raw: Any) -> dict[str, bool]:
    """``notification_preferences`` column -> ``{category: bool}``. Non-bool values are ignored."""
    if raw is None:
        return {}
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("Unparseable notification_preferences value, using defaults")
            return {}
    if not isinstance(raw, dict):
        return {}
    return {str(k): v for k, v in raw.items() if isinstance(v, bool)}


def _nearest_sql(tables: _RoleTables) -> str:
    # Haversine in km, same formula as the in-memory store; id breaks ties.
    return f"""
        SELECT p.{tables.id_column} AS id,
               p.push_token,
               p.platform,
               pos.latitude,
               pos.longitude,
               pos.timestamp AS observed_at,
               6371 * 2 * asin(least(1.0, sqrt(
                   power(sin(radians(pos.latitude::float8 - $1::float8) / 2), 2)
                   + cos(radians($1::float8)) * cos(radians(pos.latitude::float8))
                   * power(sin(radians(pos.longitude::float8 - $2::float8) / 2), 2)
               ))) AS distance_km
        FROM {tables.table} p
        JOIN LATERAL (
            SELECT latitude, longitude, timestamp
            FROM {tables.positions} pp
            WHERE pp.{tables.id_column} = p.{tables.id_column}
            ORDER BY pp.timestamp DESC
            LIMIT 1
        ) pos ON true
        WHERE p.disponibilite = true
          AND p.statut_validation = '{APPROVED_STATUS}'
          AND p.push_token IS NOT NULL
          AND btrim(p.push_token) <> ''
          AND pos.timestamp > $3::timestamptz
        ORDER BY distance_km ASC, p.{tables.id_column} ASC
        LIMIT $4
    """


class AsyncPostgresRecipientRepository(CandidateStore, RecipientPreferenceStore):
    """Async PostgreSQL implementation of CandidateStore and RecipientPreferenceStore."""

    async def find_nearest(
        self,
        *,
        role: RecipientRole,
        lat: float,
        lng: float,
        observed_after: datetime,
        limit: int,
    ) -> list[Recipient]:
        tables = ROLE_TABLES[role]
        if tables.positions is None:
            raise ValueError(f"No position table for role {role.value}")

        async with safe_db_conn() as conn:
            rows = await conn.fetch(_nearest_sql(tables), lat, lng, observed_after, limit)

        return [
            Recipient(
                id=str(row["id"]),
                role=role,
                push_address=row["push_token"],
                platform=row["platform"],
                last_position=GeoPosition(
                    lat=float(row["latitude"]),
                    lng=float(row["longitude"]),
                    observed_at=row["observed_at"],
                ),
            )
            for row in rows
        ]

    async def get_recipient(self, recipient_id: str, role: RecipientRole) -> Recipient | None:
        """
        Load one recipient's push token and preferences.

        Returns None when no row matches.
        """
        tables = ROLE_TABLES[role]
        key = int(recipient_id)

        async with safe_db_conn() as conn:
            try:
                row = await conn.fetchrow(
                    f"SELECT push_token, platform, notification_preferences "
                    f"FROM {tables.table} WHERE {tables.id_column} = $1",
                    key,
                )
                preferences = parse_preferences(row["notification_preferences"]) if row else {}
            except asyncpg.UndefinedColumnError:
                logger.warning(
                    "notification_preferences column missing on %s table, using defaults",
                    tables.table,
                )
                row = await conn.fetchrow(
                    f"SELECT push_token, platform FROM {tables.table} WHERE {tables.id_column} = $1",
                    key,
                )
                preferences = {}

        if row is None:
            logger.info("Recipient not found: role=%s id=%s", role.value, recipient_id)
            return None

        return Recipient(
            id=str(recipient_id),
            role=role,
            push_address=row["push_token"],
            platform=row["platform"],
            preferences=preferences,
        )
