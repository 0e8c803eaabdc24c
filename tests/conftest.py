# tests/conftest.py
"""Pytest configuration, fakes and fixtures"""
from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Sequence

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from vamo.core.dispatch.domain import GeoPosition, PushMessage, Recipient, RecipientRole  # noqa: E402
from vamo.core.dispatch.errors import PushGatewayError  # noqa: E402
from vamo.infra.memory_recipient_store import InMemoryRecipientStore  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

# Plateau, Abidjan
PICKUP_LAT = 5.3200
PICKUP_LNG = -4.0200


def token_for(recipient_id: str) -> str:
    return f"ExponentPushToken[tok-{recipient_id}]"


def make_recipient(
    recipient_id: str,
    *,
    role: RecipientRole = RecipientRole.DRIVER,
    lat: float | None = PICKUP_LAT,
    lng: float | None = PICKUP_LNG,
    age_seconds: float = 60,
    token: str | None = "default",
    preferences: dict[str, bool] | None = None,
) -> Recipient:
    position = None
    if lat is not None and lng is not None:
        position = GeoPosition(lat=lat, lng=lng, observed_at=NOW - timedelta(seconds=age_seconds))
    return Recipient(
        id=recipient_id,
        role=role,
        push_address=token_for(recipient_id) if token == "default" else token,
        preferences=preferences or {},
        last_position=position,
    )


class FakePushGateway:
    """
    In-memory push gateway.

    - ``fail_addresses``: a chunk containing one of these raises ``fail_error``
    - ``slow_addresses``: a chunk containing one of these sleeps ``slow_seconds``
    - ``ticket_overrides``: address -> raw ticket dict
    - ``receipts``: ticket id -> raw receipt dict (absent ids have no receipt yet)
    - ``fail_receipt_ids``: a receipt chunk containing one of these raises
    """

    def __init__(self, *, max_send_batch: int = 100, max_receipt_batch: int = 300):
        self.max_send_batch = max_send_batch
        self.max_receipt_batch = max_receipt_batch
        self.sent_batches: list[list[PushMessage]] = []
        self.receipt_batches: list[list[str]] = []
        self.fail_addresses: set[str] = set()
        self.fail_error: Exception = PushGatewayError(503, "Service unavailable", retryable=True)
        self.slow_addresses: set[str] = set()
        self.slow_seconds = 5.0
        self.ticket_overrides: dict[str, dict[str, Any]] = {}
        self.receipts: dict[str, dict[str, Any]] = {}
        self.fail_receipt_ids: set[str] = set()

    @property
    def sent_addresses(self) -> list[str]:
        return [m.to for batch in self.sent_batches for m in batch]

    async def send(self, messages: Sequence[PushMessage]) -> list[dict[str, Any]]:
        batch = list(messages)
        self.sent_batches.append(batch)
        addresses = {m.to for m in batch}
        if addresses & self.slow_addresses:
            await asyncio.sleep(self.slow_seconds)
        if addresses & self.fail_addresses:
            raise self.fail_error
        return [
            self.ticket_overrides.get(m.to, {"status": "ok", "id": f"ticket:{m.to}"})
            for m in batch
        ]

    async def get_receipts(self, submission_ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        ids = list(submission_ids)
        self.receipt_batches.append(ids)
        if set(ids) & self.fail_receipt_ids:
            raise PushGatewayError(502, "Bad gateway", retryable=True)
        return {sid: self.receipts[sid] for sid in ids if sid in self.receipts}


@pytest.fixture
def gateway():
    return FakePushGateway()


@pytest.fixture
def store():
    return InMemoryRecipientStore()


@pytest.fixture
def fixed_clock():
    return lambda: NOW
