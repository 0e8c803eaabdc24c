# vamo/infra/memory_recipient_store.py
"""
In-memory recipient store (tests, local development).

Same contract as the Postgres repository: availability, approval, push
address and freshness are enforced here, ordering is haversine distance
with insertion order breaking ties.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from vamo.core.dispatch.domain import Recipient, RecipientRole
from vamo.core.dispatch.ports import CandidateStore, RecipientPreferenceStore
from vamo.core.dispatch.selector import as_utc, haversine_km


@dataclass
class StoredRecipient:
    recipient: Recipient
    available: bool = True
    approved: bool = True


class InMemoryRecipientStore(CandidateStore, RecipientPreferenceStore):
    def __init__(self):
        self._rows: dict[tuple[RecipientRole, str], StoredRecipient] = {}
        self.find_calls = 0

    def add(self, recipient: Recipient, *, available: bool = True, approved: bool = True) -> None:
        self._rows[(recipient.role, recipient.id)] = StoredRecipient(recipient, available, approved)

    async def find_nearest(
        self,
        *,
        role: RecipientRole,
        lat: float,
        lng: float,
        observed_after: datetime,
        limit: int,
    ) -> list[Recipient]:
        self.find_calls += 1
        cutoff = as_utc(observed_after)
        scored = []
        for row in self._rows.values():
            r = row.recipient
            if r.role is not role or not row.available or not row.approved:
                continue
            if not (r.push_address or "").strip() or r.last_position is None:
                continue
            if as_utc(r.last_position.observed_at) <= cutoff:
                continue
            scored.append((haversine_km(lat, lng, r.last_position.lat, r.last_position.lng), r))

        # sorted() is stable: equal distances keep insertion order.
        scored = sorted(scored, key=lambda pair: pair[0])
        return [r for _, r in scored[:limit]]

    async def get_recipient(self, recipient_id: str, role: RecipientRole) -> Recipient | None:
        row = self._rows.get((role, recipient_id))
        return row.recipient if row else None
