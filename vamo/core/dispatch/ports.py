# vamo/core/dispatch/ports.py
from __future__ import annotations
from datetime import datetime
from typing import Any, Protocol, Sequence

from vamo.core.dispatch.domain import PushMessage, Recipient, RecipientRole


class CandidateStore(Protocol):
    async def find_nearest(
        self,
        *,
        role: RecipientRole,
        lat: float,
        lng: float,
        observed_after: datetime,
        limit: int,
    ) -> list[Recipient]:
        """
        Available, approved recipients of ``role`` with a push address and a
        position observed after ``observed_after``, nearest first, at most
        ``limit`` of them.
        """
        ...


class RecipientPreferenceStore(Protocol):
    async def get_recipient(self, recipient_id: str, role: RecipientRole) -> Recipient | None:
        """None => no such recipient (no notification destination), not an error."""
        ...


class PushGateway(Protocol):
    max_send_batch: int
    max_receipt_batch: int

    async def send(self, messages: Sequence[PushMessage]) -> list[dict[str, Any]]:
        """
        One ticket dict per message, same order:
        ``{"status": "ok"|"error", "id"?, "message"?, "details"?}``.
        Raises PushGatewayError when the whole call fails.
        """
        ...

    async def get_receipts(self, submission_ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        """
        ``{id: {"status": "ok"|"error", "message"?, "details"?: {"error"}}}``.
        Ids without a receipt yet are simply absent.
        """
        ...


class TTLStore(Protocol):
    def put(self, key: str, value: Any, ttl: float) -> None: ...
    def get(self, key: str) -> Any | None: ...
    def sweep_expired(self) -> int: ...
