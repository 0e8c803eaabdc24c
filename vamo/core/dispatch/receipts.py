# vamo/core/dispatch/receipts.py
"""
Delivery receipt reconciliation.

Receipts appear on the gateway some time after a ticket was issued, and
disappear again after roughly a day. An id with no receipt yet is
``pending``; it is never reported as failed. Reconciliation reads the
gateway only, so calling it twice with the same ids gives the same report
as long as the gateway has nothing new.
"""
from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Iterable, Mapping, Sequence

from vamo.config import settings
from vamo.core.dispatch.batching import make_chunks
from vamo.core.dispatch.domain import (
    ChunkFailure,
    DeliveryReceipt,
    DeliveryStatus,
    DispatchResult,
    DispatchTicket,
    FailureKind,
    LossCategory,
    OutboundPush,
    PendingTicket,
    ReceiptReport,
    TOKEN_INVALID_ERROR,
)
from vamo.core.dispatch.errors import DispatchConfigError, PushGatewayError
from vamo.core.dispatch.ports import PushGateway, TTLStore
from vamo.infra.logging_config import get_logger
from vamo.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


# Resending the same message to the same address cannot fix these.
PERMANENT_RECEIPT_ERRORS = frozenset({
    TOKEN_INVALID_ERROR,
    "MessageTooBig",
    "InvalidCredentials",
    "MismatchSenderId",
})


def classify_failure(error_code: str | None) -> FailureKind:
    """``MessageRateExceeded`` and anything unrecognised are transient."""
    if error_code in PERMANENT_RECEIPT_ERRORS:
        return FailureKind.PERMANENT
    return FailureKind.TRANSIENT


def parse_receipt(submission_id: str, raw: Any) -> DeliveryReceipt | None:
    """Gateway receipt dict -> ``DeliveryReceipt``; None if it is not a final status."""
    if not isinstance(raw, Mapping):
        return None

    status = raw.get("status")
    if status == "ok":
        return DeliveryReceipt(submission_id=submission_id, final_status=DeliveryStatus.DELIVERED)
    if status != "error":
        return None

    details = raw.get("details") if isinstance(raw.get("details"), Mapping) else {}
    error_code = details.get("error")
    return DeliveryReceipt(
        submission_id=submission_id,
        final_status=DeliveryStatus.FAILED,
        failure_reason=raw.get("message") or error_code or "unknown error",
        failure_kind=classify_failure(error_code),
        error_code=error_code,
    )


def normalize_ids(submission_ids: Iterable[Any]) -> list[str]:
    """Drop blanks, non-strings and duplicates; keep first-seen order."""
    seen: set[str] = set()
    ids: list[str] = []
    for sid in submission_ids:
        if not isinstance(sid, str) or not sid.strip() or sid in seen:
            continue
        seen.add(sid)
        ids.append(sid)
    return ids


class PendingTicketRegistry:
    """
    Maps submission ids back to recipients (and the message sent) for a
    bounded window.

    Tickets are written at send time and expire on their own; lookups do
    not consume them.
    """

    def __init__(self, store: TTLStore, *, ttl: float | None = None):
        self._store = store
        self._ttl = ttl if ttl is not None else float(settings.receipt_window_seconds)
        if self._ttl <= 0:
            raise DispatchConfigError(f"Registry ttl must be positive, got {self._ttl}")

    def remember(self, ticket: DispatchTicket, push: OutboundPush | None = None, *, attempt: int = 0) -> bool:
        if not (ticket.ok and ticket.submission_id):
            return False
        self._store.put(
            ticket.submission_id,
            PendingTicket(recipient_id=ticket.recipient_id, push=push, attempt=attempt),
            self._ttl,
        )
        return True

    def track(
        self,
        tickets: DispatchResult | Sequence[DispatchTicket],
        pushes: Sequence[OutboundPush] = (),
        *,
        attempt: int = 0,
    ) -> int:
        """
        Remember accepted tickets. ``pushes``, when given, is parallel to
        ``tickets`` and makes the messages resendable. Returns how many were stored.
        """
        if isinstance(tickets, DispatchResult):
            tickets = tickets.tickets
        stored = 0
        for i, ticket in enumerate(tickets):
            push = pushes[i] if i < len(pushes) else None
            if self.remember(ticket, push, attempt=attempt):
                stored += 1
        return stored

    def entry(self, submission_id: str) -> PendingTicket | None:
        return self._store.get(submission_id)

    def lookup(self, submission_id: str) -> str | None:
        entry = self.entry(submission_id)
        return entry.recipient_id if entry is not None else None

    def mark_resent(self, submission_id: str) -> bool:
        """Forget the message of a ticket whose content has been resent."""
        entry = self.entry(submission_id)
        if entry is None:
            return False
        self._store.put(submission_id, replace(entry, push=None), self._ttl)
        return True

    def sweep(self) -> int:
        return self._store.sweep_expired()


class ReceiptReconciler:
    def __init__(
        self,
        gateway: PushGateway,
        *,
        registry: PendingTicketRegistry | None = None,
        max_chunk_size: int | None = None,
    ):
        limit = getattr(gateway, "max_receipt_batch", None) or settings.push_receipt_chunk_limit
        size = max_chunk_size if max_chunk_size is not None else limit
        if isinstance(size, bool) or not isinstance(size, int) or size < 1:
            raise DispatchConfigError(f"max_chunk_size must be a positive integer, got {size!r}")
        self.gateway = gateway
        self.registry = registry
        self.max_chunk_size = min(size, limit)

    async def reconcile(
        self,
        submission_ids: Iterable[Any],
        *,
        deadline: float | None = None,
    ) -> ReceiptReport:
        if deadline is not None and deadline <= 0:
            raise DispatchConfigError(f"deadline must be positive, got {deadline}")

        ids = normalize_ids(submission_ids)
        if not ids:
            return ReceiptReport()

        buffer_lock = asyncio.Lock()
        found: dict[str, DeliveryReceipt] = {}
        failures: list[ChunkFailure] = []

        async def record_failure(index: int, start: int, end: int, error: str, *,
                                 category: LossCategory = LossCategory.RECEIPT_QUERY_FAILED,
                                 retryable: bool = True) -> None:
            DispatchMetrics.chunk_failed("receipt_query" if category is LossCategory.RECEIPT_QUERY_FAILED else "receipt_timeout")
            async with buffer_lock:
                failures.append(ChunkFailure(
                    chunk_index=index, start=start, end=end, error=error,
                    category=category, retryable=retryable,
                    submission_ids=tuple(ids[start:end]),
                ))

        async def query(index: int, start: int, end: int) -> None:
            chunk_ids = ids[start:end]
            try:
                with DispatchMetrics.track_chunk_latency("receipts"):
                    raw = await self.gateway.get_receipts(chunk_ids)
            except PushGatewayError as e:
                logger.warning("Receipt chunk %d [%d:%d] failed: %s", index, start, end, e)
                await record_failure(index, start, end, str(e), retryable=e.retryable)
                return
            except Exception as e:
                logger.exception("Receipt chunk %d [%d:%d] failed", index, start, end)
                await record_failure(index, start, end, f"{type(e).__name__}: {e}")
                return

            parsed: dict[str, DeliveryReceipt] = {}
            if isinstance(raw, Mapping):
                for sid in chunk_ids:
                    receipt = parse_receipt(sid, raw.get(sid))
                    if receipt is not None:
                        parsed[sid] = receipt
            async with buffer_lock:
                found.update(parsed)

        ranges = make_chunks(ids, self.max_chunk_size)
        tasks = {
            asyncio.create_task(query(i, start, end)): (i, start, end)
            for i, (start, end) in enumerate(ranges)
        }
        _, pending_tasks = await asyncio.wait(tasks.keys(), timeout=deadline)

        for task in pending_tasks:
            task.cancel()
        if pending_tasks:
            await asyncio.gather(*pending_tasks, return_exceptions=True)
            for task in pending_tasks:
                index, start, end = tasks[task]
                await record_failure(
                    index, start, end, f"Deadline of {deadline}s exceeded",
                    category=LossCategory.TIMEOUT,
                )

        report = ReceiptReport(
            receipts={sid: found[sid] for sid in ids if sid in found},
            pending=[sid for sid in ids if sid not in found],
            query_failures=sorted(failures, key=lambda f: f.chunk_index),
        )

        if self.registry is not None:
            for receipt in report.receipts.values():
                if receipt.invalidates_token:
                    recipient_id = self.registry.lookup(receipt.submission_id)
                    if recipient_id is not None and recipient_id not in report.recipients_to_invalidate:
                        report.recipients_to_invalidate.append(recipient_id)

        failed = len(report.receipts) - len(report.delivered)
        DispatchMetrics.receipts_checked(len(report.delivered), failed, len(report.pending))
        logger.info(
            "Receipts checked: %d id(s), %d delivered, %d failed, %d pending, %d query failure(s)",
            len(ids), len(report.delivered), failed, len(report.pending), len(report.query_failures),
        )
        for receipt in report.permanent_failures:
            logger.warning(
                "Permanent delivery failure %s: %s", receipt.submission_id, receipt.error_code,
            )
        return report
