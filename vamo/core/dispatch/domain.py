# vamo/core/dispatch/domain.py
"""
Value types for the dispatch notification engine.

Recipient snapshots are owned by the external store and only read here.
Requests, tickets and receipts are immutable; ``DispatchResult`` and
``ReceiptReport`` are the aggregates handed back to callers.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping


# ============================================================================
# RECIPIENTS
# ============================================================================

class RecipientRole(str, Enum):
    CLIENT = "client"
    DRIVER = "driver"
    COURIER = "courier"

    @property
    def is_provider(self) -> bool:
        return self in PROVIDER_ROLES


PROVIDER_ROLES = frozenset({RecipientRole.DRIVER, RecipientRole.COURIER})


@dataclass(frozen=True)
class GeoPosition:
    lat: float
    lng: float
    observed_at: datetime


@dataclass(frozen=True)
class Recipient:
    """Read-only snapshot of a client, driver or courier."""

    id: str
    role: RecipientRole
    push_address: str | None = None
    platform: str | None = None
    preferences: Mapping[str, bool] = field(default_factory=dict)
    last_position: GeoPosition | None = None

    def allows(self, category: str) -> bool:
        """Fail-open: only an explicit ``False`` disables a category."""
        return (self.preferences or {}).get(category) is not False


# ============================================================================
# REQUESTS
# ============================================================================

@dataclass(frozen=True)
class SingleRecipient:
    recipient_id: str | int
    role: RecipientRole = RecipientRole.CLIENT


@dataclass(frozen=True)
class NearestK:
    lat: float
    lng: float
    role: RecipientRole = RecipientRole.DRIVER
    k: int = 5


Targeting = SingleRecipient | NearestK


@dataclass(frozen=True)
class PushMessage:
    """Provider-neutral outbound push item."""

    to: str
    title: str
    body: str
    data: Mapping[str, Any] = field(default_factory=dict)
    sound: str | None = None
    priority: str | None = None
    channel_id: str | None = None


@dataclass(frozen=True)
class NotificationRequest:
    category: str
    title: str
    body: str
    targeting: Targeting
    payload: Mapping[str, Any] = field(default_factory=dict)
    sound: str | None = "default"
    priority: str | None = "high"
    channel_id: str | None = "default"

    @property
    def requested_count(self) -> int:
        if isinstance(self.targeting, NearestK):
            return self.targeting.k
        return 1

    def message_for(self, recipient: Recipient, extra_data: Mapping[str, Any] | None = None) -> PushMessage:
        """Build the push message for one recipient.

        ``data.type`` always carries the category, which is what mobile
        clients switch on.
        """
        data: dict[str, Any] = {"type": self.category, **self.payload}
        if extra_data:
            data.update(extra_data)
        return PushMessage(
            to=recipient.push_address or "",
            title=self.title,
            body=self.body,
            data=data,
            sound=self.sound,
            priority=self.priority,
            channel_id=self.channel_id,
        )


@dataclass(frozen=True)
class OutboundPush:
    """A message bound to its recipient and its index in candidate order."""

    position: int
    recipient_id: str
    message: PushMessage


# ============================================================================
# TICKETS & RECEIPTS
# ============================================================================

# Gateway error code meaning the push address will never work again.
TOKEN_INVALID_ERROR = "DeviceNotRegistered"


class SubmissionStatus(str, Enum):
    OK = "ok"
    ERROR = "error"


@dataclass(frozen=True)
class DispatchTicket:
    recipient_id: str
    submission_id: str | None
    submission_status: SubmissionStatus
    submission_error: str | None = None
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.submission_status is SubmissionStatus.OK

    @property
    def invalidates_token(self) -> bool:
        return self.error_code == TOKEN_INVALID_ERROR


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


class FailureKind(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class DeliveryReceipt:
    submission_id: str
    final_status: DeliveryStatus
    failure_reason: str | None = None
    failure_kind: FailureKind | None = None
    error_code: str | None = None

    @property
    def delivered(self) -> bool:
        return self.final_status is DeliveryStatus.DELIVERED

    @property
    def invalidates_token(self) -> bool:
        return self.error_code == TOKEN_INVALID_ERROR


@dataclass(frozen=True)
class PendingTicket:
    """What the registry remembers about an accepted ticket.

    ``push`` is dropped once the message has been resent, so one transient
    receipt never triggers two resends.
    """

    recipient_id: str
    push: OutboundPush | None = None
    attempt: int = 0


# ============================================================================
# LOSSES & RESULTS
# ============================================================================

class LossCategory(str, Enum):
    PREFERENCE_SUPPRESSED = "preference_suppressed"
    MISSING_TOKEN = "missing_token"
    INVALID_TOKEN = "invalid_token"
    CHUNK_SEND_FAILED = "chunk_send_failed"
    ITEM_REJECTED = "item_rejected"
    TIMEOUT = "timeout"
    RECEIPT_QUERY_FAILED = "receipt_query_failed"


_CHUNK_LOSSES = (LossCategory.CHUNK_SEND_FAILED, LossCategory.TIMEOUT)

# What a DispatchResult reports; receipt query failures live on ReceiptReport.
DISPATCH_LOSSES = tuple(c for c in LossCategory if c is not LossCategory.RECEIPT_QUERY_FAILED)


@dataclass(frozen=True)
class RecipientLoss:
    recipient_id: str
    category: LossCategory
    reason: str | None = None


@dataclass(frozen=True)
class ChunkFailure:
    """A contiguous range ``[start, end)`` of the input that got no answer.

    Send failures keep their unsent ``items`` for a later retry; receipt
    query failures carry the ``submission_ids`` that stay pending.
    """

    chunk_index: int
    start: int
    end: int
    error: str
    category: LossCategory = LossCategory.CHUNK_SEND_FAILED
    retryable: bool = True
    items: tuple[OutboundPush, ...] = field(default=(), repr=False, compare=False)
    submission_ids: tuple[str, ...] = ()

    @property
    def recipient_ids(self) -> tuple[str, ...]:
        return tuple(item.recipient_id for item in self.items)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_index": self.chunk_index,
            "start": self.start,
            "end": self.end,
            "recipient_ids": list(self.recipient_ids),
            "submission_ids": list(self.submission_ids),
            "error": self.error,
            "category": self.category.value,
            "retryable": self.retryable,
        }


class DispatchState(str, Enum):
    SELECTING = "selecting"
    FILTERING = "filtering"
    VALIDATING = "validating"
    SENDING = "sending"
    COMPLETED = "completed"


@dataclass
class DispatchResult:
    """
    Outcome of one dispatch attempt.

    ``requested_count >= eligible_count >= sent_count`` always holds.
    ``eligible_count`` is what selection returned, so positional and
    staleness losses explain the first gap; suppressed, missing/invalid
    token and chunk losses explain the second exactly. Rejected items still
    count as sent (they have a ticket).
    """

    requested_count: int
    eligible_count: int = 0
    tickets: list[DispatchTicket] = field(default_factory=list)
    losses: list[RecipientLoss] = field(default_factory=list)
    chunk_failures: list[ChunkFailure] = field(default_factory=list)
    state: DispatchState = DispatchState.SELECTING
    dispatch_id: str = ""
    # Recipient ids in send order, used to keep tickets ordered across retries.
    recipient_order: list[str] = field(default_factory=list, repr=False)

    @property
    def sent_count(self) -> int:
        return len(self.tickets)

    @property
    def submission_ids(self) -> list[str]:
        """Ids worth reconciling (accepted items only)."""
        return [t.submission_id for t in self.tickets if t.ok and t.submission_id]

    def recipients_lost(self, category: LossCategory) -> list[str]:
        if category in _CHUNK_LOSSES:
            return [
                rid
                for failure in self.chunk_failures if failure.category is category
                for rid in failure.recipient_ids
            ]
        if category is LossCategory.ITEM_REJECTED:
            return [t.recipient_id for t in self.tickets if not t.ok]
        return [loss.recipient_id for loss in self.losses if loss.category is category]

    def loss_counts(self) -> dict[str, int]:
        return {c.value: len(self.recipients_lost(c)) for c in DISPATCH_LOSSES}

    def to_dict(self) -> dict[str, Any]:
        return {
            "dispatch_id": self.dispatch_id,
            "state": self.state.value,
            "requested_count": self.requested_count,
            "eligible_count": self.eligible_count,
            "sent_count": self.sent_count,
            "tickets": [
                {
                    "recipient_id": t.recipient_id,
                    "submission_id": t.submission_id,
                    "submission_status": t.submission_status.value,
                    "submission_error": t.submission_error,
                    "error_code": t.error_code,
                }
                for t in self.tickets
            ],
            "losses": {
                c.value: self.recipients_lost(c) for c in DISPATCH_LOSSES
            },
            "chunk_failures": [f.to_dict() for f in self.chunk_failures],
        }


@dataclass
class ReceiptReport:
    """Receipts known so far; ``pending`` ids must be polled again later."""

    receipts: dict[str, DeliveryReceipt] = field(default_factory=dict)
    pending: list[str] = field(default_factory=list)
    query_failures: list[ChunkFailure] = field(default_factory=list)
    recipients_to_invalidate: list[str] = field(default_factory=list)

    @property
    def delivered(self) -> list[str]:
        return [sid for sid, r in self.receipts.items() if r.delivered]

    @property
    def permanent_failures(self) -> list[DeliveryReceipt]:
        return [r for r in self.receipts.values() if r.failure_kind is FailureKind.PERMANENT]

    @property
    def transient_failures(self) -> list[DeliveryReceipt]:
        return [r for r in self.receipts.values() if r.failure_kind is FailureKind.TRANSIENT]

    def to_dict(self) -> dict[str, Any]:
        return {
            "receipts": {
                sid: {
                    "final_status": r.final_status.value,
                    "failure_reason": r.failure_reason,
                    "failure_kind": r.failure_kind.value if r.failure_kind else None,
                    "error_code": r.error_code,
                }
                for sid, r in self.receipts.items()
            },
            "pending": list(self.pending),
            "query_failures": [f.to_dict() for f in self.query_failures],
            "recipients_to_invalidate": list(self.recipients_to_invalidate),
        }
