# vamo/core/dispatch/orchestrator.py
"""
Dispatch orchestration.

Flow for one request:

    selecting -> filtering -> validating -> sending -> completed

- An empty selection (or an unknown single recipient) goes straight to
  ``completed`` with ``sent_count == 0`` and no gateway call.
- Partial chunk failures still complete; they are reported, not retried.
- Receipt reconciliation and retries are separate calls made by the
  caller (``reconcile`` / ``retry_failed_chunks`` / ``retry_transient``).

Only ``DispatchConfigError`` and ``UnresolvableRecipientError`` abort a
call, and both are raised before anything is sent.
"""
from __future__ import annotations

import asyncio
import math
import uuid
from dataclasses import replace
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

from vamo.config import settings
from vamo.core.dispatch.batching import BatchDispatcher, BatchOutcome
from vamo.core.dispatch.domain import (
    ChunkFailure,
    DispatchResult,
    DispatchState,
    LossCategory,
    NearestK,
    NotificationRequest,
    OutboundPush,
    ReceiptReport,
    Recipient,
    RecipientLoss,
    RecipientRole,
    SingleRecipient,
)
from vamo.core.dispatch.errors import DispatchConfigError, UnresolvableRecipientError
from vamo.core.dispatch.filters import PreferenceFilter, TokenValidator
from vamo.core.dispatch.ports import CandidateStore, PushGateway, RecipientPreferenceStore
from vamo.core.dispatch.receipts import PendingTicketRegistry, ReceiptReconciler
from vamo.core.dispatch.retry import RetryPolicy
from vamo.core.dispatch.selector import GeoCandidateSelector, coerce_role
from vamo.infra.logging_config import LogContext, get_logger
from vamo.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

# Key under which a single recipient's own id is added to the message data.
ROLE_DATA_KEYS = {
    RecipientRole.CLIENT: "clientId",
    RecipientRole.DRIVER: "driverId",
    RecipientRole.COURIER: "deliveryPersonId",
}


def resolve_recipient_id(raw: Any) -> str:
    """
    Normalise a recipient id to its canonical string form.

    Accepts positive integers, integral floats and strings holding a
    positive integer. Anything else raises ``UnresolvableRecipientError``.
    """
    if raw is None or isinstance(raw, bool):
        raise UnresolvableRecipientError(raw)

    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, float):
        if not math.isfinite(raw) or not raw.is_integer():
            raise UnresolvableRecipientError(raw)
        value = int(raw)
    elif isinstance(raw, str):
        text = raw.strip()
        if not (text.isascii() and text.isdigit()):
            raise UnresolvableRecipientError(raw)
        value = int(text)
    else:
        raise UnresolvableRecipientError(raw)

    if value < 1:
        raise UnresolvableRecipientError(raw)
    return str(value)


def validate_request(request: NotificationRequest) -> None:
    for name in ("category", "title", "body"):
        value = getattr(request, name)
        if not isinstance(value, str) or not value.strip():
            raise DispatchConfigError(f"Notification {name} must be a non-empty string")
    if not isinstance(request.targeting, (SingleRecipient, NearestK)):
        raise DispatchConfigError(f"Unsupported targeting: {request.targeting!r}")


def _sent_items(items: Sequence[OutboundPush], outcome: BatchOutcome) -> list[OutboundPush]:
    """Items that got a ticket, in ticket order (``items`` sorted by position)."""
    failed = {item.position for failure in outcome.chunk_failures for item in failure.items}
    return [item for item in items if item.position not in failed]


def _rebase_failures(
    failures: Sequence[ChunkFailure], origins: Mapping[int, ChunkFailure],
) -> list[ChunkFailure]:
    """
    Map failures of a retry batch back onto the chunk index and candidate
    range of the send they came from. A retry chunk spanning two original
    chunks is split in two.
    """
    rebased: list[ChunkFailure] = []
    for failure in failures:
        groups: dict[int, list[OutboundPush]] = {}
        for item in failure.items:
            groups.setdefault(origins[item.position].chunk_index, []).append(item)
        for chunk_index, items in groups.items():
            rebased.append(replace(
                failure,
                chunk_index=chunk_index,
                start=items[0].position,
                end=items[-1].position + 1,
                items=tuple(items),
            ))
    return rebased


class DispatchOrchestrator:
    def __init__(
        self,
        *,
        candidates: CandidateStore,
        recipients: RecipientPreferenceStore,
        gateway: PushGateway,
        registry: PendingTicketRegistry | None = None,
        selector: GeoCandidateSelector | None = None,
        preference_filter: PreferenceFilter | None = None,
        token_validator: TokenValidator | None = None,
        dispatcher: BatchDispatcher | None = None,
        reconciler: ReceiptReconciler | None = None,
        deadline: float | None = None,
    ):
        self.recipients = recipients
        self.registry = registry
        self.selector = selector or GeoCandidateSelector(candidates)
        self.preference_filter = preference_filter or PreferenceFilter()
        self.token_validator = token_validator or TokenValidator()
        self.dispatcher = dispatcher or BatchDispatcher(gateway)
        self.reconciler = reconciler or ReceiptReconciler(gateway, registry=registry)
        self.deadline = deadline if deadline is not None else settings.dispatch_deadline_seconds

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        request: NotificationRequest,
        *,
        deadline: float | None = None,
        request_id: str | None = None,
    ) -> DispatchResult:
        validate_request(request)
        targeting = request.targeting

        # Resolve everything that can be rejected before touching any store.
        single_id: str | None = None
        single_role: RecipientRole | None = None
        if isinstance(targeting, SingleRecipient):
            single_id = resolve_recipient_id(targeting.recipient_id)
            single_role = coerce_role(targeting.role)

        result = DispatchResult(
            requested_count=request.requested_count,
            dispatch_id=uuid.uuid4().hex,
        )
        log = LogContext(
            logger,
            request_id=request_id,
            dispatch_id=result.dispatch_id,
            recipient_id=single_id,
            category=request.category,
        )

        # selecting
        if single_id is not None:
            recipient = await self.recipients.get_recipient(single_id, single_role)
            if recipient is None:
                log.info("Recipient not found, nothing to send")
                result.losses.append(RecipientLoss(
                    recipient_id=single_id,
                    category=LossCategory.MISSING_TOKEN,
                    reason="recipient not found",
                ))
                candidates: list[Recipient] = []
            else:
                candidates = [recipient]
        else:
            candidates = await self.selector.select(
                lat=targeting.lat, lng=targeting.lng, role=targeting.role, k=targeting.k,
            )

        result.eligible_count = len(candidates)
        if not candidates:
            log.info("No eligible recipients")
            return self._complete(result, request.category)

        # filtering
        result.state = DispatchState.FILTERING
        kept, suppressed = self.preference_filter.apply(candidates, request.category)
        result.losses.extend(suppressed)

        # validating
        result.state = DispatchState.VALIDATING
        valid, invalid = self.token_validator.partition(kept)
        result.losses.extend(invalid)

        if not valid:
            log.info("All %d candidate(s) filtered out before sending", len(candidates))
            return self._complete(result, request.category)

        # sending
        result.state = DispatchState.SENDING
        outbound = [
            OutboundPush(
                position=i,
                recipient_id=r.id,
                message=request.message_for(
                    r, {ROLE_DATA_KEYS[r.role]: r.id} if single_id is not None else None,
                ),
            )
            for i, r in enumerate(valid)
        ]
        result.recipient_order = [item.recipient_id for item in outbound]

        outcome = await self.dispatcher.dispatch(
            outbound, deadline=deadline if deadline is not None else self.deadline,
        )
        result.tickets = outcome.tickets
        result.chunk_failures = outcome.chunk_failures

        if self.registry is not None:
            self.registry.track(result.tickets, _sent_items(outbound, outcome))

        log.info(
            "Dispatch sent: requested=%d eligible=%d sent=%d failed_chunks=%d",
            result.requested_count, result.eligible_count, result.sent_count,
            len(result.chunk_failures),
        )
        return self._complete(result, request.category)

    def _complete(self, result: DispatchResult, category: str) -> DispatchResult:
        result.state = DispatchState.COMPLETED
        DispatchMetrics.dispatch_completed(category, result.sent_count, result.eligible_count)
        for loss, count in result.loss_counts().items():
            DispatchMetrics.recipients_lost(category, loss, count)
        return result

    async def notify_nearest(
        self,
        *,
        category: str,
        title: str,
        body: str,
        lat: float,
        lng: float,
        role: RecipientRole | str = RecipientRole.DRIVER,
        k: int | None = None,
        payload: Mapping[str, Any] | None = None,
        **options: Any,
    ) -> DispatchResult:
        """Notify the ``k`` nearest eligible providers around (lat, lng)."""
        request = NotificationRequest(
            category=category,
            title=title,
            body=body,
            targeting=NearestK(
                lat=lat, lng=lng, role=coerce_role(role),
                k=settings.dispatch_max_candidates if k is None else k,
            ),
            payload=dict(payload or {}),
            **options,
        )
        return await self.dispatch(request)

    async def notify_recipient(
        self,
        recipient_id: Any,
        *,
        category: str,
        title: str,
        body: str,
        role: RecipientRole | str = RecipientRole.CLIENT,
        payload: Mapping[str, Any] | None = None,
        **options: Any,
    ) -> DispatchResult:
        """Notify one known recipient."""
        request = NotificationRequest(
            category=category,
            title=title,
            body=body,
            targeting=SingleRecipient(recipient_id=recipient_id, role=coerce_role(role)),
            payload=dict(payload or {}),
            **options,
        )
        return await self.dispatch(request)

    # ------------------------------------------------------------------
    # Caller-invoked follow-ups
    # ------------------------------------------------------------------

    async def reconcile(
        self, submission_ids: Iterable[Any], *, deadline: float | None = None,
    ) -> ReceiptReport:
        return await self.reconciler.reconcile(
            submission_ids, deadline=deadline if deadline is not None else self.deadline,
        )

    async def retry_failed_chunks(
        self,
        result: DispatchResult,
        policy: RetryPolicy,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        deadline: float | None = None,
    ) -> DispatchResult:
        """
        Resend the items of retryable chunk failures, at most
        ``policy.max_attempts`` times. Returns a new result; ``result`` is
        left untouched. Non-retryable failures are carried over as they are,
        and failures that persist keep their original chunk index and range.
        """
        failures = list(result.chunk_failures)
        tickets = list(result.tickets)
        log = LogContext(logger, dispatch_id=result.dispatch_id)

        for attempt in range(1, policy.max_attempts + 1):
            to_retry = [f for f in failures if policy.should_retry(f, attempt)]
            if not to_retry:
                break

            delay = policy.delay_for(attempt)
            if delay > 0:
                await sleep(delay)

            origins = {item.position: f for f in to_retry for item in f.items}
            items = sorted(
                (item for f in to_retry for item in f.items), key=lambda item: item.position,
            )
            log.info("Retry attempt %d: resending %d item(s)", attempt, len(items))

            outcome = await self.dispatcher.dispatch(
                items, deadline=deadline if deadline is not None else self.deadline,
            )
            tickets.extend(outcome.tickets)
            if self.registry is not None:
                self.registry.track(outcome.tickets, _sent_items(items, outcome), attempt=attempt)

            retried = {id(f) for f in to_retry}
            failures = [f for f in failures if id(f) not in retried]
            failures.extend(_rebase_failures(outcome.chunk_failures, origins))
            failures.sort(key=lambda f: (f.chunk_index, f.start))

        order = {rid: i for i, rid in enumerate(result.recipient_order)}
        tickets.sort(key=lambda t: order.get(t.recipient_id, len(order)))

        return replace(
            result,
            tickets=tickets,
            chunk_failures=failures,
            losses=list(result.losses),
            recipient_order=list(result.recipient_order),
            state=DispatchState.COMPLETED,
        )

    async def retry_transient(
        self,
        report: ReceiptReport,
        policy: RetryPolicy,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        deadline: float | None = None,
    ) -> DispatchResult:
        """
        Resend messages whose receipt came back with a transient failure.

        Only tickets tracked by this process, with their message, can be
        resent. Each one is resent at most once per ticket, and the new
        tickets carry the next attempt number so ``policy.max_attempts``
        bounds the chain. Permanent failures are never resent.
        """
        if self.registry is None:
            raise DispatchConfigError("Resending transient failures needs a pending ticket registry")

        items: list[OutboundPush] = []
        attempts: list[int] = []
        for receipt in report.transient_failures:
            entry = self.registry.entry(receipt.submission_id)
            if entry is None or entry.push is None:
                continue
            attempt = entry.attempt + 1
            if not policy.should_retry(receipt, attempt):
                continue
            self.registry.mark_resent(receipt.submission_id)
            items.append(replace(entry.push, position=len(items)))
            attempts.append(attempt)

        result = DispatchResult(
            requested_count=len(items),
            eligible_count=len(items),
            dispatch_id=uuid.uuid4().hex,
            recipient_order=[item.recipient_id for item in items],
        )
        log = LogContext(logger, dispatch_id=result.dispatch_id)
        if not items:
            result.state = DispatchState.COMPLETED
            return result

        delay = policy.delay_for(max(attempts))
        if delay > 0:
            await sleep(delay)

        result.state = DispatchState.SENDING
        log.info("Resending %d transiently failed message(s)", len(items))
        outcome = await self.dispatcher.dispatch(
            items, deadline=deadline if deadline is not None else self.deadline,
        )
        result.tickets = outcome.tickets
        result.chunk_failures = outcome.chunk_failures
        for ticket, item in zip(outcome.tickets, _sent_items(items, outcome)):
            self.registry.remember(ticket, item, attempt=attempts[item.position])

        result.state = DispatchState.COMPLETED
        return result
