# vamo/core/dispatch/batching.py
"""
Chunked, concurrent submission of push messages.

Contract:
- ``n`` items become ``ceil(n / size)`` chunks that cover the input exactly
  once, in order.
- One gateway call per chunk, all chunks in flight at once.
- A chunk that fails as a whole becomes one ``ChunkFailure``; the other
  chunks are unaffected.
- Chunks still running at the deadline are cancelled and reported as
  ``timeout`` failures. Chunks that already answered keep their tickets.
- No retries here. ``DispatchOrchestrator.retry_failed_chunks`` does that
  on request.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from vamo.config import settings
from vamo.core.dispatch.domain import (
    ChunkFailure,
    DispatchTicket,
    LossCategory,
    OutboundPush,
    SubmissionStatus,
)
from vamo.core.dispatch.errors import DispatchConfigError, PushGatewayError
from vamo.core.dispatch.ports import PushGateway
from vamo.infra.logging_config import get_logger
from vamo.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


@dataclass(frozen=True)
class Chunk:
    index: int
    start: int
    end: int
    items: tuple[OutboundPush, ...]


@dataclass
class BatchOutcome:
    tickets: list[DispatchTicket] = field(default_factory=list)
    chunk_failures: list[ChunkFailure] = field(default_factory=list)


def make_chunks(items: Sequence[Any], size: int) -> list[tuple[int, int]]:
    """``[start, end)`` ranges of at most ``size`` items covering ``items`` in order."""
    if size < 1:
        raise DispatchConfigError(f"Chunk size must be >= 1, got {size}")
    return [(start, min(start + size, len(items))) for start in range(0, len(items), size)]


def parse_ticket(recipient_id: str, raw: Any) -> DispatchTicket:
    """One gateway ticket dict -> ``DispatchTicket``. Malformed tickets count as rejected."""
    if not isinstance(raw, Mapping):
        return DispatchTicket(
            recipient_id=recipient_id,
            submission_id=None,
            submission_status=SubmissionStatus.ERROR,
            submission_error=f"Malformed ticket: {raw!r}",
        )

    if raw.get("status") == SubmissionStatus.OK.value:
        return DispatchTicket(
            recipient_id=recipient_id,
            submission_id=raw.get("id"),
            submission_status=SubmissionStatus.OK,
        )

    details = raw.get("details") if isinstance(raw.get("details"), Mapping) else {}
    return DispatchTicket(
        recipient_id=recipient_id,
        submission_id=raw.get("id"),
        submission_status=SubmissionStatus.ERROR,
        submission_error=raw.get("message") or f"Ticket status: {raw.get('status')!r}",
        error_code=details.get("error"),
    )


class BatchDispatcher:
    def __init__(self, gateway: PushGateway, *, max_chunk_size: int | None = None):
        limit = getattr(gateway, "max_send_batch", None) or settings.push_send_chunk_limit
        size = max_chunk_size if max_chunk_size is not None else limit
        if isinstance(size, bool) or not isinstance(size, int) or size < 1:
            raise DispatchConfigError(f"max_chunk_size must be a positive integer, got {size!r}")

        self.gateway = gateway
        # Never exceed what the gateway accepts in one call.
        self.max_chunk_size = min(size, limit)

    def chunk(self, outbound: Sequence[OutboundPush]) -> list[Chunk]:
        return [
            Chunk(index=i, start=start, end=end, items=tuple(outbound[start:end]))
            for i, (start, end) in enumerate(make_chunks(outbound, self.max_chunk_size))
        ]

    async def dispatch(
        self,
        outbound: Sequence[OutboundPush],
        *,
        deadline: float | None = None,
    ) -> BatchOutcome:
        """
        Submit ``outbound`` and collect tickets.

        Args:
            outbound: messages in candidate order.
            deadline: seconds to wait for all chunks; None waits indefinitely.

        Returns:
            BatchOutcome with tickets in candidate order and failures in chunk order.
        """
        if deadline is not None and deadline <= 0:
            raise DispatchConfigError(f"deadline must be positive, got {deadline}")
        if not outbound:
            return BatchOutcome()

        chunks = self.chunk(outbound)
        buffer_lock = asyncio.Lock()
        tickets: list[tuple[int, DispatchTicket]] = []
        failures: list[ChunkFailure] = []

        async def record_failure(chunk: Chunk, error: str, reason: str, *,
                                 category: LossCategory = LossCategory.CHUNK_SEND_FAILED,
                                 retryable: bool = True) -> None:
            failure = ChunkFailure(
                chunk_index=chunk.index,
                start=chunk.start,
                end=chunk.end,
                error=error,
                category=category,
                retryable=retryable,
                items=chunk.items,
            )
            DispatchMetrics.chunk_failed(reason)
            async with buffer_lock:
                failures.append(failure)

        async def submit(chunk: Chunk) -> None:
            try:
                with DispatchMetrics.track_chunk_latency("send"):
                    raw_tickets = await self.gateway.send([item.message for item in chunk.items])
            except PushGatewayError as e:
                logger.warning(
                    "Chunk %d [%d:%d] rejected by gateway: %s (retryable=%s)",
                    chunk.index, chunk.start, chunk.end, e, e.retryable,
                )
                await record_failure(chunk, str(e), "gateway_error", retryable=e.retryable)
                return
            except Exception as e:
                logger.exception("Chunk %d [%d:%d] send failed", chunk.index, chunk.start, chunk.end)
                await record_failure(chunk, f"{type(e).__name__}: {e}", "unexpected")
                return

            if not isinstance(raw_tickets, list) or len(raw_tickets) != len(chunk.items):
                got = len(raw_tickets) if isinstance(raw_tickets, list) else type(raw_tickets).__name__
                logger.error(
                    "Chunk %d: gateway returned %s ticket(s) for %d message(s)",
                    chunk.index, got, len(chunk.items),
                )
                # Some items may have been accepted; resending could duplicate them.
                await record_failure(
                    chunk, f"Ticket count mismatch: expected {len(chunk.items)}, got {got}",
                    "length_mismatch", retryable=False,
                )
                return

            parsed = [
                (item.position, parse_ticket(item.recipient_id, raw))
                for item, raw in zip(chunk.items, raw_tickets)
            ]
            async with buffer_lock:
                tickets.extend(parsed)

        tasks = {asyncio.create_task(submit(chunk)): chunk for chunk in chunks}
        done, pending = await asyncio.wait(tasks.keys(), timeout=deadline)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            for task in pending:
                chunk = tasks[task]
                logger.warning(
                    "Chunk %d [%d:%d] timed out after %ss",
                    chunk.index, chunk.start, chunk.end, deadline,
                )
                await record_failure(
                    chunk, f"Deadline of {deadline}s exceeded", "timeout",
                    category=LossCategory.TIMEOUT,
                )

        tickets.sort(key=lambda pair: pair[0])
        failures.sort(key=lambda f: f.chunk_index)

        logger.info(
            "Batch submitted: %d message(s) in %d chunk(s), %d ticket(s), %d failed chunk(s)",
            len(outbound), len(chunks), len(tickets), len(failures),
        )
        return BatchOutcome(
            tickets=[ticket for _, ticket in tickets],
            chunk_failures=failures,
        )
