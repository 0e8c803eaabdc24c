# tests/test_batching.py
"""Tests for chunked submission in vamo/core/dispatch/batching.py."""
from __future__ import annotations

import pytest

from conftest import FakePushGateway, token_for
from vamo.core.dispatch.batching import BatchDispatcher, make_chunks, parse_ticket
from vamo.core.dispatch.domain import LossCategory, OutboundPush, PushMessage, SubmissionStatus
from vamo.core.dispatch.errors import DispatchConfigError, PushGatewayError


def outbound(n: int) -> list[OutboundPush]:
    return [
        OutboundPush(
            position=i,
            recipient_id=f"r{i}",
            message=PushMessage(to=token_for(f"r{i}"), title="Nouvelle demande", body="Course"),
        )
        for i in range(n)
    ]


# ============================================================================
# Chunking
# ============================================================================

class TestChunking:
    @pytest.mark.parametrize("n,size,expected", [
        (7, 3, [(0, 3), (3, 6), (6, 7)]),
        (6, 3, [(0, 3), (3, 6)]),
        (1, 100, [(0, 1)]),
        (0, 5, []),
    ])
    def test_exact_cover(self, n, size, expected):
        assert make_chunks(list(range(n)), size) == expected

    def test_chunk_count_is_ceiling(self):
        for n in range(1, 23):
            ranges = make_chunks(list(range(n)), 5)
            assert len(ranges) == -(-n // 5)
            covered = [i for start, end in ranges for i in range(start, end)]
            assert covered == list(range(n))

    def test_zero_size_rejected(self):
        with pytest.raises(DispatchConfigError):
            make_chunks([1], 0)

    def test_chunk_size_never_exceeds_gateway_limit(self):
        dispatcher = BatchDispatcher(FakePushGateway(max_send_batch=10), max_chunk_size=50)
        assert dispatcher.max_chunk_size == 10

    def test_invalid_chunk_size(self):
        with pytest.raises(DispatchConfigError):
            BatchDispatcher(FakePushGateway(), max_chunk_size=0)


# ============================================================================
# parse_ticket
# ============================================================================

class TestParseTicket:
    def test_ok_ticket(self):
        ticket = parse_ticket("r1", {"status": "ok", "id": "abc"})
        assert ticket.ok
        assert ticket.submission_id == "abc"

    def test_error_ticket_keeps_code(self):
        ticket = parse_ticket("r1", {
            "status": "error",
            "message": "\"ExponentPushToken[x]\" is not a registered push notification recipient",
            "details": {"error": "DeviceNotRegistered"},
        })
        assert ticket.submission_status is SubmissionStatus.ERROR
        assert ticket.error_code == "DeviceNotRegistered"
        assert ticket.invalidates_token

    def test_malformed_ticket_is_rejected(self):
        ticket = parse_ticket("r1", "garbage")
        assert not ticket.ok
        assert "Malformed" in ticket.submission_error


# ============================================================================
# dispatch()
# ============================================================================

class TestDispatch:
    @pytest.mark.asyncio
    async def test_empty_input_makes_no_call(self, gateway):
        outcome = await BatchDispatcher(gateway).dispatch([])
        assert outcome.tickets == []
        assert outcome.chunk_failures == []
        assert gateway.sent_batches == []

    @pytest.mark.asyncio
    async def test_seven_items_limit_five(self):
        gateway = FakePushGateway(max_send_batch=5)
        items = outbound(7)

        outcome = await BatchDispatcher(gateway).dispatch(items)

        assert sorted(len(b) for b in gateway.sent_batches) == [2, 5]
        assert [t.recipient_id for t in outcome.tickets] == [f"r{i}" for i in range(7)]
        assert all(t.ok for t in outcome.tickets)
        assert outcome.chunk_failures == []

    @pytest.mark.asyncio
    async def test_failed_chunk_is_isolated(self):
        gateway = FakePushGateway(max_send_batch=5)
        gateway.fail_addresses = {token_for("r7")}
        gateway.fail_error = PushGatewayError(0, "ClientConnectorError", retryable=True)

        outcome = await BatchDispatcher(gateway).dispatch(outbound(10))

        assert [t.recipient_id for t in outcome.tickets] == ["r0", "r1", "r2", "r3", "r4"]
        assert len(outcome.chunk_failures) == 1
        failure = outcome.chunk_failures[0]
        assert (failure.chunk_index, failure.start, failure.end) == (1, 5, 10)
        assert failure.recipient_ids == ("r5", "r6", "r7", "r8", "r9")
        assert failure.category is LossCategory.CHUNK_SEND_FAILED
        assert failure.retryable is True
        assert "ClientConnectorError" in failure.error

    @pytest.mark.asyncio
    async def test_non_retryable_gateway_error(self):
        gateway = FakePushGateway(max_send_batch=5)
        gateway.fail_addresses = {token_for("r0")}
        gateway.fail_error = PushGatewayError(400, "Invalid payload", retryable=False)

        outcome = await BatchDispatcher(gateway).dispatch(outbound(3))

        assert outcome.tickets == []
        assert outcome.chunk_failures[0].retryable is False

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_chunk_failure(self):
        gateway = FakePushGateway(max_send_batch=2)
        gateway.fail_addresses = {token_for("r0")}
        gateway.fail_error = RuntimeError("boom")

        outcome = await BatchDispatcher(gateway).dispatch(outbound(4))

        assert [t.recipient_id for t in outcome.tickets] == ["r2", "r3"]
        assert outcome.chunk_failures[0].recipient_ids == ("r0", "r1")
        assert "RuntimeError" in outcome.chunk_failures[0].error

    @pytest.mark.asyncio
    async def test_rejected_item_still_gets_ticket(self, gateway):
        gateway.ticket_overrides[token_for("r1")] = {
            "status": "error",
            "message": "not registered",
            "details": {"error": "DeviceNotRegistered"},
        }

        outcome = await BatchDispatcher(gateway).dispatch(outbound(3))

        assert len(outcome.tickets) == 3
        assert [t.ok for t in outcome.tickets] == [True, False, True]
        assert outcome.tickets[1].invalidates_token

    @pytest.mark.asyncio
    async def test_ticket_count_mismatch_is_chunk_failure(self):
        class ShortGateway(FakePushGateway):
            async def send(self, messages):
                tickets = await super().send(messages)
                return tickets[:-1]

        outcome = await BatchDispatcher(ShortGateway()).dispatch(outbound(3))

        assert outcome.tickets == []
        failure = outcome.chunk_failures[0]
        assert failure.retryable is False
        assert "mismatch" in failure.error

    @pytest.mark.asyncio
    async def test_tickets_keep_candidate_order_when_chunks_finish_out_of_order(self):
        gateway = FakePushGateway(max_send_batch=2)
        gateway.slow_addresses = {token_for("r0")}
        gateway.slow_seconds = 0.05

        outcome = await BatchDispatcher(gateway).dispatch(outbound(6))

        assert [t.recipient_id for t in outcome.tickets] == [f"r{i}" for i in range(6)]

    @pytest.mark.asyncio
    async def test_deadline_reports_timeout_without_losing_finished_chunks(self):
        gateway = FakePushGateway(max_send_batch=3)
        gateway.slow_addresses = {token_for("r4")}
        gateway.slow_seconds = 5.0

        outcome = await BatchDispatcher(gateway).dispatch(outbound(6), deadline=0.2)

        assert [t.recipient_id for t in outcome.tickets] == ["r0", "r1", "r2"]
        assert len(outcome.chunk_failures) == 1
        failure = outcome.chunk_failures[0]
        assert failure.category is LossCategory.TIMEOUT
        assert failure.recipient_ids == ("r3", "r4", "r5")

    @pytest.mark.asyncio
    async def test_non_positive_deadline_rejected(self, gateway):
        with pytest.raises(DispatchConfigError):
            await BatchDispatcher(gateway).dispatch(outbound(1), deadline=0)
        assert gateway.sent_batches == []
