# tests/test_retry.py
from __future__ import annotations

from unittest.mock import patch

import pytest

from conftest import token_for
from vamo.core.dispatch.domain import ChunkFailure, LossCategory, OutboundPush, PushMessage
from vamo.core.dispatch.errors import DispatchConfigError
from vamo.core.dispatch.receipts import parse_receipt
from vamo.core.dispatch.retry import RetryPolicy


def failure(*, category=LossCategory.CHUNK_SEND_FAILED, retryable=True, with_items=True) -> ChunkFailure:
    items = (
        OutboundPush(position=0, recipient_id="d1", message=PushMessage(to=token_for("d1"), title="t", body="b")),
    ) if with_items else ()
    return ChunkFailure(
        chunk_index=0, start=0, end=1, error="boom",
        category=category, retryable=retryable, items=items,
    )


def receipt(code: str) -> dict:
    return {"status": "error", "message": code, "details": {"error": code}}


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 1
        assert policy.delay_for(1) == 5.0
        assert policy.delay_for(2) == 15.0

    def test_last_delay_repeats(self):
        policy = RetryPolicy(max_attempts=5, backoff_seconds=(1.0, 2.0))
        assert [policy.delay_for(a) for a in range(1, 6)] == [1.0, 2.0, 2.0, 2.0, 2.0]

    def test_empty_schedule_means_no_pause(self):
        assert RetryPolicy(backoff_seconds=()).delay_for(3) == 0.0

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": -1},
        {"max_attempts": True},
        {"backoff_seconds": (1.0, -2.0)},
        {"backoff_seconds": (float("inf"),)},
    ])
    def test_invalid_policy(self, kwargs):
        with pytest.raises(DispatchConfigError):
            RetryPolicy(**kwargs)

    def test_from_settings(self):
        with patch("vamo.core.dispatch.retry.settings") as mock_settings:
            mock_settings.retry_max_attempts = 3
            mock_settings.retry_backoff_schedule = (2.0, 4.0)
            policy = RetryPolicy.from_settings()

        assert policy.max_attempts == 3
        assert policy.backoff_seconds == (2.0, 4.0)


class TestShouldRetry:
    def test_retryable_send_failure(self):
        assert RetryPolicy().should_retry(failure())

    def test_non_retryable_failure(self):
        assert not RetryPolicy().should_retry(failure(retryable=False))

    def test_failure_without_items(self):
        assert not RetryPolicy().should_retry(failure(with_items=False))

    def test_timeouts_follow_policy(self):
        timed_out = failure(category=LossCategory.TIMEOUT)
        assert RetryPolicy().should_retry(timed_out)
        assert not RetryPolicy(retry_timeouts=False).should_retry(timed_out)


class TestShouldRetryReceipt:
    @pytest.mark.parametrize("code", ["MessageRateExceeded", "SomethingNew"])
    def test_transient_receipt_retried(self, code):
        assert RetryPolicy().should_retry(parse_receipt("t1", receipt(code)))

    @pytest.mark.parametrize("code", ["DeviceNotRegistered", "MessageTooBig", "InvalidCredentials"])
    def test_permanent_receipt_never_retried(self, code):
        assert not RetryPolicy(max_attempts=5).should_retry(parse_receipt("t1", receipt(code)))

    def test_delivered_receipt_not_retried(self):
        assert not RetryPolicy().should_retry(parse_receipt("t1", {"status": "ok"}))

    def test_attempts_are_bounded(self):
        transient = parse_receipt("t1", receipt("MessageRateExceeded"))
        policy = RetryPolicy(max_attempts=2)
        assert policy.should_retry(transient, attempt=2)
        assert not policy.should_retry(transient, attempt=3)
        assert not RetryPolicy(max_attempts=0).should_retry(transient)
