# vamo/core/dispatch/retry.py
from __future__ import annotations

import math
from dataclasses import dataclass

from vamo.config import settings
from vamo.core.dispatch.domain import ChunkFailure, DeliveryReceipt, FailureKind, LossCategory
from vamo.core.dispatch.errors import DispatchConfigError


@dataclass(frozen=True)
class RetryPolicy:
    """
    Caller-owned retry policy for failed chunks and transient receipts.

    ``backoff_seconds[i]`` is the pause before attempt ``i + 1``; the last
    value repeats when there are more attempts than entries. Timed-out
    chunks may already have reached the gateway, so retrying them is opt-out.
    """

    max_attempts: int = 1
    backoff_seconds: tuple[float, ...] = (5.0, 15.0)
    retry_timeouts: bool = True

    def __post_init__(self):
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int) or self.max_attempts < 0:
            raise DispatchConfigError(f"max_attempts must be >= 0, got {self.max_attempts!r}")
        for delay in self.backoff_seconds:
            if not math.isfinite(delay) or delay < 0:
                raise DispatchConfigError(f"backoff delays must be >= 0, got {delay!r}")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            backoff_seconds=settings.retry_backoff_schedule,
        )

    def delay_for(self, attempt: int) -> float:
        """Pause before ``attempt`` (1-based)."""
        if attempt < 1 or not self.backoff_seconds:
            return 0.0
        return self.backoff_seconds[min(attempt, len(self.backoff_seconds)) - 1]

    def should_retry(self, failure: ChunkFailure | DeliveryReceipt, attempt: int = 1) -> bool:
        """Whether ``failure`` may be resent as retry number ``attempt`` (1-based)."""
        if attempt > self.max_attempts:
            return False
        if isinstance(failure, DeliveryReceipt):
            # Permanent receipts (DeviceNotRegistered included) are never resent.
            return failure.failure_kind is FailureKind.TRANSIENT
        if not failure.retryable or not failure.items:
            return False
        if failure.category is LossCategory.TIMEOUT:
            return self.retry_timeouts
        return failure.category is LossCategory.CHUNK_SEND_FAILED
