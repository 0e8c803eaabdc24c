# vamo/core/dispatch/errors.py
"""
Call-aborting errors.

Per-recipient problems (suppressed, bad token, rejected item, failed
chunk, timeout) are never raised; they are accumulated in
``DispatchResult``. Only input that makes the whole call meaningless is
raised, and always before any network call.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for dispatch errors surfaced to the caller."""


class DispatchConfigError(DispatchError, ValueError):
    """Malformed reference point, k, freshness window, role or message."""


class UnresolvableRecipientError(DispatchError, ValueError):
    """A recipient identifier that cannot be resolved to a single recipient.

    There is no fallback receiver: an id that cannot be parsed is rejected,
    never routed to a default account.
    """

    def __init__(self, raw_id: object):
        self.raw_id = raw_id
        super().__init__(f"Cannot resolve recipient id: {raw_id!r}")


class PushGatewayError(Exception):
    """A whole gateway call failed (transport error or request rejected).

    Attributes:
        status:     HTTP status code (0 for connection-level errors).
        error_code: Gateway error code from the response body, if any.
        retryable:  False when repeating the same call cannot succeed
                    (bad credentials, malformed request, payload too large).
    """

    def __init__(
        self,
        status: int,
        message: str,
        *,
        error_code: str | None = None,
        retryable: bool = False,
    ):
        self.status = status
        self.error_code = error_code
        self.retryable = retryable
        super().__init__(f"Push gateway error {status} (code={error_code}): {message}")
