# vamo/core/dispatch/filters.py
"""
Pre-send filters. Both are pure: no store access, no gateway calls.

Each returns ``(kept, losses)`` so the orchestrator can report every
dropped recipient exactly once under its own loss category.
"""
from __future__ import annotations

import re
from typing import Iterable, Sequence

from vamo.core.dispatch.domain import LossCategory, Recipient, RecipientLoss
from vamo.infra.logging_config import get_logger, mask_push_token

logger = get_logger(__name__)


class PreferenceFilter:
    """Drop recipients that explicitly disabled the notification category."""

    def apply(
        self, candidates: Sequence[Recipient], category: str,
    ) -> tuple[list[Recipient], list[RecipientLoss]]:
        kept: list[Recipient] = []
        losses: list[RecipientLoss] = []
        for recipient in candidates:
            if recipient.allows(category):
                kept.append(recipient)
            else:
                losses.append(RecipientLoss(
                    recipient_id=recipient.id,
                    category=LossCategory.PREFERENCE_SUPPRESSED,
                    reason=f"{category} disabled by recipient",
                ))

        if losses:
            logger.info(
                "%d recipient(s) suppressed by preferences",
                len(losses), extra={"category": category},
            )
        return kept, losses


# Expo accepts its own wrapped tokens plus raw UUID-shaped device tokens.
_EXPO_TOKEN_PATTERNS = (
    re.compile(r"^(?:ExponentPushToken|ExpoPushToken)\[[^\[\]\s]+\]$"),
    re.compile(r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE),
)


class TokenValidator:
    """Structural check of push addresses against the gateway's token grammar."""

    def __init__(self, patterns: Iterable[re.Pattern[str]] = _EXPO_TOKEN_PATTERNS):
        self._patterns = tuple(patterns)

    def is_valid(self, push_address: str | None) -> bool:
        if not isinstance(push_address, str) or not push_address:
            return False
        return any(p.match(push_address) for p in self._patterns)

    def partition(
        self, recipients: Sequence[Recipient],
    ) -> tuple[list[Recipient], list[RecipientLoss]]:
        """Split into sendable recipients and ``missing_token``/``invalid_token`` losses."""
        valid: list[Recipient] = []
        losses: list[RecipientLoss] = []
        for recipient in recipients:
            address = recipient.push_address
            if address is None or not address.strip():
                losses.append(RecipientLoss(
                    recipient_id=recipient.id,
                    category=LossCategory.MISSING_TOKEN,
                    reason="recipient has no push address",
                ))
            elif not self.is_valid(address):
                logger.warning(
                    "Invalid push token %s", mask_push_token(address),
                    extra={"recipient_id": recipient.id},
                )
                losses.append(RecipientLoss(
                    recipient_id=recipient.id,
                    category=LossCategory.INVALID_TOKEN,
                    reason="push address does not match gateway token format",
                ))
            else:
                valid.append(recipient)
        return valid, losses
