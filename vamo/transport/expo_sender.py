# vamo/transport/expo_sender.py
"""
Expo Push API gateway.

The only module that knows Expo's wire format:
- POST {expo_push_send_url}      [message, ...]   -> {"data": [ticket, ...]}
- POST {expo_push_receipts_url}  {"ids": [...]}   -> {"data": {id: receipt}}

Error classification (PushGatewayError.retryable):
- 429 / TOO_MANY_REQUESTS        → retryable
- 5xx                            → retryable
- Network / timeout              → retryable
- 401 / 403 (access token)       → NOT retryable
- Other 4xx, request-level errors → NOT retryable (same payload fails again)

HTTP session lifecycle:
- Uses the shared push session from vamo.infra.http_client.
- Call close_all_sessions() during application shutdown.
"""
from __future__ import annotations

import asyncio
from typing import Any, Sequence

import aiohttp

from vamo.config import settings
from vamo.core.dispatch.domain import PushMessage
from vamo.core.dispatch.errors import PushGatewayError
from vamo.infra.http_client import get_push_session
from vamo.infra.logging_config import get_logger
from vamo.infra.metrics import inc_counter

logger = get_logger(__name__)

# Expo hard limits per request.
EXPO_MAX_SEND_BATCH = 100
EXPO_MAX_RECEIPT_BATCH = 1000


def to_expo_message(message: PushMessage) -> dict[str, Any]:
    """PushMessage -> Expo message object (unset optional fields omitted)."""
    payload: dict[str, Any] = {
        "to": message.to,
        "title": message.title,
        "body": message.body,
        "data": dict(message.data),
    }
    if message.sound:
        payload["sound"] = message.sound
    if message.priority:
        payload["priority"] = message.priority
    if message.channel_id:
        payload["channelId"] = message.channel_id
    return payload


def _first_error(body: dict | None) -> tuple[str | None, str]:
    errors = (body or {}).get("errors") or []
    if errors and isinstance(errors[0], dict):
        return errors[0].get("code"), errors[0].get("message", "Unknown error")
    return None, "Unknown error"


class ExpoPushGateway:
    """PushGateway implementation for the Expo Push API."""

    def __init__(
        self,
        *,
        send_url: str | None = None,
        receipts_url: str | None = None,
        access_token: str | None = None,
        max_send_batch: int | None = None,
        max_receipt_batch: int | None = None,
    ):
        self.send_url = send_url or settings.expo_push_send_url
        self.receipts_url = receipts_url or settings.expo_push_receipts_url
        self.access_token = access_token if access_token is not None else settings.expo_access_token
        self.max_send_batch = min(max_send_batch or settings.push_send_chunk_limit, EXPO_MAX_SEND_BATCH)
        self.max_receipt_batch = min(
            max_receipt_batch or settings.push_receipt_chunk_limit, EXPO_MAX_RECEIPT_BATCH,
        )

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def send(self, messages: Sequence[PushMessage]) -> list[dict[str, Any]]:
        """
        Submit up to ``max_send_batch`` messages in one request.

        Returns:
            Expo tickets, one per message, same order.

        Raises:
            PushGatewayError: the request as a whole failed.
        """
        if len(messages) > self.max_send_batch:
            raise PushGatewayError(
                0, f"{len(messages)} messages exceed batch limit {self.max_send_batch}",
                retryable=False,
            )

        body = await self._post(self.send_url, [to_expo_message(m) for m in messages], "send")
        tickets = body.get("data")
        if not isinstance(tickets, list):
            raise PushGatewayError(200, "Response has no ticket list", retryable=False)

        inc_counter("expo_messages_submitted", len(messages))
        return tickets

    async def get_receipts(self, submission_ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        """
        Look up receipts for up to ``max_receipt_batch`` ticket ids.

        Ids without a receipt yet are absent from the result.
        """
        if len(submission_ids) > self.max_receipt_batch:
            raise PushGatewayError(
                0, f"{len(submission_ids)} ids exceed receipt batch limit {self.max_receipt_batch}",
                retryable=False,
            )

        body = await self._post(self.receipts_url, {"ids": list(submission_ids)}, "receipts")
        receipts = body.get("data")
        if not isinstance(receipts, dict):
            raise PushGatewayError(200, "Response has no receipt map", retryable=True)
        return receipts

    async def _post(self, url: str, payload: Any, operation: str) -> dict:
        try:
            session = get_push_session()
            async with session.post(url, json=payload, headers=self._headers()) as resp:
                body = await _safe_response_json(resp)

                if resp.status == 200 and body is not None and not body.get("errors"):
                    inc_counter("expo_requests_ok", operation=operation)
                    return body

                # --- Error path ------------------------------------------------

                error_code, error_msg = _first_error(body)

                if resp.status == 429 or error_code == "TOO_MANY_REQUESTS":
                    logger.warning(f"Expo rate limit: op={operation}, status={resp.status}")
                    inc_counter("expo_requests_rate_limited", operation=operation)
                    raise PushGatewayError(resp.status, error_msg, error_code=error_code, retryable=True)

                if resp.status >= 500:
                    logger.error(f"Expo server error: op={operation}, status={resp.status}, code={error_code}")
                    inc_counter("expo_requests_server_error", operation=operation)
                    raise PushGatewayError(resp.status, error_msg, error_code=error_code, retryable=True)

                if resp.status in (401, 403):
                    logger.error(f"Expo auth error: op={operation}, status={resp.status}, code={error_code}")
                    inc_counter("expo_requests_auth_error", operation=operation)
                    raise PushGatewayError(resp.status, error_msg, error_code=error_code, retryable=False)

                if body is None and resp.status == 200:
                    # 200 with an unreadable body: the gateway may have accepted it.
                    logger.error(f"Expo returned non-JSON body: op={operation}, status={resp.status}")
                    inc_counter("expo_requests_error", operation=operation)
                    raise PushGatewayError(resp.status, "Non-JSON response", retryable=False)

                logger.error(f"Expo request rejected: op={operation}, status={resp.status}, code={error_code}")
                inc_counter("expo_requests_error", operation=operation)
                raise PushGatewayError(resp.status, error_msg, error_code=error_code, retryable=False)

        except PushGatewayError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error(f"Expo connection error: op={operation}, {type(exc).__name__}")
            inc_counter("expo_requests_connection_error", operation=operation)
            raise PushGatewayError(0, type(exc).__name__, retryable=True) from exc


async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not a JSON object."""
    try:
        body = await resp.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        logger.warning(f"Expo returned non-JSON body: status={resp.status}")
        return None
    return body if isinstance(body, dict) else None
