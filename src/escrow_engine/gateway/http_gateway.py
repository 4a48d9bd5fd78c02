"""HTTP payment gateway adapter.

Talks to a generic JSON REST payment provider with bearer-token auth:

* ``POST /v1/payment-intents``          -> ``{"intent_ref": ...}``
* ``GET  /v1/payment-intents/{ref}``    -> ``{"status": "PAID" | ...}``
* ``POST /v1/refunds``                  -> ``{"refund_ref": ...}``
* ``POST /v1/payouts``                  -> ``{"payout_ref": ...}``

Refunds and payouts carry an ``Idempotency-Key`` header so that a retry
after a lost response never moves money twice.

Usage::

    async with HttpPaymentGateway(config.base_url, api_key, checksum_key) as gw:
        ref = await gw.create_payment_intent(order.id, order.total_amount,
                                             order_code=order.order_code)
"""

from __future__ import annotations

import asyncio
import logging
import random
from decimal import Decimal
from typing import Any

import httpx

from escrow_engine.core.enums import GatewayPaymentStatus
from escrow_engine.core.errors import RetryableGatewayError, TerminalGatewayError
from escrow_engine.core.models import GatewayEvent
from escrow_engine.observability.metrics import record_gateway_error

from .webhook_codec import decode_event, normalize_status, verify_signature

logger = logging.getLogger(__name__)

# Status codes worth retrying: request timeout, conflict-in-progress,
# rate limiting and server errors.
_RETRYABLE_STATUS = frozenset({408, 409, 425, 429})


class HttpPaymentGateway:
    """Payment gateway over HTTP.

    Parameters
    ----------
    base_url:
        Provider API root, e.g. ``https://payments.example.com``.
    api_key:
        Bearer token for the provider API.
    checksum_key:
        HMAC key used to verify webhook signatures.
    timeout:
        HTTP request timeout in seconds.
    max_retries:
        Maximum attempts for transient errors before giving up with
        ``RetryableGatewayError``.
    base_backoff:
        Base backoff duration in seconds for retries.
    transport:
        Optional custom transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        checksum_key: str,
        *,
        timeout: float = 15.0,
        max_retries: int = 3,
        base_backoff: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._checksum_key = checksum_key
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._base_backoff = base_backoff
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # -- Lifecycle -----------------------------------------------------------

    async def open(self) -> None:
        """Create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                headers={"Authorization": f"Bearer {self._api_key}"},
                transport=self._transport,
            )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpPaymentGateway:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # -- IPaymentGateway -----------------------------------------------------

    async def create_payment_intent(
        self, order_id: str, amount: Decimal, *, order_code: int
    ) -> str:
        data = await self._request_with_retry(
            "POST",
            "/v1/payment-intents",
            operation="create_payment_intent",
            json={"order_id": order_id, "order_code": order_code, "amount": str(amount)},
        )
        return str(self._require(data, "intent_ref", "create_payment_intent"))

    async def verify_payment(self, intent_ref: str) -> bool:
        data = await self._request_with_retry(
            "GET", f"/v1/payment-intents/{intent_ref}", operation="verify_payment"
        )
        status = normalize_status(str(self._require(data, "status", "verify_payment")))
        return status == GatewayPaymentStatus.PAID

    async def refund(
        self, txn_ref: str, amount: Decimal, reason: str, *, idempotency_key: str
    ) -> str:
        data = await self._request_with_retry(
            "POST",
            "/v1/refunds",
            operation="refund",
            json={"txn_ref": txn_ref, "amount": str(amount), "reason": reason},
            headers={"Idempotency-Key": idempotency_key},
        )
        return str(self._require(data, "refund_ref", "refund"))

    def parse_webhook(self, raw_payload: bytes, signature: str) -> GatewayEvent:
        verify_signature(self._checksum_key, raw_payload, signature)
        return decode_event(raw_payload)

    async def payout_to_seller(
        self, seller_account_ref: str, amount: Decimal, *, idempotency_key: str
    ) -> str:
        data = await self._request_with_retry(
            "POST",
            "/v1/payouts",
            operation="payout_to_seller",
            json={"account_ref": seller_account_ref, "amount": str(amount)},
            headers={"Idempotency-Key": idempotency_key},
        )
        return str(self._require(data, "payout_ref", "payout_to_seller"))

    # -- Internal ------------------------------------------------------------

    @staticmethod
    def _require(data: dict[str, Any], field: str, operation: str) -> Any:
        value = data.get(field)
        if value is None:
            raise TerminalGatewayError(
                f"Gateway response to {operation} lacks '{field}'", operation=operation
            )
        return value

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with jitter."""
        return self._base_backoff * (2 ** (attempt - 1)) + random.uniform(0, self._base_backoff)

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Execute a request with retry and backoff.

        Retries on:
        - 5xx server errors
        - 408/409/425/429 responses
        - Network / timeout errors

        Raises ``TerminalGatewayError`` immediately on other 4xx errors and
        ``RetryableGatewayError`` once retries are exhausted.
        """
        if self._client is None:
            raise RuntimeError("Gateway not opened. Use 'async with' or call open().")

        for attempt in range(1, self._max_retries + 1):
            try:
                resp = await self._client.request(method, path, json=json, headers=headers)
            except (httpx.TimeoutException, httpx.NetworkError) as exc:
                if attempt == self._max_retries:
                    record_gateway_error(operation, "retryable")
                    raise RetryableGatewayError(
                        f"{operation} failed after {attempt} attempts: {exc}",
                        operation=operation,
                    ) from exc
                wait = self._backoff_delay(attempt)
                logger.warning(
                    "Gateway network error on %s (attempt %d/%d), retrying in %.1fs: %s",
                    operation, attempt, self._max_retries, wait, exc,
                )
                await asyncio.sleep(wait)
                continue

            if resp.is_success:
                return resp.json()

            if resp.status_code >= 500 or resp.status_code in _RETRYABLE_STATUS:
                if attempt == self._max_retries:
                    record_gateway_error(operation, "retryable")
                    raise RetryableGatewayError(
                        f"{operation} failed after {attempt} attempts: "
                        f"HTTP {resp.status_code}",
                        operation=operation,
                        status_code=resp.status_code,
                    )
                wait = self._backoff_delay(attempt)
                logger.warning(
                    "Gateway returned %d on %s (attempt %d/%d), retrying in %.1fs",
                    resp.status_code, operation, attempt, self._max_retries, wait,
                )
                await asyncio.sleep(wait)
                continue

            record_gateway_error(operation, "terminal")
            raise TerminalGatewayError(
                f"{operation} rejected: HTTP {resp.status_code} {resp.text[:200]}",
                operation=operation,
                status_code=resp.status_code,
            )

        # Unreachable: the loop either returns or raises.
        raise RetryableGatewayError(f"{operation} exhausted retries", operation=operation)
