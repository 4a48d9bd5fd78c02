"""Webhook signing and payload normalization shared by gateway adapters.

Signatures are hex HMAC-SHA256 digests of the raw request body keyed by
the gateway checksum key.  Payloads are JSON objects::

    {"order_code": 123456789012, "status": "PAID",
     "transaction_id": "ft_0001", "amount": "100.00"}
"""

from __future__ import annotations

import hashlib
import hmac
import json
from decimal import Decimal, InvalidOperation
from typing import Any

from escrow_engine.core.enums import GatewayPaymentStatus
from escrow_engine.core.errors import ValidationError, WebhookSignatureError
from escrow_engine.core.models import GatewayEvent

_STATUS_ALIASES: dict[str, GatewayPaymentStatus] = {
    "PAID": GatewayPaymentStatus.PAID,
    "SUCCESS": GatewayPaymentStatus.PAID,
    "PENDING": GatewayPaymentStatus.PENDING,
    "PROCESSING": GatewayPaymentStatus.PENDING,
    "CANCELLED": GatewayPaymentStatus.CANCELLED,
    "CANCELED": GatewayPaymentStatus.CANCELLED,
    "FAILED": GatewayPaymentStatus.FAILED,
    "DECLINED": GatewayPaymentStatus.FAILED,
}


def sign_payload(secret: str, raw_payload: bytes) -> str:
    return hmac.new(secret.encode(), raw_payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str, raw_payload: bytes, signature: str) -> None:
    """Raise ``WebhookSignatureError`` unless *signature* matches."""
    if not secret:
        raise WebhookSignatureError("Webhook checksum key is not configured")
    expected = sign_payload(secret, raw_payload)
    if not signature or not hmac.compare_digest(expected, signature.strip().lower()):
        raise WebhookSignatureError("Webhook signature mismatch")


def normalize_status(raw_status: str) -> GatewayPaymentStatus:
    return _STATUS_ALIASES.get(raw_status.strip().upper(), GatewayPaymentStatus.UNKNOWN)


def decode_event(raw_payload: bytes) -> GatewayEvent:
    """Parse a verified webhook body.

    Raises:
        ValidationError: body is not JSON or lacks required fields.
    """
    try:
        body: Any = json.loads(raw_payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"Webhook body is not valid JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object")

    # Some providers wrap the event in a "data" envelope.
    data = body.get("data") if isinstance(body.get("data"), dict) else body

    order_code = data.get("order_code", data.get("orderCode"))
    provider_txn_id = data.get("transaction_id", data.get("reference"))
    raw_status = data.get("status")
    if order_code is None or provider_txn_id is None or raw_status is None:
        raise ValidationError(
            "Webhook body requires order_code, status and transaction_id"
        )

    try:
        code = int(order_code)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid order code: {order_code!r}") from exc

    amount: Decimal | None = None
    if data.get("amount") is not None:
        try:
            amount = Decimal(str(data["amount"]))
        except InvalidOperation as exc:
            raise ValidationError(f"Invalid amount: {data['amount']!r}") from exc
        if not amount.is_finite():
            raise ValidationError(f"Invalid amount: {data['amount']!r}")

    return GatewayEvent(
        order_code=code,
        status=normalize_status(str(raw_status)),
        provider_txn_id=str(provider_txn_id),
        amount=amount,
    )


def encode_event(
    order_code: int,
    status: str,
    provider_txn_id: str,
    amount: Decimal | None = None,
) -> bytes:
    """Serialize a webhook body in the format ``decode_event`` reads."""
    body: dict[str, Any] = {
        "order_code": order_code,
        "status": status,
        "transaction_id": provider_txn_id,
    }
    if amount is not None:
        body["amount"] = str(amount)
    return json.dumps(body, sort_keys=True).encode()
