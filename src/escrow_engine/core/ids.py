"""Canonical ID and timestamp factories for the engine.

ID Categories
-------------
1. Internal IDs: UUID v4 strings (order, item, transaction, history ids)
2. Order codes: short numeric codes handed to the payment gateway and
   echoed back in webhooks
3. External IDs: gateway-assigned, opaque strings (intent, capture,
   refund and payout references)
4. Idempotency keys: deterministic strings derived from internal IDs

Timestamp Rule
--------------
All timestamps are ``datetime`` with ``tzinfo=timezone.utc``, never naive.
"""

from __future__ import annotations

import hashlib
import secrets
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")

# Gateways accept order codes up to 2**53 - 1; twelve digits keeps them
# readable on bank statements.
_ORDER_CODE_MIN = 10**11
_ORDER_CODE_SPAN = 9 * 10**11


def new_id() -> str:
    """Generate a new UUID v4 string.  Use for all internal entity IDs."""
    return str(uuid.uuid4())


def new_order_code() -> int:
    """Generate a random twelve-digit order code."""
    return _ORDER_CODE_MIN + secrets.randbelow(_ORDER_CODE_SPAN)


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def quantize_money(amount: Decimal) -> Decimal:
    """Round a monetary amount to cents using HALF_UP."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def content_hash(*parts: str, length: int = 16) -> str:
    """Generate a deterministic SHA256-based ID from content strings.

    Concatenates all *parts* with ``':'`` before hashing.
    """
    raw = ":".join(parts)
    return hashlib.sha256(raw.encode()).hexdigest()[:length]


def refund_key(scope: str, ref: str) -> str:
    """Idempotency key for a gateway refund, e.g. ``refund:<item_id>``."""
    return f"{scope}:{ref}"


def payout_key(transaction_id: str) -> str:
    """Idempotency key for a seller payout."""
    return f"payout:{transaction_id}"


def tracking_number(item_id: str) -> str:
    """Shipment tracking number assigned when the shipper collects an item."""
    return "TRK-" + item_id.replace("-", "")[:12].upper()
