"""Paper payment gateway: simulated payments with no real money movement.

Keeps intents, refunds and payouts in memory.  Payments are confirmed
explicitly via ``mark_paid`` (what a buyer completing checkout would do),
and failures can be injected per operation to exercise retry paths.
Refunds and payouts honour idempotency keys like a real provider would.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from decimal import Decimal

from escrow_engine.core.errors import GatewayError, TerminalGatewayError
from escrow_engine.core.ids import new_id
from escrow_engine.core.models import GatewayEvent

from .webhook_codec import decode_event, encode_event, sign_payload, verify_signature

logger = logging.getLogger(__name__)


class _Intent:
    __slots__ = ("ref", "order_id", "order_code", "amount", "paid", "provider_txn_id")

    def __init__(self, ref: str, order_id: str, order_code: int, amount: Decimal) -> None:
        self.ref = ref
        self.order_id = order_id
        self.order_code = order_code
        self.amount = amount
        self.paid = False
        self.provider_txn_id: str | None = None


class PaperPaymentGateway:
    """Simulated payment provider.

    Parameters
    ----------
    checksum_key:
        Secret used to sign and verify webhook bodies.
    """

    def __init__(self, checksum_key: str = "paper-checksum-key") -> None:
        self._checksum_key = checksum_key
        self._intents: dict[str, _Intent] = {}
        self._refunds_by_key: dict[str, str] = {}
        self._payouts_by_key: dict[str, str] = {}
        self._failures: dict[str, list[GatewayError]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self.calls: Counter[str] = Counter()
        self.refunds: list[dict] = []
        self.payouts: list[dict] = []

    # -- Simulation controls -------------------------------------------------

    def mark_paid(self, intent_ref: str, provider_txn_id: str | None = None) -> str:
        """Simulate the buyer completing payment.  Returns the capture id."""
        intent = self._intents[intent_ref]
        intent.paid = True
        intent.provider_txn_id = provider_txn_id or f"ft_{new_id()[:12]}"
        return intent.provider_txn_id

    def inject_failure(self, operation: str, error: GatewayError, times: int = 1) -> None:
        """Make the next *times* calls to *operation* raise *error*."""
        self._failures[operation].extend([error] * times)

    def intent(self, intent_ref: str) -> _Intent:
        return self._intents[intent_ref]

    def webhook_for(
        self, intent_ref: str, status: str = "PAID", amount: Decimal | None = None
    ) -> tuple[bytes, str]:
        """Build a signed webhook body for an intent, as the provider would send."""
        intent = self._intents[intent_ref]
        provider_txn_id = intent.provider_txn_id
        if provider_txn_id is None:
            if status.upper() == "PAID":
                provider_txn_id = self.mark_paid(intent_ref)
            else:
                provider_txn_id = f"ft_{new_id()[:12]}"
        raw = encode_event(
            intent.order_code,
            status,
            provider_txn_id,
            amount if amount is not None else intent.amount,
        )
        return raw, sign_payload(self._checksum_key, raw)

    def _maybe_fail(self, operation: str) -> None:
        self.calls[operation] += 1
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    # -- IPaymentGateway -----------------------------------------------------

    async def create_payment_intent(
        self, order_id: str, amount: Decimal, *, order_code: int
    ) -> str:
        self._maybe_fail("create_payment_intent")
        ref = f"pi_{new_id()[:16]}"
        self._intents[ref] = _Intent(ref, order_id, order_code, amount)
        logger.info("Paper intent %s created for order %s (%s)", ref, order_id, amount)
        return ref

    async def verify_payment(self, intent_ref: str) -> bool:
        self._maybe_fail("verify_payment")
        intent = self._intents.get(intent_ref)
        if intent is None:
            raise TerminalGatewayError(
                f"Unknown payment intent {intent_ref}", operation="verify_payment"
            )
        return intent.paid

    async def refund(
        self, txn_ref: str, amount: Decimal, reason: str, *, idempotency_key: str
    ) -> str:
        async with self._lock:
            self._maybe_fail("refund")
            if idempotency_key in self._refunds_by_key:
                return self._refunds_by_key[idempotency_key]
            ref = f"rf_{new_id()[:16]}"
            self._refunds_by_key[idempotency_key] = ref
            self.refunds.append(
                {"ref": ref, "txn_ref": txn_ref, "amount": amount, "reason": reason}
            )
            logger.info("Paper refund %s: %s on %s (%s)", ref, amount, txn_ref, reason)
            return ref

    def parse_webhook(self, raw_payload: bytes, signature: str) -> GatewayEvent:
        verify_signature(self._checksum_key, raw_payload, signature)
        return decode_event(raw_payload)

    async def payout_to_seller(
        self, seller_account_ref: str, amount: Decimal, *, idempotency_key: str
    ) -> str:
        async with self._lock:
            self._maybe_fail("payout_to_seller")
            if idempotency_key in self._payouts_by_key:
                return self._payouts_by_key[idempotency_key]
            ref = f"po_{new_id()[:16]}"
            self._payouts_by_key[idempotency_key] = ref
            self.payouts.append(
                {"ref": ref, "account": seller_account_ref, "amount": amount}
            )
            logger.info("Paper payout %s: %s to %s", ref, amount, seller_account_ref)
            return ref
