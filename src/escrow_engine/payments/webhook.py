"""Gateway webhook processing.

``WebhookProcessor.handle`` turns one raw delivery into an acknowledgement
the HTTP layer maps onto a response code:

* ``REJECTED``: signature or body invalid.  The gateway should not retry.
* ``ACCEPTED``: processed, duplicate, unknown order or informational.
* ``RETRY``: something failed after verification; redelivery is safe
  because captures are deduplicated on ``(provider_txn_id, status)``.
"""

from __future__ import annotations

import logging

from escrow_engine.core.enums import GatewayPaymentStatus, WebhookOutcome
from escrow_engine.core.errors import ValidationError, WebhookSignatureError
from escrow_engine.core.interfaces import IPaymentGateway
from escrow_engine.core.models import GatewayEvent, WebhookAck
from escrow_engine.observability.logger import trace_scope
from escrow_engine.observability.metrics import record_webhook
from escrow_engine.orchestrator.service import OrderOrchestrator

logger = logging.getLogger(__name__)

_FAILURE_STATUSES = frozenset({GatewayPaymentStatus.CANCELLED, GatewayPaymentStatus.FAILED})


class WebhookProcessor:
    def __init__(self, orchestrator: OrderOrchestrator, gateway: IPaymentGateway | None = None) -> None:
        self._orders = orchestrator
        self._gateway = gateway or orchestrator.gateway

    async def handle(self, raw_payload: bytes, signature: str) -> WebhookAck:
        with trace_scope(source="webhook") as trace_id:
            ack = await self._handle(raw_payload, signature, trace_id)
        record_webhook(ack.outcome.value)
        return ack

    async def _handle(self, raw_payload: bytes, signature: str, trace_id: str) -> WebhookAck:
        try:
            event = self._gateway.parse_webhook(raw_payload, signature)
        except WebhookSignatureError:
            logger.warning("Webhook rejected: signature did not verify")
            return WebhookAck(outcome=WebhookOutcome.REJECTED, message="invalid signature")
        except ValidationError as exc:
            logger.warning("Webhook rejected: malformed payload (%s)", exc)
            return WebhookAck(outcome=WebhookOutcome.REJECTED, message="malformed payload")

        try:
            return await self._dispatch(event)
        except Exception:
            logger.exception(
                "Webhook %s for order code %d failed; asking gateway to retry",
                event.dedupe_key, event.order_code,
            )
            return WebhookAck(
                outcome=WebhookOutcome.RETRY,
                message=f"temporary failure (ref {trace_id})",
            )

    async def _dispatch(self, event: GatewayEvent) -> WebhookAck:
        order_id = await self._orders.store.find_order_id_by_code(event.order_code)
        if order_id is None:
            logger.warning("Webhook for unknown order code %d ignored", event.order_code)
            return WebhookAck(outcome=WebhookOutcome.ACCEPTED, message="unknown order")

        if event.status == GatewayPaymentStatus.PAID:
            changed = await self._orders.apply_payment_captured(
                order_id,
                source="webhook",
                provider_txn_id=event.provider_txn_id,
                amount=event.amount,
                event=event,
            )
            return WebhookAck(
                outcome=WebhookOutcome.ACCEPTED,
                message="payment captured" if changed else "already processed",
            )

        if event.status in _FAILURE_STATUSES:
            changed = await self._orders.fail_payment(
                order_id, f"gateway reported {event.status.value}", event=event
            )
            return WebhookAck(
                outcome=WebhookOutcome.ACCEPTED,
                message="order cancelled" if changed else "ignored",
            )

        logger.info(
            "Webhook status %s for order %s acknowledged without action",
            event.status.value, order_id,
        )
        return WebhookAck(outcome=WebhookOutcome.ACCEPTED, message="no action")
