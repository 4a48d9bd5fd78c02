"""Transition primitives applied inside an open unit of work.

Every mutation of an item, its escrow or the order status goes through
``Transitions`` so that history rows, domain events and metrics are
produced the same way on every path (interactive, webhook, scheduler,
admin).  Nothing here commits; the caller's unit of work does.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Sequence

from escrow_engine.core.clock import IClock
from escrow_engine.core.enums import (
    EscrowReleaseKind,
    EscrowStatus,
    OrderItemStatus,
    OrderStatus,
    TransactionStatus,
)
from escrow_engine.core.errors import ConsistencyError, GatewayError
from escrow_engine.core.ids import payout_key, refund_key
from escrow_engine.core.interfaces import IOrderUnitOfWork, IPaymentGateway, IProductCatalog
from escrow_engine.core.models import (
    Actor,
    EscrowRelease,
    OrderItem,
    StatusHistoryEntry,
    Transaction,
)
from escrow_engine.event_bus.events import (
    DomainEvent,
    EscrowStatusChanged,
    ItemStatusChanged,
    MoneyMoved,
    OrderStatusChanged,
    PayoutFailed,
)
from escrow_engine.event_bus.schemas import get_topic_for_event
from escrow_engine.lifecycle import escrow_ledger, item_machine
from escrow_engine.lifecycle.order_machine import derive_order_status
from escrow_engine.observability.metrics import (
    record_escrow_movement,
    record_item_transition,
    record_payout_failure,
)

logger = logging.getLogger(__name__)


def emit(uow: IOrderUnitOfWork, event: DomainEvent) -> None:
    topic = get_topic_for_event(event)
    if topic is not None:
        uow.emit(topic, event)


def captured_total(uow: IOrderUnitOfWork) -> Decimal:
    """Sum of line prices whose payment was ever captured."""
    return sum(
        (
            i.price
            for i in uow.aggregate.items
            if i.escrow_status is not None and i.escrow_status != EscrowStatus.CANCELLED
        ),
        Decimal("0"),
    )


def refunded_total(uow: IOrderUnitOfWork) -> Decimal:
    """Money already returned: refunded lines in full, partial refunds on the rest."""
    return sum(
        (
            i.price if i.escrow_status == EscrowStatus.REFUNDED else i.refunded_amount
            for i in uow.aggregate.items
        ),
        Decimal("0"),
    )


def paid_out_total(uow: IOrderUnitOfWork) -> Decimal:
    """Money already sent to sellers."""
    return sum(
        (
            escrow_ledger.seller_payable(i)
            for i in uow.aggregate.items
            if i.escrow_status == EscrowStatus.TRANSFERRED
        ),
        Decimal("0"),
    )


class Transitions:
    """Applies validated state changes and their side effects."""

    def __init__(
        self,
        gateway: IPaymentGateway,
        catalog: IProductCatalog,
        clock: IClock,
    ) -> None:
        self.gateway = gateway
        self.catalog = catalog
        self.clock = clock

    # ------------------------------------------------------------------
    # Status moves
    # ------------------------------------------------------------------

    def move_item(
        self,
        uow: IOrderUnitOfWork,
        item: OrderItem,
        target: OrderItemStatus,
        actor: Actor,
        *,
        notes: str = "",
        evidence: Sequence[str] | None = None,
        forced: bool = False,
    ) -> OrderItemStatus:
        """Move *item* to *target*; forced moves skip the adjacency check."""
        if forced:
            previous = item.status
            item.status = target
        else:
            previous = item_machine.transition(item, target, actor.role, evidence=evidence)

        now = self.clock.now()
        item.updated_at = now
        uow.append_history(
            StatusHistoryEntry(
                order_id=item.order_id,
                order_item_id=item.id,
                status=target.value,
                changed_at=now,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                notes=notes,
                forced=forced,
            )
        )
        record_item_transition(previous.value, target.value, forced)
        emit(
            uow,
            ItemStatusChanged(
                order_id=item.order_id,
                item_id=item.id,
                from_status=previous,
                to_status=target,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                forced=forced,
            ),
        )
        return previous

    def move_escrow(
        self, uow: IOrderUnitOfWork, item: OrderItem, target: EscrowStatus
    ) -> None:
        previous = item.escrow_status
        escrow_ledger.check_escrow(previous, target)
        item.escrow_status = target
        item.updated_at = self.clock.now()
        txn = uow.aggregate.transaction_for(item.id)
        emit(
            uow,
            EscrowStatusChanged(
                order_id=item.order_id,
                item_id=item.id,
                transaction_id=txn.id,
                from_status=previous,
                to_status=target,
            ),
        )

    def recompute(self, uow: IOrderUnitOfWork) -> OrderStatus:
        """Re-derive the order status from its items and clear any override."""
        order = uow.aggregate.order
        previous = order.status
        derived = derive_order_status(
            uow.aggregate.item_statuses(), expired=order.expired_at is not None
        )
        now = self.clock.now()
        order.status = derived
        order.status_forced = False
        order.updated_at = now
        if derived == OrderStatus.DELIVERED and order.delivered_at is None:
            order.delivered_at = now
        if previous != derived:
            emit(
                uow,
                OrderStatusChanged(order_id=order.id, from_status=previous, to_status=derived),
            )
        return derived

    # ------------------------------------------------------------------
    # Money movements
    # ------------------------------------------------------------------

    def _record_release(
        self,
        uow: IOrderUnitOfWork,
        kind: EscrowReleaseKind,
        amount: Decimal,
        actor: Actor,
        reason: str,
        *,
        item: OrderItem | None = None,
        txn: Transaction | None = None,
        external_ref: str | None = None,
    ) -> None:
        uow.append_release(
            EscrowRelease(
                order_id=uow.aggregate.order.id,
                order_item_id=item.id if item else None,
                transaction_id=txn.id if txn else None,
                kind=kind,
                amount=amount,
                reason=reason,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                external_ref=external_ref,
                created_at=self.clock.now(),
            )
        )
        record_escrow_movement(kind.value, amount)
        emit(
            uow,
            MoneyMoved(
                order_id=uow.aggregate.order.id,
                kind=kind,
                amount=amount,
                transaction_id=txn.id if txn else None,
                external_ref=external_ref,
            ),
        )

    def capture_ref(self, uow: IOrderUnitOfWork, txn: Transaction | None = None) -> str:
        """Gateway reference to refund against: the capture id if known."""
        if txn is not None and txn.provider_txn_id:
            return txn.provider_txn_id
        if txn is None:
            for candidate in uow.aggregate.transactions:
                if candidate.provider_txn_id:
                    return candidate.provider_txn_id
        ref = uow.aggregate.order.payment_intent_ref
        if ref is None:
            raise ConsistencyError(f"Order {uow.aggregate.order.id} has no payment reference")
        return ref

    async def refund_line(
        self,
        uow: IOrderUnitOfWork,
        item: OrderItem,
        actor: Actor,
        reason: str,
        *,
        refund_ref: str | None = None,
    ) -> None:
        """Reverse a captured line and mark its escrow REFUNDED.

        Issues the gateway refund unless *refund_ref* shows it was already
        issued as part of a larger order-level refund.  Only the part of the
        price not already returned by partial refunds goes back.
        """
        escrow_ledger.check_refundable(item.escrow_status)
        txn = uow.aggregate.transaction_for(item.id)
        remainder = escrow_ledger.refund_remainder(item)

        if refund_ref is None and remainder > 0:
            if refunded_total(uow) + remainder > captured_total(uow):
                raise ConsistencyError(
                    f"Refunding {remainder} on item {item.id} would exceed the captured amount"
                )
            refund_ref = await self.gateway.refund(
                self.capture_ref(uow, txn),
                remainder,
                reason,
                idempotency_key=refund_key("refund", item.id),
            )
            self._record_release(
                uow, EscrowReleaseKind.REFUND, remainder, actor, reason,
                item=item, txn=txn, external_ref=refund_ref,
            )

        self.move_escrow(uow, item, EscrowStatus.REFUNDED)
        now = self.clock.now()
        txn.status = TransactionStatus.REFUNDED
        txn.refund_ref = refund_ref or txn.refund_ref
        txn.refunded_at = now
        txn.updated_at = now
        await self.catalog.mark_active(item.product_id)

    async def cancel_line(
        self,
        uow: IOrderUnitOfWork,
        item: OrderItem,
        actor: Actor,
        reason: str,
        *,
        forced: bool = False,
    ) -> None:
        """Cancel one item, reversing its capture if there was one."""
        settlement = escrow_ledger.settlement_on_cancel(item.escrow_status)
        self.move_item(uow, item, OrderItemStatus.CANCELLED, actor, notes=reason, forced=forced)

        if settlement == EscrowStatus.REFUNDED:
            await self.refund_line(uow, item, actor, reason or "order item cancelled")
            return

        self.move_escrow(uow, item, EscrowStatus.CANCELLED)
        txn = uow.aggregate.transaction_for(item.id)
        txn.status = TransactionStatus.CANCELLED
        txn.updated_at = self.clock.now()
        await self.catalog.mark_active(item.product_id)

    def release_line(
        self, uow: IOrderUnitOfWork, item: OrderItem, actor: Actor, reason: str
    ) -> None:
        """AWAITING_RELEASE -> RELEASED, with its EscrowRelease record."""
        txn = uow.aggregate.transaction_for(item.id)
        self.move_escrow(uow, item, EscrowStatus.RELEASED)
        now = self.clock.now()
        txn.released_at = now
        txn.updated_at = now
        self._record_release(
            uow, EscrowReleaseKind.RELEASE, escrow_ledger.seller_payable(item), actor, reason,
            item=item, txn=txn,
        )

    async def payout_line(self, uow: IOrderUnitOfWork, item: OrderItem) -> bool:
        """Pay the seller for a released line.

        The seller receives their amount net of any partial refund charged
        to the line.  Gateway failures leave the line in TRANSFER_FAILED with
        the error recorded; they are not raised, so the failure state commits.
        """
        txn = uow.aggregate.transaction_for(item.id)
        amount = escrow_ledger.seller_payable(item)
        if refunded_total(uow) + paid_out_total(uow) + amount > captured_total(uow):
            raise ConsistencyError(
                f"Paying out {amount} on transaction {txn.id} would exceed the captured amount"
            )

        txn.payout_attempts += 1
        txn.updated_at = self.clock.now()
        if amount == 0:
            logger.info("Transaction %s fully refunded to the buyer; nothing to pay out", txn.id)
            self.move_escrow(uow, item, EscrowStatus.TRANSFERRED)
            txn.last_payout_error = None
            txn.transferred_at = self.clock.now()
            return True
        try:
            payout_ref = await self.gateway.payout_to_seller(
                txn.seller_payout_ref,
                amount,
                idempotency_key=payout_key(txn.id),
            )
        except GatewayError as exc:
            logger.warning(
                "Payout failed for transaction %s (attempt %d): %s",
                txn.id, txn.payout_attempts, exc,
            )
            txn.last_payout_error = str(exc)
            self.move_escrow(uow, item, EscrowStatus.TRANSFER_FAILED)
            record_payout_failure()
            emit(
                uow,
                PayoutFailed(
                    order_id=item.order_id,
                    transaction_id=txn.id,
                    attempts=txn.payout_attempts,
                    error=str(exc),
                ),
            )
            return False

        self.move_escrow(uow, item, EscrowStatus.TRANSFERRED)
        txn.payout_ref = payout_ref
        txn.last_payout_error = None
        txn.transferred_at = self.clock.now()
        self._record_release(
            uow, EscrowReleaseKind.TRANSFER, amount, Actor.system("payout"),
            "seller payout", item=item, txn=txn, external_ref=payout_ref,
        )
        return True

    async def refund_order_amount(
        self,
        uow: IOrderUnitOfWork,
        amount: Decimal,
        actor: Actor,
        reason: str,
        *,
        kind: EscrowReleaseKind,
        idempotency_key: str,
    ) -> str:
        """One gateway refund covering *amount* of the order's capture."""
        refund_ref = await self.gateway.refund(
            self.capture_ref(uow), amount, reason, idempotency_key=idempotency_key
        )
        self._record_release(uow, kind, amount, actor, reason, external_ref=refund_ref)
        return refund_ref
