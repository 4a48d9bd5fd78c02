"""Order orchestrator: the single entry point for buyer/seller operations.

Every public operation loads the order aggregate in a unit of work (which
holds the per-order lock), validates the request against the state
machines, applies the transition together with its side effects, and
commits.  Domain events queued during the unit of work are published only
after a successful commit; publication failures are logged and never
undo or fail the operation.

Payment capture has two admission paths (client confirmation and gateway
webhook, plus the sweeper's missed-webhook recovery) which all converge on
``_apply_capture`` so the resulting state is identical however the money
arrived.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Sequence

from escrow_engine.core.clock import IClock, WallClock
from escrow_engine.core.enums import (
    ActorRole,
    DisputeStatus,
    EscrowReleaseKind,
    EscrowStatus,
    OrderItemStatus,
    OrderStatus,
    TransactionStatus,
)
from escrow_engine.core.errors import (
    ConsistencyError,
    InvalidTransition,
    NotFound,
    TerminalGatewayError,
    Unauthorized,
    ValidationError,
)
from escrow_engine.core.ids import new_id, new_order_code, refund_key, tracking_number
from escrow_engine.core.interfaces import (
    IEventBus,
    IOrderStore,
    IOrderUnitOfWork,
    IPaymentGateway,
    IProductCatalog,
)
from escrow_engine.core.models import (
    Actor,
    CreateOrderRequest,
    EscrowRelease,
    GatewayEvent,
    Order,
    OrderAggregate,
    OrderItem,
    ProcessedGatewayEvent,
    StatusHistoryEntry,
    Transaction,
)
from escrow_engine.event_bus.events import (
    OrderCreated,
    OrderExpired,
    PaymentCaptured,
    PaymentFailed,
)
from escrow_engine.fees.calculator import FeeCalculator
from escrow_engine.lifecycle import escrow_ledger, item_machine
from escrow_engine.observability.logger import traced
from escrow_engine.observability.metrics import (
    record_order_created,
    record_payment_captured,
)

from .transitions import Transitions, emit

logger = logging.getLogger(__name__)


class OrderOrchestrator:
    """Coordinates state machines, escrow, gateway and catalog per order.

    Parameters
    ----------
    store:
        Transactional order store (memory or PostgreSQL).
    gateway:
        Payment gateway adapter.
    catalog:
        Product catalog collaborator.
    fee_calculator:
        Resolves fee percentages at order creation.
    event_bus:
        Optional bus receiving domain events after commit.
    clock:
        Time source; ``WallClock`` by default.
    dispute_window:
        How long after delivery the buyer may dispute before funds are
        released automatically.
    """

    def __init__(
        self,
        store: IOrderStore,
        gateway: IPaymentGateway,
        catalog: IProductCatalog,
        fee_calculator: FeeCalculator,
        *,
        event_bus: IEventBus | None = None,
        clock: IClock | None = None,
        dispute_window: timedelta = timedelta(days=7),
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.catalog = catalog
        self.fees = fee_calculator
        self.clock = clock or WallClock()
        self.dispute_window = dispute_window
        self.transitions = Transitions(gateway, catalog, self.clock)
        self._event_bus = event_bus

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def publish_events(self, uow: IOrderUnitOfWork) -> None:
        """Publish events queued by a committed unit of work."""
        if self._event_bus is None:
            return
        for topic, event in uow.pending_events:
            try:
                await self._event_bus.publish(topic, event)
            except Exception:
                logger.exception(
                    "Failed to publish %s for order %s",
                    type(event).__name__, getattr(event, "order_id", "?"),
                )

    async def order_id_for_item(self, item_id: str) -> str:
        order_id = await self.store.find_order_id_by_item(item_id)
        if order_id is None:
            raise NotFound(f"Order item {item_id} not found")
        return order_id

    async def order_id_for_transaction(self, transaction_id: str) -> str:
        order_id = await self.store.find_order_id_by_transaction(transaction_id)
        if order_id is None:
            raise NotFound(f"Transaction {transaction_id} not found")
        return order_id

    @staticmethod
    def _authorize(
        actor: Actor, agg: OrderAggregate, item: OrderItem | None = None
    ) -> None:
        """Ownership check; role legality is left to the state machines."""
        if actor.role == ActorRole.BUYER and actor.actor_id != agg.order.buyer_id:
            raise Unauthorized(f"Buyer {actor.actor_id} does not own order {agg.order.id}")
        if actor.role == ActorRole.SELLER:
            if item is None:
                raise Unauthorized("Sellers act on their own items, not whole orders")
            if actor.actor_id != item.seller_id:
                raise Unauthorized(f"Seller {actor.actor_id} does not own item {item.id}")

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if actor.role != ActorRole.ADMIN:
            raise Unauthorized(f"{actor.role.value} may not perform admin operations")

    # ------------------------------------------------------------------
    # Reads (lock-free)
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> OrderAggregate:
        return await self.store.get(order_id)

    async def status_history(self, order_id: str) -> list[StatusHistoryEntry]:
        return await self.store.list_status_history(order_id)

    async def escrow_releases(self, order_id: str) -> list[EscrowRelease]:
        return await self.store.list_escrow_releases(order_id)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @traced
    async def create_order(
        self, request: CreateOrderRequest, actor: Actor
    ) -> OrderAggregate:
        """Create a PENDING order with fee snapshots and a payment intent.

        Raises:
            Unauthorized: the actor is not the buyer named in the request.
            ValidationError: no items, or the same product twice.
            InvalidAmount: a non-positive price.
            ConsistencyError: fee split does not add up to the total.
        """
        if actor.role != ActorRole.BUYER or actor.actor_id != request.buyer_id:
            raise Unauthorized("Orders can only be created by the buyer themselves")
        if not request.items:
            raise ValidationError("An order needs at least one item")
        product_ids = [line.product_id for line in request.items]
        if len(set(product_ids)) != len(product_ids):
            raise ValidationError("Each product may appear only once per order")

        now = self.clock.now()
        order_id = new_id()
        order_code = new_order_code()
        items: list[OrderItem] = []
        transactions: list[Transaction] = []
        for line in request.items:
            split = self.fees.calculate(line.price, line.seller)
            item = OrderItem(
                order_id=order_id,
                product_id=line.product_id,
                seller_id=line.seller.seller_id,
                price=line.price,
                platform_fee=split.platform_fee,
                seller_amount=split.seller_amount,
                fee_percentage=split.fee_percentage,
                notes=line.notes,
                created_at=now,
                updated_at=now,
            )
            items.append(item)
            transactions.append(
                Transaction(
                    order_id=order_id,
                    order_item_id=item.id,
                    buyer_id=request.buyer_id,
                    seller_id=line.seller.seller_id,
                    seller_payout_ref=line.seller.payout_account_ref,
                    amount=line.price,
                    platform_fee=split.platform_fee,
                    seller_amount=split.seller_amount,
                    created_at=now,
                    updated_at=now,
                )
            )

        total = sum((i.price for i in items), Decimal("0"))
        split_total = sum((i.platform_fee + i.seller_amount for i in items), Decimal("0"))
        if split_total != total:
            raise ConsistencyError(
                f"Fee split {split_total} does not match order total {total}"
            )

        intent_ref = await self.gateway.create_payment_intent(
            order_id, total, order_code=order_code
        )
        for txn in transactions:
            txn.payment_intent_ref = intent_ref

        order = Order(
            id=order_id,
            order_code=order_code,
            buyer_id=request.buyer_id,
            shipping_address_id=request.shipping_address_id,
            total_amount=total,
            payment_method=request.payment_method,
            payment_intent_ref=intent_ref,
            created_at=now,
            updated_at=now,
        )
        aggregate = OrderAggregate(order=order, items=items, transactions=transactions)

        async with self.store.create(aggregate) as uow:
            for item in uow.aggregate.items:
                uow.append_history(
                    StatusHistoryEntry(
                        order_id=order_id,
                        order_item_id=item.id,
                        status=item.status.value,
                        changed_at=now,
                        actor_id=actor.actor_id,
                        actor_role=actor.role,
                        notes="order created",
                    )
                )
                await self.catalog.mark_reserved(item.product_id)
            emit(
                uow,
                OrderCreated(
                    order_id=order_id,
                    buyer_id=request.buyer_id,
                    total_amount=total,
                    item_count=len(items),
                ),
            )

        record_order_created(request.payment_method.value)
        logger.info(
            "Order %s created: code=%d items=%d total=%s",
            order_id, order_code, len(items), total,
        )
        await self.publish_events(uow)
        return uow.aggregate

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    @traced
    async def confirm_payment(self, order_id: str, actor: Actor) -> OrderAggregate:
        """Client-side confirmation after the payment redirect.

        Idempotent: an already-paid order is returned untouched without
        contacting the gateway.
        """
        agg = await self.store.get(order_id)
        if actor.role != ActorRole.BUYER:
            raise Unauthorized("Only the buyer confirms payment")
        self._authorize(actor, agg)
        if agg.order.is_paid:
            return agg
        if agg.order.status in (OrderStatus.EXPIRED, OrderStatus.CANCELLED):
            raise InvalidTransition(
                f"Order {order_id} is {agg.order.status.value}; payment can no longer be confirmed",
                current=agg.order.status.value,
                target=OrderStatus.PROCESSING.value,
            )
        if agg.order.payment_intent_ref is None:
            raise ConsistencyError(f"Order {order_id} has no payment intent")

        try:
            paid = await self.gateway.verify_payment(agg.order.payment_intent_ref)
        except TerminalGatewayError as exc:
            logger.warning("Payment for order %s rejected by gateway: %s", order_id, exc)
            await self.fail_payment(order_id, f"gateway rejected payment: {exc}")
            raise

        if not paid:
            raise InvalidTransition(
                "payment not completed",
                current=agg.order.status.value,
                target=OrderStatus.PROCESSING.value,
            )

        await self.apply_payment_captured(order_id, source="client")
        return await self.store.get(order_id)

    @traced
    async def apply_payment_captured(
        self,
        order_id: str,
        *,
        source: str,
        provider_txn_id: str | None = None,
        amount: Decimal | None = None,
        event: GatewayEvent | None = None,
    ) -> bool:
        """Apply a confirmed capture.  Returns False when nothing changed.

        *event*, when given, is recorded in the processed-event ledger in
        the same unit of work so a redelivery is a no-op.
        """
        async with self.store.transaction(order_id) as uow:
            if event is not None:
                if await uow.is_event_processed(event.dedupe_key):
                    logger.info("Gateway event %s already processed", event.dedupe_key)
                    return False
                uow.mark_event_processed(
                    ProcessedGatewayEvent(
                        provider_txn_id=event.provider_txn_id,
                        status=event.status,
                        order_id=order_id,
                        received_at=self.clock.now(),
                    )
                )
            changed = await self._apply_capture(
                uow, source=source, provider_txn_id=provider_txn_id, amount=amount
            )
        await self.publish_events(uow)
        return changed

    async def _apply_capture(
        self,
        uow: IOrderUnitOfWork,
        *,
        source: str,
        provider_txn_id: str | None,
        amount: Decimal | None,
    ) -> bool:
        agg = uow.aggregate
        order = agg.order
        if amount is not None and amount != order.total_amount:
            raise ConsistencyError(
                f"Captured amount {amount} does not match order {order.id} total {order.total_amount}"
            )
        if order.is_paid:
            return False

        now = self.clock.now()
        system = Actor.system(f"payment:{source}")
        order.paid_at = now
        order.updated_at = now

        if order.status in (OrderStatus.EXPIRED, OrderStatus.CANCELLED):
            # Money arrived after the order was closed: hand it back.
            logger.warning(
                "Late payment for %s order %s; refunding %s",
                order.status.value, order.id, order.total_amount,
            )
            for txn in agg.transactions:
                txn.provider_txn_id = provider_txn_id
                txn.updated_at = now
            await self.transitions.refund_order_amount(
                uow,
                order.total_amount,
                system,
                "payment received after order closed",
                kind=EscrowReleaseKind.REFUND,
                idempotency_key=refund_key("late-refund", order.id),
            )
            emit(uow, PaymentCaptured(order_id=order.id, source=source, provider_txn_id=provider_txn_id))
            return True

        for item in agg.items:
            txn = agg.transaction_for(item.id)
            txn.provider_txn_id = provider_txn_id
            txn.updated_at = now
            if item.status == OrderItemStatus.PENDING:
                self.transitions.move_item(
                    uow, item, OrderItemStatus.PROCESSING, system,
                    notes=f"payment captured ({source})",
                )
                self.transitions.move_escrow(uow, item, EscrowStatus.HOLDING)
                txn.status = TransactionStatus.PAID
                txn.paid_at = now
                await self.catalog.mark_sold(item.product_id)
            elif item.escrow_status == EscrowStatus.CANCELLED:
                # Line was cancelled before payment; its share is returned.
                await self.transitions.refund_order_amount(
                    uow,
                    item.price,
                    system,
                    "payment received for a cancelled item",
                    kind=EscrowReleaseKind.REFUND,
                    idempotency_key=refund_key("late-refund", item.id),
                )

        self.transitions.recompute(uow)
        record_payment_captured(source)
        emit(uow, PaymentCaptured(order_id=order.id, source=source, provider_txn_id=provider_txn_id))
        logger.info("Payment captured for order %s via %s", order.id, source)
        return True

    @traced
    async def fail_payment(
        self, order_id: str, reason: str, *, event: GatewayEvent | None = None
    ) -> bool:
        """Cancel a still-unpaid PENDING order after a failed payment.

        Out-of-order deliveries (the order already progressed) are ignored
        with a warning.
        """
        async with self.store.transaction(order_id) as uow:
            if event is not None:
                if await uow.is_event_processed(event.dedupe_key):
                    return False
                uow.mark_event_processed(
                    ProcessedGatewayEvent(
                        provider_txn_id=event.provider_txn_id,
                        status=event.status,
                        order_id=order_id,
                        received_at=self.clock.now(),
                    )
                )
            order = uow.aggregate.order
            if order.is_paid or order.status != OrderStatus.PENDING:
                logger.warning(
                    "Ignoring payment failure for order %s in status %s",
                    order_id, order.status.value,
                )
                return False

            system = Actor.system("payment")
            for item in uow.aggregate.items:
                if item.status == OrderItemStatus.PENDING:
                    await self.transitions.cancel_line(uow, item, system, reason)
            self.transitions.recompute(uow)
            emit(uow, PaymentFailed(order_id=order_id, reason=reason))

        logger.info("Order %s cancelled after payment failure: %s", order_id, reason)
        await self.publish_events(uow)
        return True

    @traced
    async def expire_order(self, order_id: str, *, cutoff: datetime) -> bool:
        """Expire an unpaid order created before *cutoff*.

        State is re-checked under the lock, so a concurrent capture wins.
        """
        async with self.store.transaction(order_id) as uow:
            order = uow.aggregate.order
            if (
                order.status != OrderStatus.PENDING
                or order.is_paid
                or order.created_at > cutoff
            ):
                return False

            order.expired_at = self.clock.now()
            system = Actor.system("sweeper")
            for item in uow.aggregate.items:
                if item.status == OrderItemStatus.PENDING:
                    await self.transitions.cancel_line(
                        uow, item, system, "payment window elapsed"
                    )
            self.transitions.recompute(uow)
            emit(uow, OrderExpired(order_id=order_id))

        logger.info("Order %s expired", order_id)
        await self.publish_events(uow)
        return True

    # ------------------------------------------------------------------
    # Fulfillment
    # ------------------------------------------------------------------

    @traced
    async def request_pickup(self, item_id: str, actor: Actor) -> OrderAggregate:
        """Seller has packed the item: PROCESSING -> AWAITING_PICKUP."""
        order_id = await self.order_id_for_item(item_id)
        async with self.store.transaction(order_id) as uow:
            item = uow.aggregate.item(item_id)
            self._authorize(actor, uow.aggregate, item)
            self.transitions.move_item(uow, item, OrderItemStatus.AWAITING_PICKUP, actor)
            self.transitions.recompute(uow)
        await self.publish_events(uow)
        return uow.aggregate

    @traced
    async def confirm_pickup(
        self, item_id: str, actor: Actor, evidence: Sequence[str]
    ) -> OrderAggregate:
        """Shipper collected the item: AWAITING_PICKUP -> IN_WAREHOUSE."""
        order_id = await self.order_id_for_item(item_id)
        async with self.store.transaction(order_id) as uow:
            item = uow.aggregate.item(item_id)
            self._authorize(actor, uow.aggregate, item)
            self.transitions.move_item(
                uow, item, OrderItemStatus.IN_WAREHOUSE, actor, evidence=evidence
            )
            txn = uow.aggregate.transaction_for(item_id)
            txn.pickup_evidence = list(evidence)
            txn.tracking_number = tracking_number(item_id)
            txn.updated_at = self.clock.now()
            self.transitions.recompute(uow)
        await self.publish_events(uow)
        return uow.aggregate

    @traced
    async def dispatch(self, item_id: str, actor: Actor) -> OrderAggregate:
        """Item left the warehouse: IN_WAREHOUSE -> OUT_FOR_DELIVERY."""
        order_id = await self.order_id_for_item(item_id)
        async with self.store.transaction(order_id) as uow:
            item = uow.aggregate.item(item_id)
            self._authorize(actor, uow.aggregate, item)
            self.transitions.move_item(uow, item, OrderItemStatus.OUT_FOR_DELIVERY, actor)
            now = self.clock.now()
            txn = uow.aggregate.transaction_for(item_id)
            txn.status = TransactionStatus.SHIPPED
            txn.shipped_at = now
            txn.updated_at = now
            if uow.aggregate.order.shipped_at is None:
                uow.aggregate.order.shipped_at = now
            self.transitions.recompute(uow)
        await self.publish_events(uow)
        return uow.aggregate

    @traced
    async def confirm_delivery(
        self, item_id: str, actor: Actor, evidence: Sequence[str]
    ) -> OrderAggregate:
        """OUT_FOR_DELIVERY -> DELIVERED; opens the dispute window."""
        order_id = await self.order_id_for_item(item_id)
        async with self.store.transaction(order_id) as uow:
            item = uow.aggregate.item(item_id)
            self._authorize(actor, uow.aggregate, item)
            self.transitions.move_item(
                uow, item, OrderItemStatus.DELIVERED, actor, evidence=evidence
            )
            now = self.clock.now()
            item.delivered_at = now
            item.review_eligible = True
            txn = uow.aggregate.transaction_for(item_id)
            txn.delivery_evidence = list(evidence)
            txn.status = TransactionStatus.DELIVERED
            txn.delivered_at = now
            txn.updated_at = now
            self.transitions.move_escrow(uow, item, EscrowStatus.AWAITING_RELEASE)
            self.transitions.recompute(uow)
        await self.publish_events(uow)
        return uow.aggregate

    # ------------------------------------------------------------------
    # Cancellation & refunds
    # ------------------------------------------------------------------

    @traced
    async def cancel_item(
        self, item_id: str, actor: Actor, reason: str = ""
    ) -> OrderAggregate:
        """Cancel one item, refunding it if its payment was captured."""
        order_id = await self.order_id_for_item(item_id)
        async with self.store.transaction(order_id) as uow:
            item = uow.aggregate.item(item_id)
            self._authorize(actor, uow.aggregate, item)
            await self.transitions.cancel_line(uow, item, actor, reason)
            self.transitions.recompute(uow)
        logger.info("Item %s cancelled by %s", item_id, actor.actor_id)
        await self.publish_events(uow)
        return uow.aggregate

    @traced
    async def cancel_order(
        self, order_id: str, actor: Actor, reason: str = ""
    ) -> OrderAggregate:
        """Cancel every open item of an order.

        All items are validated before any refund is issued, so a request
        that fails for one item has no side effects on the others.
        """
        async with self.store.transaction(order_id) as uow:
            agg = uow.aggregate
            self._authorize(actor, agg)
            open_items = [
                i for i in agg.items if i.status not in item_machine.TERMINAL_STATES
            ]
            if not open_items:
                raise InvalidTransition(
                    f"Order {order_id} has no cancellable items",
                    current=agg.order.status.value,
                    target=OrderStatus.CANCELLED.value,
                )
            for item in open_items:
                item_machine.check_transition(item.status, OrderItemStatus.CANCELLED, actor.role)
                escrow_ledger.settlement_on_cancel(item.escrow_status)
            for item in open_items:
                await self.transitions.cancel_line(uow, item, actor, reason)
            self.transitions.recompute(uow)
        logger.info("Order %s cancelled by %s", order_id, actor.actor_id)
        await self.publish_events(uow)
        return uow.aggregate

    @traced
    async def refund_item(
        self, item_id: str, actor: Actor, reason: str
    ) -> OrderAggregate:
        """Admin refund of a captured item, delivered items included."""
        self._require_admin(actor)
        order_id = await self.order_id_for_item(item_id)
        async with self.store.transaction(order_id) as uow:
            item = uow.aggregate.item(item_id)
            escrow_ledger.check_refundable(item.escrow_status)
            self.transitions.move_item(uow, item, OrderItemStatus.REFUNDED, actor, notes=reason)
            await self.transitions.refund_line(uow, item, actor, reason)
            self.transitions.recompute(uow)
        logger.info("Item %s refunded by %s: %s", item_id, actor.actor_id, reason)
        await self.publish_events(uow)
        return uow.aggregate

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    @traced
    async def open_dispute(
        self, transaction_id: str, actor: Actor, reason: str
    ) -> OrderAggregate:
        """Buyer disputes a delivered item; blocks release until resolved."""
        if actor.role != ActorRole.BUYER:
            raise Unauthorized("Only the buyer may open a dispute")
        if not reason.strip():
            raise ValidationError("A dispute needs a reason")
        order_id = await self.order_id_for_transaction(transaction_id)
        async with self.store.transaction(order_id) as uow:
            agg = uow.aggregate
            self._authorize(actor, agg)
            txn = agg.transaction(transaction_id)
            item = agg.item(txn.order_item_id)
            if item.escrow_status != EscrowStatus.AWAITING_RELEASE:
                raise InvalidTransition(
                    "Disputes can only be opened while funds await release",
                    current=item.escrow_status.value if item.escrow_status else None,
                )
            if txn.dispute_status == DisputeStatus.OPEN:
                raise InvalidTransition("A dispute is already open for this item")
            now = self.clock.now()
            if item.delivered_at is not None and now >= item.delivered_at + self.dispute_window:
                raise InvalidTransition("The dispute window for this item has closed")
            txn.dispute_status = DisputeStatus.OPEN
            txn.dispute_reason = reason
            txn.dispute_opened_at = now
            txn.updated_at = now
        logger.info("Dispute opened on transaction %s: %s", transaction_id, reason)
        return uow.aggregate

    @traced
    async def resolve_dispute(
        self,
        transaction_id: str,
        actor: Actor,
        *,
        refund_buyer: bool,
        notes: str = "",
    ) -> OrderAggregate:
        """Close an open dispute by refunding the buyer or releasing to the seller."""
        self._require_admin(actor)
        order_id = await self.order_id_for_transaction(transaction_id)
        async with self.store.transaction(order_id) as uow:
            agg = uow.aggregate
            txn = agg.transaction(transaction_id)
            if txn.dispute_status != DisputeStatus.OPEN:
                raise InvalidTransition(f"No open dispute on transaction {transaction_id}")
            item = agg.item(txn.order_item_id)
            txn.dispute_status = DisputeStatus.RESOLVED
            txn.updated_at = self.clock.now()
            reason = notes or "dispute resolved"
            if refund_buyer:
                self.transitions.move_item(uow, item, OrderItemStatus.REFUNDED, actor, notes=reason)
                await self.transitions.refund_line(uow, item, actor, reason)
            else:
                self.transitions.release_line(uow, item, actor, reason)
            self.transitions.recompute(uow)
        logger.info(
            "Dispute on %s resolved by %s in favour of the %s",
            transaction_id, actor.actor_id, "buyer" if refund_buyer else "seller",
        )
        await self.publish_events(uow)
        return uow.aggregate

    # ------------------------------------------------------------------
    # Escrow release & payout
    # ------------------------------------------------------------------

    @traced
    async def release_escrow(
        self, transaction_id: str, actor: Actor, notes: str = ""
    ) -> OrderAggregate:
        """Admin release of AWAITING_RELEASE funds ahead of the window."""
        self._require_admin(actor)
        order_id = await self.order_id_for_transaction(transaction_id)
        async with self.store.transaction(order_id) as uow:
            txn = uow.aggregate.transaction(transaction_id)
            item = uow.aggregate.item(txn.order_item_id)
            if txn.dispute_status == DisputeStatus.OPEN:
                raise InvalidTransition("An open dispute blocks release; resolve it first")
            self.transitions.release_line(uow, item, actor, notes or "released by admin")
        logger.warning("Escrow for transaction %s force-released by %s", transaction_id, actor.actor_id)
        await self.publish_events(uow)
        return uow.aggregate

    @traced
    async def auto_release(self, transaction_id: str) -> bool:
        """Release funds whose dispute window elapsed.  False if stale."""
        order_id = await self.order_id_for_transaction(transaction_id)
        async with self.store.transaction(order_id) as uow:
            txn = uow.aggregate.transaction(transaction_id)
            item = uow.aggregate.item(txn.order_item_id)
            if item.escrow_status != EscrowStatus.AWAITING_RELEASE:
                return False
            if txn.dispute_status == DisputeStatus.OPEN:
                return False
            if item.delivered_at is None or self.clock.now() < item.delivered_at + self.dispute_window:
                return False
            self.transitions.release_line(
                uow, item, Actor.system("release-scheduler"), "dispute window elapsed"
            )
        await self.publish_events(uow)
        return True

    @traced
    async def payout(
        self, transaction_id: str, *, max_attempts: int | None = None
    ) -> bool | None:
        """Pay the seller for released funds.

        Returns True on transfer, False on a recorded failure and None when
        the transaction is no longer eligible (already paid, refunded or
        out of attempts).
        """
        order_id = await self.order_id_for_transaction(transaction_id)
        async with self.store.transaction(order_id) as uow:
            txn = uow.aggregate.transaction(transaction_id)
            item = uow.aggregate.item(txn.order_item_id)
            if item.escrow_status not in (EscrowStatus.RELEASED, EscrowStatus.TRANSFER_FAILED):
                return None
            if max_attempts is not None and txn.payout_attempts >= max_attempts:
                return None
            transferred = await self.transitions.payout_line(uow, item)
        await self.publish_events(uow)
        return transferred

    @traced
    async def retry_transfer(self, transaction_id: str, actor: Actor) -> OrderAggregate:
        """Operator retry of a failed payout."""
        self._require_admin(actor)
        order_id = await self.order_id_for_transaction(transaction_id)
        async with self.store.transaction(order_id) as uow:
            txn = uow.aggregate.transaction(transaction_id)
            item = uow.aggregate.item(txn.order_item_id)
            if item.escrow_status != EscrowStatus.TRANSFER_FAILED:
                raise InvalidTransition(
                    f"Transaction {transaction_id} has no failed transfer to retry",
                    current=item.escrow_status.value if item.escrow_status else None,
                    target=EscrowStatus.TRANSFERRED.value,
                )
            await self.transitions.payout_line(uow, item)
        logger.info("Transfer retry for %s requested by %s", transaction_id, actor.actor_id)
        await self.publish_events(uow)
        return uow.aggregate
