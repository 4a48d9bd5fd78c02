"""Operator tooling.

Every admin action is audited: forced status changes append a history
entry flagged ``forced`` that names the operator, and every money
movement appends an EscrowRelease record.  Admin paths log a warning and
proceed, but they never skip money invariants; breaking the derived
order status requires an explicit ``acknowledge_inconsistency=True``.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from escrow_engine.core.enums import (
    EscrowReleaseKind,
    EscrowStatus,
    OrderItemStatus,
    OrderStatus,
)
from escrow_engine.core.errors import (
    ConfigError,
    ConsistencyError,
    InvalidAmount,
    InvalidTransition,
    ValidationError,
)
from escrow_engine.core.ids import content_hash, quantize_money, refund_key
from escrow_engine.core.models import Actor, OrderAggregate, StatusHistoryEntry
from escrow_engine.event_bus.events import OrderStatusChanged
from escrow_engine.lifecycle import escrow_ledger, item_machine
from escrow_engine.lifecycle.order_machine import derive_order_status
from escrow_engine.observability.logger import traced
from escrow_engine.scheduler.sweeper import ReconciliationSweeper, SweepResult

from .service import OrderOrchestrator
from .transitions import emit

logger = logging.getLogger(__name__)


class AdminService:
    def __init__(
        self,
        orchestrator: OrderOrchestrator,
        sweeper: ReconciliationSweeper | None = None,
    ) -> None:
        self._orders = orchestrator
        self._sweeper = sweeper

    @property
    def _t(self):
        return self._orders.transitions

    # ------------------------------------------------------------------
    # Status overrides
    # ------------------------------------------------------------------

    @traced
    async def force_status_override(
        self,
        order_id: str,
        new_status: OrderStatus,
        notes: str,
        admin_id: str,
        *,
        acknowledge_inconsistency: bool = False,
    ) -> OrderAggregate:
        """Set Order.status directly.

        A status that disagrees with the item aggregation is refused
        unless the operator acknowledges the inconsistency.  The next item
        transition re-derives the status and clears the override.
        """
        admin = Actor.admin(admin_id)
        async with self._orders.store.transaction(order_id) as uow:
            order = uow.aggregate.order
            derived = derive_order_status(
                uow.aggregate.item_statuses(), expired=order.expired_at is not None
            )
            if new_status != derived and not acknowledge_inconsistency:
                raise ConsistencyError(
                    f"Order {order_id} items aggregate to {derived.value}; forcing "
                    f"{new_status.value} requires acknowledge_inconsistency=True"
                )

            previous = order.status
            now = self._orders.clock.now()
            order.status = new_status
            order.status_forced = new_status != derived
            order.updated_at = now
            uow.append_history(
                StatusHistoryEntry(
                    order_id=order_id,
                    order_item_id=None,
                    status=new_status.value,
                    changed_at=now,
                    actor_id=admin.actor_id,
                    actor_role=admin.role,
                    notes=notes,
                    forced=True,
                )
            )
            emit(
                uow,
                OrderStatusChanged(
                    order_id=order_id, from_status=previous, to_status=new_status, forced=True
                ),
            )
        logger.warning(
            "Admin %s forced order %s status %s -> %s (derived %s): %s",
            admin_id, order_id, previous.value, new_status.value, derived.value, notes,
        )
        await self._orders.publish_events(uow)
        return uow.aggregate

    @traced
    async def force_item_status(
        self,
        item_id: str,
        new_status: OrderItemStatus,
        notes: str,
        admin_id: str,
        *,
        override: bool = False,
    ) -> OrderAggregate:
        """Move an item to any status, bypassing adjacency.

        CANCELLED and REFUNDED still settle money through the normal
        refund/cancel rules.  Fulfillment statuses can only be forced
        while the item's funds are still HOLDING.
        """
        if not override:
            raise ValidationError("Forcing an item status requires override=True")
        admin = Actor.admin(admin_id)
        order_id = await self._orders.order_id_for_item(item_id)
        async with self._orders.store.transaction(order_id) as uow:
            item = uow.aggregate.item(item_id)
            previous = item.status
            if new_status == previous:
                raise InvalidTransition(
                    f"Item {item_id} is already {previous.value}",
                    current=previous.value,
                    target=new_status.value,
                )
            if previous in item_machine.TERMINAL_STATES:
                raise ConsistencyError(
                    f"Item {item_id} is {previous.value}; its money is already settled"
                )

            if new_status == OrderItemStatus.CANCELLED:
                await self._t.cancel_line(uow, item, admin, notes, forced=True)
            elif new_status == OrderItemStatus.REFUNDED:
                escrow_ledger.check_refundable(item.escrow_status)
                self._t.move_item(uow, item, new_status, admin, notes=notes, forced=True)
                await self._t.refund_line(uow, item, admin, notes)
            elif new_status == OrderItemStatus.PENDING:
                if item.escrow_status is not None:
                    raise ConsistencyError(
                        f"Item {item_id} was already paid for; it cannot return to pending"
                    )
                self._t.move_item(uow, item, new_status, admin, notes=notes, forced=True)
            else:
                if item.escrow_status != EscrowStatus.HOLDING:
                    raise ConsistencyError(
                        f"Item {item_id} escrow is "
                        f"{item.escrow_status.value if item.escrow_status else 'unset'}; "
                        f"fulfillment status can only be forced while funds are holding"
                    )
                self._t.move_item(uow, item, new_status, admin, notes=notes, forced=True)
                if new_status == OrderItemStatus.DELIVERED:
                    item.delivered_at = self._orders.clock.now()
                    item.review_eligible = True
                    self._t.move_escrow(uow, item, EscrowStatus.AWAITING_RELEASE)

            self._t.recompute(uow)
        logger.warning(
            "Admin %s forced item %s %s -> %s: %s",
            admin_id, item_id, previous.value, new_status.value, notes,
        )
        await self._orders.publish_events(uow)
        return uow.aggregate

    # ------------------------------------------------------------------
    # Money
    # ------------------------------------------------------------------

    @traced
    async def force_refund(
        self, order_id: str, amount: Decimal, reason: str, admin_id: str
    ) -> OrderAggregate:
        """Refund *amount* of the funds still held for an order.

        Refunding the whole remaining balance refunds every held item.  A
        smaller amount is recorded as a partial refund, charged to the held
        lines in order, and leaves item statuses alone; those lines later
        refund or pay out only what remains of them.
        """
        if amount <= 0 or quantize_money(amount) != amount:
            raise InvalidAmount(f"Refund amount must be a positive amount in cents, got {amount}")
        admin = Actor.admin(admin_id)

        async with self._orders.store.transaction(order_id) as uow:
            agg = uow.aggregate
            held = [i for i in agg.items if escrow_ledger.is_captured(i.escrow_status)]
            if not held:
                if any(i.escrow_status in escrow_ledger.TERMINAL_STATES - {EscrowStatus.CANCELLED} for i in agg.items):
                    raise InvalidTransition(f"Order {order_id} has no funds left in escrow")
                raise ConsistencyError(f"Order {order_id} has no captured payment to refund")

            balance = sum((escrow_ledger.refund_remainder(i) for i in held), Decimal("0"))
            if balance <= 0:
                raise InvalidTransition(f"Order {order_id} has no refundable balance left")
            if amount > balance:
                raise InvalidAmount(f"Refund {amount} exceeds refundable balance {balance}")

            key = refund_key(
                "admin-refund", content_hash(order_id, str(agg.order.version), str(amount))
            )
            if amount == balance:
                refund_ref = await self._t.refund_order_amount(
                    uow, amount, admin, reason,
                    kind=EscrowReleaseKind.REFUND, idempotency_key=key,
                )
                for item in held:
                    self._t.move_item(uow, item, OrderItemStatus.REFUNDED, admin, notes=reason)
                    await self._t.refund_line(uow, item, admin, reason, refund_ref=refund_ref)
                self._t.recompute(uow)
            else:
                await self._t.refund_order_amount(
                    uow, amount, admin, reason,
                    kind=EscrowReleaseKind.PARTIAL_REFUND, idempotency_key=key,
                )
                for item, share in escrow_ledger.allocate_partial_refund(held, amount):
                    item.refunded_amount += share
                    item.updated_at = self._orders.clock.now()
                agg.order.refunded_amount += amount
                agg.order.updated_at = self._orders.clock.now()

        logger.warning("Admin %s refunded %s on order %s: %s", admin_id, amount, order_id, reason)
        await self._orders.publish_events(uow)
        return uow.aggregate

    async def force_release_escrow(
        self, transaction_id: str, notes: str, admin_id: str
    ) -> OrderAggregate:
        return await self._orders.release_escrow(transaction_id, Actor.admin(admin_id), notes)

    async def retry_transfer(self, transaction_id: str, admin_id: str) -> OrderAggregate:
        return await self._orders.retry_transfer(transaction_id, Actor.admin(admin_id))

    async def resolve_dispute(
        self,
        transaction_id: str,
        admin_id: str,
        *,
        refund_buyer: bool,
        notes: str = "",
    ) -> OrderAggregate:
        return await self._orders.resolve_dispute(
            transaction_id, Actor.admin(admin_id), refund_buyer=refund_buyer, notes=notes
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def trigger_reconciliation(self) -> SweepResult:
        """Run one reconciliation pass now."""
        if self._sweeper is None:
            raise ConfigError("No reconciliation sweeper configured")
        logger.info("Manual reconciliation triggered")
        return await self._sweeper.run_once()
