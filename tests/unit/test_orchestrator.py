"""Tests for OrderOrchestrator operations against the in-memory store."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from conftest import (
    ADMIN,
    BUYER,
    OTHER_BUYER,
    PHOTOS,
    SHIPPER,
    make_request,
    only_item,
    seller_actor,
)
from escrow_engine.core.enums import (
    DisputeStatus,
    EscrowReleaseKind,
    EscrowStatus,
    OrderItemStatus,
    OrderStatus,
    ProductStatus,
    TransactionStatus,
)
from escrow_engine.core.errors import (
    ConsistencyError,
    InvalidAmount,
    InvalidTransition,
    NotFound,
    RetryableGatewayError,
    TerminalGatewayError,
    Unauthorized,
    ValidationError,
)
from escrow_engine.event_bus.events import (
    ItemStatusChanged,
    OrderCreated,
    PaymentCaptured,
    PayoutFailed,
)


def _sold_calls(catalog, product_id: str) -> int:
    return catalog.calls.count(("sold", product_id))


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_creates_pending_order_with_fee_snapshot(self, flow, catalog, event_bus):
        agg = await flow.create("100.00")
        item = only_item(agg)
        txn = agg.transaction_for(item.id)

        assert agg.order.status == OrderStatus.PENDING
        assert agg.order.total_amount == Decimal("100.00")
        assert agg.order.payment_intent_ref is not None
        assert item.status == OrderItemStatus.PENDING
        assert item.escrow_status is None
        assert item.platform_fee == Decimal("5.00")
        assert item.seller_amount == Decimal("95.00")
        assert item.fee_percentage == Decimal("5")
        assert txn.status == TransactionStatus.PENDING
        assert txn.seller_payout_ref == "acct-seller-1"
        assert catalog.status(item.product_id) == ProductStatus.RESERVED
        assert len(event_bus.events_of(OrderCreated)) == 1

    @pytest.mark.asyncio
    async def test_records_initial_history(self, orchestrator, flow):
        agg = await flow.create("10.00", "20.00")
        history = await orchestrator.status_history(agg.order.id)
        assert [h.status for h in history] == ["pending", "pending"]
        assert all(h.actor_id == BUYER.actor_id for h in history)

    @pytest.mark.asyncio
    async def test_other_buyer_rejected(self, orchestrator):
        with pytest.raises(Unauthorized):
            await orchestrator.create_order(make_request("10.00"), OTHER_BUYER)

    @pytest.mark.asyncio
    async def test_no_items_rejected(self, orchestrator):
        request = make_request("10.00")
        request.items = []
        with pytest.raises(ValidationError):
            await orchestrator.create_order(request, BUYER)

    @pytest.mark.asyncio
    async def test_duplicate_product_rejected(self, orchestrator):
        request = make_request("10.00", "20.00")
        request.items[1].product_id = request.items[0].product_id
        with pytest.raises(ValidationError):
            await orchestrator.create_order(request, BUYER)

    @pytest.mark.asyncio
    async def test_zero_price_rejected(self, orchestrator):
        with pytest.raises(InvalidAmount):
            await orchestrator.create_order(make_request("0"), BUYER)

    @pytest.mark.asyncio
    async def test_intent_failure_stores_nothing(self, orchestrator, gateway, catalog, store):
        gateway.inject_failure("create_payment_intent", RetryableGatewayError("down"))
        with pytest.raises(RetryableGatewayError):
            await orchestrator.create_order(make_request("10.00"), BUYER)
        assert store.commit_count == 0
        assert catalog.calls == []


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------

class TestConfirmPayment:
    @pytest.mark.asyncio
    async def test_capture_moves_items_to_processing(self, flow, catalog, event_bus):
        agg = await flow.paid("100.00")
        item = only_item(agg)
        txn = agg.transaction_for(item.id)

        assert agg.order.status == OrderStatus.PROCESSING
        assert agg.order.paid_at is not None
        assert item.status == OrderItemStatus.PROCESSING
        assert item.escrow_status == EscrowStatus.HOLDING
        assert txn.status == TransactionStatus.PAID
        assert catalog.status(item.product_id) == ProductStatus.SOLD
        assert [e.source for e in event_bus.events_of(PaymentCaptured)] == ["client"]

    @pytest.mark.asyncio
    async def test_reconfirm_is_a_noop(self, flow, orchestrator, gateway, catalog):
        agg = await flow.paid("100.00")
        again = await orchestrator.confirm_payment(agg.order.id, BUYER)

        assert again.order.version == agg.order.version
        assert gateway.calls["verify_payment"] == 1
        assert _sold_calls(catalog, only_item(agg).product_id) == 1

    @pytest.mark.asyncio
    async def test_concurrent_confirmations_capture_once(self, flow, orchestrator, gateway, catalog):
        agg = await flow.create("100.00")
        gateway.mark_paid(agg.order.payment_intent_ref)

        await asyncio.gather(
            orchestrator.confirm_payment(agg.order.id, BUYER),
            orchestrator.confirm_payment(agg.order.id, BUYER),
        )

        assert _sold_calls(catalog, only_item(agg).product_id) == 1
        history = await orchestrator.status_history(agg.order.id)
        assert [h.status for h in history].count("processing") == 1

    @pytest.mark.asyncio
    async def test_unpaid_intent(self, flow, orchestrator):
        agg = await flow.create("100.00")
        with pytest.raises(InvalidTransition, match="payment not completed"):
            await orchestrator.confirm_payment(agg.order.id, BUYER)
        assert (await orchestrator.get_order(agg.order.id)).order.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_other_buyer_cannot_confirm(self, flow, orchestrator):
        agg = await flow.create("100.00")
        with pytest.raises(Unauthorized):
            await orchestrator.confirm_payment(agg.order.id, OTHER_BUYER)

    @pytest.mark.asyncio
    async def test_terminal_rejection_cancels_order(self, flow, orchestrator, gateway, catalog):
        agg = await flow.create("100.00")
        gateway.inject_failure("verify_payment", TerminalGatewayError("declined"))

        with pytest.raises(TerminalGatewayError):
            await orchestrator.confirm_payment(agg.order.id, BUYER)

        after = await orchestrator.get_order(agg.order.id)
        item = only_item(after)
        assert after.order.status == OrderStatus.CANCELLED
        assert item.escrow_status == EscrowStatus.CANCELLED
        assert catalog.status(item.product_id) == ProductStatus.ACTIVE
        assert gateway.refunds == []

    @pytest.mark.asyncio
    async def test_expired_order_cannot_be_confirmed(self, flow, orchestrator, clock):
        agg = await flow.create("100.00")
        clock.advance(minutes=31)
        await orchestrator.expire_order(agg.order.id, cutoff=clock.now() - timedelta(minutes=30))
        with pytest.raises(InvalidTransition):
            await orchestrator.confirm_payment(agg.order.id, BUYER)

    @pytest.mark.asyncio
    async def test_unknown_order(self, orchestrator):
        with pytest.raises(NotFound):
            await orchestrator.confirm_payment("missing", BUYER)


class TestApplyCapture:
    @pytest.mark.asyncio
    async def test_amount_mismatch_is_fatal(self, flow, orchestrator):
        agg = await flow.create("100.00")
        with pytest.raises(ConsistencyError):
            await orchestrator.apply_payment_captured(
                agg.order.id, source="webhook", amount=Decimal("99.99")
            )
        assert (await orchestrator.get_order(agg.order.id)).order.paid_at is None

    @pytest.mark.asyncio
    async def test_late_payment_on_expired_order_is_refunded(self, flow, orchestrator, gateway, clock):
        agg = await flow.create("100.00")
        clock.advance(minutes=31)
        await orchestrator.expire_order(agg.order.id, cutoff=clock.now() - timedelta(minutes=30))

        changed = await orchestrator.apply_payment_captured(
            agg.order.id, source="webhook", provider_txn_id="ft_late"
        )

        after = await orchestrator.get_order(agg.order.id)
        assert changed is True
        assert after.order.status == OrderStatus.EXPIRED
        assert after.order.paid_at is not None
        assert len(gateway.refunds) == 1
        assert gateway.refunds[0]["amount"] == Decimal("100.00")
        assert gateway.refunds[0]["txn_ref"] == "ft_late"
        releases = await orchestrator.escrow_releases(agg.order.id)
        assert [r.kind for r in releases] == [EscrowReleaseKind.REFUND]

    @pytest.mark.asyncio
    async def test_payment_covering_a_cancelled_item(self, flow, orchestrator, gateway):
        agg = await flow.create("100.00", "50.00")
        first, second = agg.items
        await orchestrator.cancel_item(first.id, BUYER, "changed my mind")

        gateway.mark_paid(agg.order.payment_intent_ref)
        after = await orchestrator.confirm_payment(agg.order.id, BUYER)

        assert after.item(first.id).status == OrderItemStatus.CANCELLED
        assert after.item(second.id).status == OrderItemStatus.PROCESSING
        assert after.order.status == OrderStatus.PROCESSING
        assert [r["amount"] for r in gateway.refunds] == [Decimal("100.00")]


# ---------------------------------------------------------------------------
# Fulfillment
# ---------------------------------------------------------------------------

class TestFulfillment:
    @pytest.mark.asyncio
    async def test_full_path_to_delivery(self, flow, orchestrator):
        agg = await flow.delivered("100.00")
        item = only_item(agg)
        txn = agg.transaction_for(item.id)

        assert agg.order.status == OrderStatus.DELIVERED
        assert agg.order.delivered_at is not None
        assert agg.order.shipped_at is not None
        assert item.status == OrderItemStatus.DELIVERED
        assert item.escrow_status == EscrowStatus.AWAITING_RELEASE
        assert item.review_eligible is True
        assert txn.status == TransactionStatus.DELIVERED
        assert txn.delivery_evidence == PHOTOS
        assert txn.pickup_evidence == PHOTOS[:1]
        expected = "TRK-" + item.id.replace("-", "")[:12].upper()
        assert txn.tracking_number == expected

        history = await orchestrator.status_history(agg.order.id)
        assert [h.status for h in history] == [
            "pending", "processing", "awaiting_pickup", "in_warehouse",
            "out_for_delivery", "delivered",
        ]

    @pytest.mark.asyncio
    async def test_other_seller_cannot_request_pickup(self, flow, orchestrator):
        agg = await flow.paid("100.00")
        with pytest.raises(Unauthorized):
            await orchestrator.request_pickup(only_item(agg).id, seller_actor("seller-9"))

    @pytest.mark.asyncio
    async def test_pickup_requires_evidence(self, flow, orchestrator):
        agg = await flow.paid("100.00")
        item = only_item(agg)
        await flow.advance(item.id, item.seller_id, to="awaiting_pickup")
        with pytest.raises(ValidationError):
            await orchestrator.confirm_pickup(item.id, SHIPPER, [])

    @pytest.mark.asyncio
    async def test_steps_cannot_be_skipped(self, flow, orchestrator):
        agg = await flow.paid("100.00")
        with pytest.raises(InvalidTransition):
            await orchestrator.dispatch(only_item(agg).id, SHIPPER)

    @pytest.mark.asyncio
    async def test_unpaid_item_cannot_ship(self, flow, orchestrator):
        agg = await flow.create("100.00")
        item = only_item(agg)
        with pytest.raises(InvalidTransition):
            await orchestrator.request_pickup(item.id, seller_actor(item.seller_id))

    @pytest.mark.asyncio
    async def test_buyer_may_confirm_delivery(self, flow, orchestrator):
        agg = await flow.paid("100.00")
        item = only_item(agg)
        await flow.advance(item.id, item.seller_id, to="out_for_delivery")
        after = await orchestrator.confirm_delivery(item.id, BUYER, PHOTOS)
        assert only_item(after).status == OrderItemStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_order_status_follows_least_advanced_item(self, flow):
        agg = await flow.paid("100.00", "50.00")
        first, second = agg.items
        after = await flow.advance(first.id, first.seller_id, to="out_for_delivery")
        assert after.order.status == OrderStatus.OUT_FOR_DELIVERY

        after = await flow.orders.confirm_delivery(first.id, SHIPPER, PHOTOS)
        assert after.item(second.id).status == OrderItemStatus.PROCESSING
        assert after.order.status == OrderStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_unknown_item(self, orchestrator):
        with pytest.raises(NotFound):
            await orchestrator.request_pickup("missing", seller_actor("seller-1"))


# ---------------------------------------------------------------------------
# Cancellation & refunds
# ---------------------------------------------------------------------------

class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_unpaid_item(self, flow, orchestrator, gateway, catalog):
        agg = await flow.create("100.00")
        after = await orchestrator.cancel_item(only_item(agg).id, BUYER, "no longer needed")
        item = only_item(after)

        assert after.order.status == OrderStatus.CANCELLED
        assert item.escrow_status == EscrowStatus.CANCELLED
        assert after.transaction_for(item.id).status == TransactionStatus.CANCELLED
        assert catalog.status(item.product_id) == ProductStatus.ACTIVE
        assert gateway.refunds == []

    @pytest.mark.asyncio
    async def test_cancel_paid_item_refunds(self, flow, orchestrator, gateway, catalog):
        agg = await flow.paid("100.00")
        item_id = only_item(agg).id
        after = await orchestrator.cancel_item(item_id, BUYER)
        item = only_item(after)

        assert item.status == OrderItemStatus.CANCELLED
        assert item.escrow_status == EscrowStatus.REFUNDED
        assert after.transaction_for(item_id).refund_ref == gateway.refunds[0]["ref"]
        assert gateway.refunds[0]["amount"] == Decimal("100.00")
        assert catalog.status(item.product_id) == ProductStatus.ACTIVE
        releases = await orchestrator.escrow_releases(agg.order.id)
        assert [(r.kind, r.amount) for r in releases] == [
            (EscrowReleaseKind.REFUND, Decimal("100.00"))
        ]

    @pytest.mark.asyncio
    async def test_buyer_cannot_cancel_after_pickup(self, flow, orchestrator):
        agg = await flow.paid("100.00")
        item = only_item(agg)
        await flow.advance(item.id, item.seller_id, to="in_warehouse")
        with pytest.raises(InvalidTransition, match="not cancellable"):
            await orchestrator.cancel_item(item.id, BUYER)

    @pytest.mark.asyncio
    async def test_seller_cancels_own_item(self, flow, orchestrator):
        agg = await flow.paid("100.00")
        item = only_item(agg)
        after = await orchestrator.cancel_item(item.id, seller_actor(item.seller_id), "out of stock")
        assert only_item(after).escrow_status == EscrowStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_cancel_order_is_all_or_nothing(self, flow, orchestrator, gateway):
        agg = await flow.paid("100.00", "50.00")
        first, second = agg.items
        await flow.advance(first.id, first.seller_id, to="in_warehouse")

        with pytest.raises(InvalidTransition):
            await orchestrator.cancel_order(agg.order.id, BUYER)

        after = await orchestrator.get_order(agg.order.id)
        assert after.item(second.id).status == OrderItemStatus.PROCESSING
        assert gateway.refunds == []

    @pytest.mark.asyncio
    async def test_cancel_order_refunds_every_item(self, flow, orchestrator, gateway):
        agg = await flow.paid("100.00", "50.00")
        after = await orchestrator.cancel_order(agg.order.id, BUYER, "wrong address")
        assert after.order.status == OrderStatus.CANCELLED
        assert sorted(r["amount"] for r in gateway.refunds) == [Decimal("50.00"), Decimal("100.00")]

    @pytest.mark.asyncio
    async def test_cancel_closed_order(self, flow, orchestrator):
        agg = await flow.create("100.00")
        await orchestrator.cancel_order(agg.order.id, BUYER)
        with pytest.raises(InvalidTransition):
            await orchestrator.cancel_order(agg.order.id, BUYER)


class TestRefundItem:
    @pytest.mark.asyncio
    async def test_admin_refunds_delivered_item(self, flow, orchestrator, gateway):
        agg = await flow.delivered("100.00")
        item_id = only_item(agg).id
        after = await orchestrator.refund_item(item_id, ADMIN, "damaged")

        assert after.order.status == OrderStatus.REFUNDED
        assert only_item(after).escrow_status == EscrowStatus.REFUNDED
        assert len(gateway.refunds) == 1

    @pytest.mark.asyncio
    async def test_double_refund_rejected(self, flow, orchestrator, gateway):
        agg = await flow.delivered("100.00")
        item_id = only_item(agg).id
        await orchestrator.refund_item(item_id, ADMIN, "damaged")
        with pytest.raises(InvalidTransition):
            await orchestrator.refund_item(item_id, ADMIN, "damaged")
        assert len(gateway.refunds) == 1

    @pytest.mark.asyncio
    async def test_refund_without_capture(self, flow, orchestrator):
        agg = await flow.create("100.00")
        with pytest.raises(ConsistencyError):
            await orchestrator.refund_item(only_item(agg).id, ADMIN, "x")

    @pytest.mark.asyncio
    async def test_refund_after_transfer_rejected(self, flow, orchestrator):
        agg = await flow.delivered("100.00")
        item = only_item(agg)
        txn_id = agg.transaction_for(item.id).id
        await orchestrator.release_escrow(txn_id, ADMIN)
        assert await orchestrator.payout(txn_id) is True
        with pytest.raises(InvalidTransition, match="transferred"):
            await orchestrator.refund_item(item.id, ADMIN, "too late")

    @pytest.mark.asyncio
    async def test_only_admin_refunds(self, flow, orchestrator, gateway):
        agg = await flow.delivered("100.00")
        with pytest.raises(Unauthorized):
            await orchestrator.refund_item(only_item(agg).id, BUYER, "please")
        assert gateway.refunds == []

    @pytest.mark.asyncio
    async def test_non_admin_on_unpaid_item_is_unauthorized(self, flow, orchestrator):
        agg = await flow.create("100.00")
        with pytest.raises(Unauthorized):
            await orchestrator.refund_item(only_item(agg).id, BUYER, "please")


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------

class TestDisputes:
    @pytest.mark.asyncio
    async def test_open_dispute_blocks_release(self, flow, orchestrator, clock):
        agg = await flow.delivered("100.00")
        txn_id = agg.transactions[0].id
        after = await orchestrator.open_dispute(txn_id, BUYER, "item not as described")
        assert after.transaction(txn_id).dispute_status == DisputeStatus.OPEN

        with pytest.raises(InvalidTransition, match="dispute"):
            await orchestrator.release_escrow(txn_id, ADMIN)
        clock.advance(days=8)
        assert await orchestrator.auto_release(txn_id) is False

    @pytest.mark.asyncio
    async def test_dispute_requires_delivery(self, flow, orchestrator):
        agg = await flow.paid("100.00")
        with pytest.raises(InvalidTransition):
            await orchestrator.open_dispute(agg.transactions[0].id, BUYER, "late")

    @pytest.mark.asyncio
    async def test_dispute_window_closes(self, flow, orchestrator, clock):
        agg = await flow.delivered("100.00")
        clock.advance(days=7)
        with pytest.raises(InvalidTransition, match="window"):
            await orchestrator.open_dispute(agg.transactions[0].id, BUYER, "broken")

    @pytest.mark.asyncio
    async def test_dispute_needs_reason(self, flow, orchestrator):
        agg = await flow.delivered("100.00")
        with pytest.raises(ValidationError):
            await orchestrator.open_dispute(agg.transactions[0].id, BUYER, "  ")

    @pytest.mark.asyncio
    async def test_only_buyer_disputes(self, flow, orchestrator):
        agg = await flow.delivered("100.00")
        with pytest.raises(Unauthorized):
            await orchestrator.open_dispute(agg.transactions[0].id, seller_actor("seller-1"), "x")

    @pytest.mark.asyncio
    async def test_second_dispute_rejected(self, flow, orchestrator):
        agg = await flow.delivered("100.00")
        txn_id = agg.transactions[0].id
        await orchestrator.open_dispute(txn_id, BUYER, "broken")
        with pytest.raises(InvalidTransition, match="already open"):
            await orchestrator.open_dispute(txn_id, BUYER, "still broken")

    @pytest.mark.asyncio
    async def test_resolve_for_buyer_refunds(self, flow, orchestrator, gateway):
        agg = await flow.delivered("100.00")
        txn_id = agg.transactions[0].id
        await orchestrator.open_dispute(txn_id, BUYER, "broken")
        after = await orchestrator.resolve_dispute(txn_id, ADMIN, refund_buyer=True, notes="photos confirm")

        assert after.transaction(txn_id).dispute_status == DisputeStatus.RESOLVED
        assert only_item(after).status == OrderItemStatus.REFUNDED
        assert only_item(after).escrow_status == EscrowStatus.REFUNDED
        assert len(gateway.refunds) == 1

    @pytest.mark.asyncio
    async def test_resolve_for_seller_releases(self, flow, orchestrator):
        agg = await flow.delivered("100.00")
        txn_id = agg.transactions[0].id
        await orchestrator.open_dispute(txn_id, BUYER, "broken")
        after = await orchestrator.resolve_dispute(txn_id, ADMIN, refund_buyer=False)
        assert only_item(after).escrow_status == EscrowStatus.RELEASED

    @pytest.mark.asyncio
    async def test_resolve_requires_admin_and_open_dispute(self, flow, orchestrator):
        agg = await flow.delivered("100.00")
        txn_id = agg.transactions[0].id
        with pytest.raises(InvalidTransition):
            await orchestrator.resolve_dispute(txn_id, ADMIN, refund_buyer=True)
        await orchestrator.open_dispute(txn_id, BUYER, "broken")
        with pytest.raises(Unauthorized):
            await orchestrator.resolve_dispute(txn_id, BUYER, refund_buyer=True)


# ---------------------------------------------------------------------------
# Release & payout
# ---------------------------------------------------------------------------

class TestReleaseAndPayout:
    @pytest.mark.asyncio
    async def test_admin_release(self, flow, orchestrator):
        agg = await flow.delivered("100.00")
        txn_id = agg.transactions[0].id
        after = await orchestrator.release_escrow(txn_id, ADMIN, "seller verified")

        assert only_item(after).escrow_status == EscrowStatus.RELEASED
        assert after.transaction(txn_id).released_at is not None
        releases = await orchestrator.escrow_releases(agg.order.id)
        assert len(releases) == 1
        assert releases[0].kind == EscrowReleaseKind.RELEASE
        assert releases[0].amount == Decimal("95.00")
        assert releases[0].actor_id == ADMIN.actor_id

    @pytest.mark.asyncio
    async def test_release_requires_admin(self, flow, orchestrator):
        agg = await flow.delivered("100.00")
        with pytest.raises(Unauthorized):
            await orchestrator.release_escrow(agg.transactions[0].id, BUYER)

    @pytest.mark.asyncio
    async def test_release_requires_delivery(self, flow, orchestrator):
        agg = await flow.paid("100.00")
        with pytest.raises(InvalidTransition):
            await orchestrator.release_escrow(agg.transactions[0].id, ADMIN)

    @pytest.mark.asyncio
    async def test_auto_release_waits_for_window(self, flow, orchestrator, clock):
        agg = await flow.delivered("100.00")
        txn_id = agg.transactions[0].id
        clock.advance(days=6)
        assert await orchestrator.auto_release(txn_id) is False
        clock.advance(days=1)
        assert await orchestrator.auto_release(txn_id) is True
        assert await orchestrator.auto_release(txn_id) is False

    @pytest.mark.asyncio
    async def test_payout_transfers_seller_amount(self, flow, orchestrator, gateway):
        agg = await flow.delivered("100.00")
        txn_id = agg.transactions[0].id
        await orchestrator.release_escrow(txn_id, ADMIN)

        assert await orchestrator.payout(txn_id) is True
        assert await orchestrator.payout(txn_id) is None

        after = await orchestrator.get_order(agg.order.id)
        txn = after.transaction(txn_id)
        assert only_item(after).escrow_status == EscrowStatus.TRANSFERRED
        assert txn.payout_ref == gateway.payouts[0]["ref"]
        assert gateway.payouts[0]["amount"] == Decimal("95.00")
        assert gateway.payouts[0]["account"] == "acct-seller-1"

    @pytest.mark.asyncio
    async def test_payout_failure_is_recorded(self, flow, orchestrator, gateway, event_bus):
        agg = await flow.delivered("100.00")
        txn_id = agg.transactions[0].id
        await orchestrator.release_escrow(txn_id, ADMIN)
        gateway.inject_failure("payout_to_seller", RetryableGatewayError("bank offline"))

        assert await orchestrator.payout(txn_id) is False

        after = await orchestrator.get_order(agg.order.id)
        txn = after.transaction(txn_id)
        assert only_item(after).escrow_status == EscrowStatus.TRANSFER_FAILED
        assert txn.payout_attempts == 1
        assert "bank offline" in txn.last_payout_error
        assert [e.attempts for e in event_bus.events_of(PayoutFailed)] == [1]

    @pytest.mark.asyncio
    async def test_retry_transfer(self, flow, orchestrator, gateway):
        agg = await flow.delivered("100.00")
        txn_id = agg.transactions[0].id
        await orchestrator.release_escrow(txn_id, ADMIN)
        gateway.inject_failure("payout_to_seller", RetryableGatewayError("bank offline"))
        await orchestrator.payout(txn_id)

        after = await orchestrator.retry_transfer(txn_id, ADMIN)
        assert only_item(after).escrow_status == EscrowStatus.TRANSFERRED
        assert after.transaction(txn_id).payout_attempts == 2
        assert after.transaction(txn_id).last_payout_error is None

    @pytest.mark.asyncio
    async def test_retry_transfer_requires_failure(self, flow, orchestrator):
        agg = await flow.delivered("100.00")
        txn_id = agg.transactions[0].id
        await orchestrator.release_escrow(txn_id, ADMIN)
        with pytest.raises(InvalidTransition):
            await orchestrator.retry_transfer(txn_id, ADMIN)

    @pytest.mark.asyncio
    async def test_payout_respects_attempt_cap(self, flow, orchestrator, gateway):
        agg = await flow.delivered("100.00")
        txn_id = agg.transactions[0].id
        await orchestrator.release_escrow(txn_id, ADMIN)
        gateway.inject_failure("payout_to_seller", RetryableGatewayError("bank offline"))
        await orchestrator.payout(txn_id)
        assert await orchestrator.payout(txn_id, max_attempts=1) is None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class TestEvents:
    @pytest.mark.asyncio
    async def test_publish_failure_does_not_fail_operation(self, flow, event_bus):
        event_bus.publish = AsyncMock(side_effect=RuntimeError("bus down"))
        agg = await flow.create("100.00")
        assert agg.order.status == OrderStatus.PENDING
        assert event_bus.publish.await_count >= 1

    @pytest.mark.asyncio
    async def test_failed_commit_publishes_nothing(self, flow, orchestrator, store, event_bus):
        agg = await flow.paid("100.00")
        item = only_item(agg)
        event_bus.clear_history()
        store.fail_next_commit(RuntimeError("database unavailable"))

        with pytest.raises(RuntimeError):
            await orchestrator.request_pickup(item.id, seller_actor(item.seller_id))

        assert event_bus.events_of(ItemStatusChanged) == []
        after = await orchestrator.get_order(agg.order.id)
        assert only_item(after).status == OrderItemStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_operation_events_share_a_trace(self, flow, event_bus):
        await flow.create("100.00")
        created_trace = event_bus.events_of(OrderCreated)[0].trace_id
        event_bus.clear_history()

        agg = await flow.create("50.00")
        flow.gateway.mark_paid(agg.order.payment_intent_ref)
        event_bus.clear_history()
        await flow.orders.confirm_payment(agg.order.id, BUYER)

        traces = {e.trace_id for _, e in event_bus.get_history()}
        assert len(traces) == 1
        assert created_trace not in traces
