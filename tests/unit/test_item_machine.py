"""Tests for the order item fulfillment state machine."""

from __future__ import annotations

import pytest

from escrow_engine.core.enums import ActorRole, OrderItemStatus
from escrow_engine.core.errors import InvalidTransition, Unauthorized, ValidationError
from escrow_engine.core.models import OrderItem
from escrow_engine.lifecycle.item_machine import (
    BUYER_CANCELLABLE,
    allowed_roles,
    check_transition,
    is_adjacent,
    transition,
)

S = OrderItemStatus


def _item(status: OrderItemStatus = S.PENDING) -> OrderItem:
    return OrderItem(
        order_id="order-1",
        product_id="product-1",
        seller_id="seller-1",
        price=100,
        platform_fee=5,
        seller_amount=95,
        fee_percentage=5,
        status=status,
    )


class TestAdjacency:
    def test_success_path_is_adjacent(self):
        path = [S.PENDING, S.PROCESSING, S.AWAITING_PICKUP, S.IN_WAREHOUSE,
                S.OUT_FOR_DELIVERY, S.DELIVERED]
        for current, target in zip(path, path[1:]):
            assert is_adjacent(current, target)

    def test_skipping_a_step_is_not_adjacent(self):
        assert not is_adjacent(S.PROCESSING, S.IN_WAREHOUSE)
        assert not is_adjacent(S.PENDING, S.DELIVERED)

    def test_terminal_states_have_no_exits(self):
        for terminal in (S.CANCELLED, S.REFUNDED):
            assert all(not is_adjacent(terminal, target) for target in S)

    def test_delivered_can_only_be_refunded(self):
        assert is_adjacent(S.DELIVERED, S.REFUNDED)
        assert not is_adjacent(S.DELIVERED, S.CANCELLED)

    def test_pending_cannot_be_refunded(self):
        assert not is_adjacent(S.PENDING, S.REFUNDED)


class TestRoles:
    def test_only_system_moves_to_processing(self):
        check_transition(S.PENDING, S.PROCESSING, ActorRole.SYSTEM)
        with pytest.raises(Unauthorized):
            check_transition(S.PENDING, S.PROCESSING, ActorRole.BUYER)

    def test_seller_requests_pickup(self):
        check_transition(S.PROCESSING, S.AWAITING_PICKUP, ActorRole.SELLER)
        with pytest.raises(Unauthorized):
            check_transition(S.PROCESSING, S.AWAITING_PICKUP, ActorRole.SHIPPER)

    def test_buyer_or_shipper_confirms_delivery(self):
        check_transition(S.OUT_FOR_DELIVERY, S.DELIVERED, ActorRole.BUYER, evidence=["a"])
        check_transition(S.OUT_FOR_DELIVERY, S.DELIVERED, ActorRole.SHIPPER, evidence=["a"])
        with pytest.raises(Unauthorized):
            check_transition(S.OUT_FOR_DELIVERY, S.DELIVERED, ActorRole.SELLER, evidence=["a"])

    def test_only_admin_refunds(self):
        check_transition(S.DELIVERED, S.REFUNDED, ActorRole.ADMIN)
        with pytest.raises(Unauthorized):
            check_transition(S.DELIVERED, S.REFUNDED, ActorRole.BUYER)

    @pytest.mark.parametrize("status", sorted(BUYER_CANCELLABLE))
    def test_buyer_cancels_before_pickup(self, status):
        check_transition(status, S.CANCELLED, ActorRole.BUYER)

    @pytest.mark.parametrize("status", [S.IN_WAREHOUSE, S.OUT_FOR_DELIVERY])
    def test_buyer_cannot_cancel_after_pickup(self, status):
        with pytest.raises(InvalidTransition, match="not cancellable"):
            check_transition(status, S.CANCELLED, ActorRole.BUYER)

    def test_seller_may_cancel_in_warehouse(self):
        check_transition(S.IN_WAREHOUSE, S.CANCELLED, ActorRole.SELLER)

    def test_allowed_roles_drops_buyer_after_pickup(self):
        assert ActorRole.BUYER in allowed_roles(S.PROCESSING, S.CANCELLED)
        assert ActorRole.BUYER not in allowed_roles(S.IN_WAREHOUSE, S.CANCELLED)
        assert allowed_roles(S.PENDING, S.DELIVERED) == frozenset()


class TestEvidence:
    def test_pickup_requires_photos(self):
        with pytest.raises(ValidationError):
            check_transition(S.AWAITING_PICKUP, S.IN_WAREHOUSE, ActorRole.SHIPPER)

    def test_blank_urls_do_not_count(self):
        with pytest.raises(ValidationError):
            check_transition(S.OUT_FOR_DELIVERY, S.DELIVERED, ActorRole.SHIPPER, evidence=["  "])

    def test_dispatch_needs_no_photos(self):
        check_transition(S.IN_WAREHOUSE, S.OUT_FOR_DELIVERY, ActorRole.SHIPPER)


class TestApply:
    def test_transition_returns_previous_and_mutates(self):
        item = _item(S.PROCESSING)
        previous = transition(item, S.AWAITING_PICKUP, ActorRole.SELLER)
        assert previous == S.PROCESSING
        assert item.status == S.AWAITING_PICKUP

    def test_rejected_transition_leaves_item_untouched(self):
        item = _item(S.PENDING)
        with pytest.raises(InvalidTransition) as exc_info:
            transition(item, S.DELIVERED, ActorRole.SHIPPER, evidence=["a"])
        assert item.status == S.PENDING
        assert exc_info.value.current == "pending"
        assert exc_info.value.target == "delivered"
