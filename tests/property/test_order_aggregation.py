"""Property test: order status aggregation."""

from hypothesis import given, strategies as st

from escrow_engine.core.enums import OrderItemStatus, OrderStatus
from escrow_engine.lifecycle.order_machine import derive_order_status

I = OrderItemStatus

statuses = st.lists(st.sampled_from(list(OrderItemStatus)), min_size=1, max_size=8)
OFF_RAMPS = {I.CANCELLED, I.REFUNDED}


@given(items=statuses)
def test_pending_item_keeps_order_pending(items):
    live = [s for s in items if s not in OFF_RAMPS]
    if I.PENDING in live and not all(s == I.DELIVERED for s in live):
        assert derive_order_status(items) == OrderStatus.PENDING


@given(items=statuses)
def test_order_delivered_only_when_all_live_items_are(items):
    if derive_order_status(items) == OrderStatus.DELIVERED:
        live = [s for s in items if s not in OFF_RAMPS]
        assert live and all(s == I.DELIVERED for s in live)


@given(items=statuses)
def test_off_ramps_do_not_change_a_live_order(items):
    live = [s for s in items if s not in OFF_RAMPS]
    if live:
        assert derive_order_status(items) == derive_order_status(live)


@given(items=statuses, expired=st.booleans())
def test_expired_requires_flag_and_all_cancelled(items, expired):
    result = derive_order_status(items, expired=expired)
    if result == OrderStatus.EXPIRED:
        assert expired
        assert all(s == I.CANCELLED for s in items)


@given(items=statuses)
def test_order_order_is_irrelevant(items):
    assert derive_order_status(items) == derive_order_status(list(reversed(items)))
