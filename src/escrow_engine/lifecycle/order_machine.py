"""Order status derived from item statuses.

Order status is never independent truth: it is recomputed from the items
inside the same unit of work as any item change.  Admin overrides are the
only exception and are flagged on the order.
"""

from __future__ import annotations

from typing import Iterable

from escrow_engine.core.enums import OrderItemStatus, OrderStatus
from escrow_engine.core.errors import ConsistencyError

I = OrderItemStatus

_PROCESSING_GROUP = frozenset({I.PROCESSING, I.AWAITING_PICKUP, I.IN_WAREHOUSE})
_OFF_RAMPS = frozenset({I.CANCELLED, I.REFUNDED})


def derive_order_status(
    statuses: Iterable[OrderItemStatus], *, expired: bool = False
) -> OrderStatus:
    """Aggregate item statuses into the order status.

    Cancelled and refunded items do not downgrade an order whose other
    items are still progressing; among the remaining items the least
    advanced stage decides, except that an item out for delivery lifts
    the order to OUT_FOR_DELIVERY once nothing is still awaiting payment.

    Args:
        statuses: Current status of every item in the order.
        expired: The sweeper expired the order for non-payment.
    """
    statuses = list(statuses)
    if not statuses:
        raise ConsistencyError("Order has no items")

    if all(s == I.CANCELLED for s in statuses):
        return OrderStatus.EXPIRED if expired else OrderStatus.CANCELLED
    if all(s == I.REFUNDED for s in statuses):
        return OrderStatus.REFUNDED

    live = [s for s in statuses if s not in _OFF_RAMPS]
    if not live:
        # Mix of cancelled and refunded lines: money went back to the buyer.
        return OrderStatus.REFUNDED
    if all(s == I.DELIVERED for s in live):
        return OrderStatus.DELIVERED
    if I.PENDING in live:
        return OrderStatus.PENDING
    if I.OUT_FOR_DELIVERY in live and all(
        s in _PROCESSING_GROUP or s in (I.OUT_FOR_DELIVERY, I.DELIVERED) for s in live
    ):
        return OrderStatus.OUT_FOR_DELIVERY
    return OrderStatus.PROCESSING
