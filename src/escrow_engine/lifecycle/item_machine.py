"""Order item fulfillment state machine.

Success path::

    PENDING -> PROCESSING -> AWAITING_PICKUP -> IN_WAREHOUSE
            -> OUT_FOR_DELIVERY -> DELIVERED

CANCELLED is reachable from every pre-delivery state, REFUNDED from every
state after payment capture (DELIVERED included).  Both are terminal.
"""

from __future__ import annotations

import logging
from typing import Sequence

from escrow_engine.core.enums import ActorRole, OrderItemStatus
from escrow_engine.core.errors import InvalidTransition, Unauthorized, ValidationError
from escrow_engine.core.models import OrderItem

logger = logging.getLogger(__name__)

S = OrderItemStatus

_VALID_TRANSITIONS: dict[OrderItemStatus, frozenset[OrderItemStatus]] = {
    S.PENDING: frozenset({S.PROCESSING, S.CANCELLED}),
    S.PROCESSING: frozenset({S.AWAITING_PICKUP, S.CANCELLED, S.REFUNDED}),
    S.AWAITING_PICKUP: frozenset({S.IN_WAREHOUSE, S.CANCELLED, S.REFUNDED}),
    S.IN_WAREHOUSE: frozenset({S.OUT_FOR_DELIVERY, S.CANCELLED, S.REFUNDED}),
    S.OUT_FOR_DELIVERY: frozenset({S.DELIVERED, S.CANCELLED, S.REFUNDED}),
    S.DELIVERED: frozenset({S.REFUNDED}),
    # Terminal states -- no further transitions allowed.
    S.CANCELLED: frozenset(),
    S.REFUNDED: frozenset(),
}

TERMINAL_STATES = frozenset({S.CANCELLED, S.REFUNDED})

# Buyers may only cancel before the shipper has collected the item.
BUYER_CANCELLABLE = frozenset({S.PENDING, S.PROCESSING, S.AWAITING_PICKUP})

_FORWARD_ROLES: dict[OrderItemStatus, frozenset[ActorRole]] = {
    S.PROCESSING: frozenset({ActorRole.SYSTEM}),
    S.AWAITING_PICKUP: frozenset({ActorRole.SELLER}),
    S.IN_WAREHOUSE: frozenset({ActorRole.SHIPPER}),
    S.OUT_FOR_DELIVERY: frozenset({ActorRole.SHIPPER}),
    S.DELIVERED: frozenset({ActorRole.SHIPPER, ActorRole.BUYER}),
    S.CANCELLED: frozenset(
        {ActorRole.BUYER, ActorRole.SELLER, ActorRole.ADMIN, ActorRole.SYSTEM}
    ),
    S.REFUNDED: frozenset({ActorRole.ADMIN}),
}

EVIDENCE_REQUIRED = frozenset({S.IN_WAREHOUSE, S.DELIVERED})


def is_adjacent(current: OrderItemStatus, target: OrderItemStatus) -> bool:
    return target in _VALID_TRANSITIONS.get(current, frozenset())


def allowed_roles(current: OrderItemStatus, target: OrderItemStatus) -> frozenset[ActorRole]:
    """Roles permitted to drive ``current -> target`` (empty if not adjacent)."""
    if not is_adjacent(current, target):
        return frozenset()
    roles = _FORWARD_ROLES[target]
    if target == S.CANCELLED and current not in BUYER_CANCELLABLE:
        roles = roles - {ActorRole.BUYER}
    return roles


def check_transition(
    current: OrderItemStatus,
    target: OrderItemStatus,
    role: ActorRole,
    *,
    evidence: Sequence[str] | None = None,
) -> None:
    """Validate a requested item transition without applying it.

    Raises:
        InvalidTransition: the pair is not adjacent, or a buyer is trying
            to cancel an item the shipper already holds.
        Unauthorized: the role may not drive this transition.
        ValidationError: photo evidence is required but missing.
    """
    if not is_adjacent(current, target):
        raise InvalidTransition(
            f"Invalid item transition: {current.value} -> {target.value}",
            current=current.value,
            target=target.value,
        )

    if role not in _FORWARD_ROLES[target]:
        raise Unauthorized(
            f"{role.value} may not move an item to {target.value}"
        )

    if target == S.CANCELLED and role == ActorRole.BUYER and current not in BUYER_CANCELLABLE:
        raise InvalidTransition(
            "item not cancellable in its current state",
            current=current.value,
            target=target.value,
        )

    if target in EVIDENCE_REQUIRED and not [url for url in evidence or () if url.strip()]:
        raise ValidationError(
            f"Moving an item to {target.value} requires photo evidence"
        )


def transition(
    item: OrderItem,
    target: OrderItemStatus,
    role: ActorRole,
    *,
    evidence: Sequence[str] | None = None,
) -> OrderItemStatus:
    """Validate and apply ``item.status -> target``.

    The item is left untouched when validation fails.  Returns the
    previous status.
    """
    previous = item.status
    check_transition(previous, target, role, evidence=evidence)
    item.status = target
    logger.debug(
        "Item state transition: item=%s %s -> %s (by %s)",
        item.id, previous.value, target.value, role.value,
    )
    return previous
