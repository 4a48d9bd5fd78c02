"""Escrow (money-holding) state per order item.

Happy path::

    (unset) -> HOLDING -> AWAITING_RELEASE -> RELEASED -> TRANSFERRED

REFUNDED means the capture was reversed at the gateway.  CANCELLED means
no capture ever happened.  The two are never interchangeable.
TRANSFER_FAILED stays retryable until a payout succeeds.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Sequence

from escrow_engine.core.enums import EscrowStatus
from escrow_engine.core.errors import ConsistencyError, InvalidAmount, InvalidTransition
from escrow_engine.core.models import OrderItem

E = EscrowStatus

_VALID_TRANSITIONS: dict[EscrowStatus | None, frozenset[EscrowStatus]] = {
    None: frozenset({E.HOLDING, E.CANCELLED}),
    E.HOLDING: frozenset({E.AWAITING_RELEASE, E.REFUNDED}),
    E.AWAITING_RELEASE: frozenset({E.RELEASED, E.REFUNDED}),
    E.RELEASED: frozenset({E.TRANSFERRED, E.TRANSFER_FAILED, E.REFUNDED}),
    E.TRANSFER_FAILED: frozenset({E.TRANSFERRED, E.TRANSFER_FAILED, E.REFUNDED}),
    # Terminal states -- no further transitions allowed.
    E.TRANSFERRED: frozenset(),
    E.REFUNDED: frozenset(),
    E.CANCELLED: frozenset(),
}

# Funds captured from the buyer and still under platform control.
HELD_STATES = frozenset({E.HOLDING, E.AWAITING_RELEASE, E.RELEASED, E.TRANSFER_FAILED})

TERMINAL_STATES = frozenset({E.TRANSFERRED, E.REFUNDED, E.CANCELLED})


def _label(status: EscrowStatus | None) -> str:
    return status.value if status is not None else "unset"


def can_advance(current: EscrowStatus | None, target: EscrowStatus) -> bool:
    return target in _VALID_TRANSITIONS.get(current, frozenset())


def check_escrow(current: EscrowStatus | None, target: EscrowStatus) -> None:
    if not can_advance(current, target):
        raise InvalidTransition(
            f"Invalid escrow transition: {_label(current)} -> {target.value}",
            current=_label(current),
            target=target.value,
        )


def is_captured(status: EscrowStatus | None) -> bool:
    """True once buyer funds were captured and not yet returned."""
    return status in HELD_STATES


def settlement_on_cancel(current: EscrowStatus | None) -> EscrowStatus:
    """Escrow outcome when the item is cancelled.

    Captured funds must be reversed (REFUNDED); an uncaptured line simply
    closes (CANCELLED).

    Raises:
        InvalidTransition: funds already left escrow or the line is closed.
    """
    if current is None:
        return E.CANCELLED
    if current in HELD_STATES:
        return E.REFUNDED
    raise InvalidTransition(
        f"Cannot cancel: escrow already {current.value}",
        current=current.value,
        target="cancelled",
    )


def check_refundable(current: EscrowStatus | None) -> None:
    """Guard for every refund path.

    Raises:
        InvalidTransition: the payout already went to the seller, or the
            line was already refunded.
        ConsistencyError: nothing was ever captured, so there is nothing
            to reverse.
    """
    if current == E.TRANSFERRED:
        raise InvalidTransition(
            "Escrow already transferred to the seller; refund rejected",
            current=current.value,
            target=E.REFUNDED.value,
        )
    if current == E.REFUNDED:
        raise InvalidTransition(
            "Escrow already refunded", current=current.value, target=E.REFUNDED.value
        )
    if not is_captured(current):
        raise ConsistencyError(
            f"Refund requested without a prior capture (escrow {_label(current)})"
        )


def refund_remainder(item: OrderItem) -> Decimal:
    """What a full refund of *item* still owes the buyer."""
    return item.price - item.refunded_amount


def seller_payable(item: OrderItem) -> Decimal:
    """Seller amount net of any partial refund charged to the line.

    Partial refunds come out of the seller's share first; the platform
    fee only absorbs what exceeds it, so the payout floors at zero.
    """
    return max(item.seller_amount - item.refunded_amount, Decimal("0"))


def allocate_partial_refund(
    items: Sequence[OrderItem], amount: Decimal
) -> list[tuple[OrderItem, Decimal]]:
    """Spread *amount* over held lines in order, filling each to its price.

    Raises:
        InvalidAmount: the lines cannot absorb *amount*.
    """
    shares: list[tuple[OrderItem, Decimal]] = []
    left = amount
    for item in items:
        if left <= 0:
            break
        share = min(refund_remainder(item), left)
        if share > 0:
            shares.append((item, share))
            left -= share
    if left > 0:
        raise InvalidAmount(f"Refund {amount} exceeds the refundable balance by {left}")
    return shares
