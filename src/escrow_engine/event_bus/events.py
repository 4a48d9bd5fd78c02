"""Domain event schemas.

All events inherit from DomainEvent and are Pydantic models.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from escrow_engine.core.enums import (
    ActorRole,
    EscrowReleaseKind,
    EscrowStatus,
    OrderItemStatus,
    OrderStatus,
)
from escrow_engine.core.ids import new_id, utc_now
from escrow_engine.observability.logger import get_trace_id


class DomainEvent(BaseModel):
    """Base for all events. Provides identity, time, and tracing."""

    event_id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utc_now)
    trace_id: str = Field(default_factory=get_trace_id)
    source_module: str = "orchestrator"
    order_id: str


# ===========================================================================
# Topic: orders
# ===========================================================================

class OrderCreated(DomainEvent):
    buyer_id: str
    total_amount: Decimal
    item_count: int


class PaymentCaptured(DomainEvent):
    source: str  # "client", "webhook", "sweeper"
    provider_txn_id: str | None = None


class PaymentFailed(DomainEvent):
    reason: str


class OrderExpired(DomainEvent):
    source_module: str = "sweeper"


class OrderStatusChanged(DomainEvent):
    from_status: OrderStatus
    to_status: OrderStatus
    forced: bool = False


class ItemStatusChanged(DomainEvent):
    item_id: str
    from_status: OrderItemStatus
    to_status: OrderItemStatus
    actor_id: str
    actor_role: ActorRole
    forced: bool = False


# ===========================================================================
# Topic: escrow
# ===========================================================================

class EscrowStatusChanged(DomainEvent):
    item_id: str
    transaction_id: str
    from_status: EscrowStatus | None
    to_status: EscrowStatus


class MoneyMoved(DomainEvent):
    kind: EscrowReleaseKind
    amount: Decimal
    transaction_id: str | None = None
    external_ref: str | None = None


class PayoutFailed(DomainEvent):
    transaction_id: str
    attempts: int
    error: str
