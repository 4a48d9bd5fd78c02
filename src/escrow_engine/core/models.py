"""Core domain models for the escrow engine.

The aggregate root is the Order; items and transactions reference it by
id rather than through live back-references.  ``OrderAggregate`` bundles
the three so that every transition is evaluated against one consistent
snapshot loaded in a single call.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from .enums import (
    ActorRole,
    DisputeStatus,
    EscrowReleaseKind,
    EscrowStatus,
    GatewayPaymentStatus,
    OrderItemStatus,
    OrderStatus,
    PaymentMethod,
    TransactionStatus,
    WebhookOutcome,
)
from .errors import NotFound
from .ids import new_id, utc_now


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------

class Actor(BaseModel):
    """Whoever is asking for a transition.  Authentication is upstream."""

    actor_id: str
    role: ActorRole

    model_config = {"frozen": True}

    @classmethod
    def system(cls, name: str = "system") -> Actor:
        return cls(actor_id=name, role=ActorRole.SYSTEM)

    @classmethod
    def admin(cls, admin_id: str) -> Actor:
        return cls(actor_id=admin_id, role=ActorRole.ADMIN)


class SellerProfile(BaseModel):
    """Seller data snapshotted onto each line at order creation."""

    seller_id: str
    payout_account_ref: str
    fee_percentage: Decimal | None = None  # Explicit override of the tier
    verified_profile: bool = False
    has_membership: bool = False


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class OrderLineRequest(BaseModel):
    product_id: str
    seller: SellerProfile
    price: Decimal
    notes: str = ""


class CreateOrderRequest(BaseModel):
    buyer_id: str
    shipping_address_id: str
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    items: list[OrderLineRequest] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Aggregate members
# ---------------------------------------------------------------------------

class Order(BaseModel):
    id: str = Field(default_factory=new_id)
    order_code: int
    buyer_id: str
    shipping_address_id: str
    total_amount: Decimal
    payment_method: PaymentMethod
    status: OrderStatus = OrderStatus.PENDING
    payment_intent_ref: str | None = None
    refunded_amount: Decimal = Decimal("0")  # Cumulative partial admin refunds
    status_forced: bool = False
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    paid_at: datetime | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    expired_at: datetime | None = None

    @property
    def is_paid(self) -> bool:
        return self.paid_at is not None


class OrderItem(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    product_id: str
    seller_id: str
    price: Decimal
    platform_fee: Decimal
    seller_amount: Decimal
    fee_percentage: Decimal  # Snapshot, never recomputed
    status: OrderItemStatus = OrderItemStatus.PENDING
    escrow_status: EscrowStatus | None = None  # Unset until capture or cancel
    refunded_amount: Decimal = Decimal("0")  # Share of partial refunds charged to this line
    review_eligible: bool = False
    notes: str = ""
    delivered_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Transaction(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    order_item_id: str
    buyer_id: str
    seller_id: str
    seller_payout_ref: str
    amount: Decimal
    platform_fee: Decimal
    seller_amount: Decimal
    status: TransactionStatus = TransactionStatus.PENDING
    payment_intent_ref: str | None = None
    provider_txn_id: str | None = None
    refund_ref: str | None = None
    payout_ref: str | None = None
    payout_attempts: int = 0
    last_payout_error: str | None = None
    tracking_number: str | None = None
    pickup_evidence: list[str] = Field(default_factory=list)
    delivery_evidence: list[str] = Field(default_factory=list)
    dispute_status: DisputeStatus = DisputeStatus.NONE
    dispute_reason: str | None = None
    dispute_opened_at: datetime | None = None
    paid_at: datetime | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    released_at: datetime | None = None
    transferred_at: datetime | None = None
    refunded_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class OrderAggregate(BaseModel):
    """Order + items + transactions, loaded and saved as one unit."""

    order: Order
    items: list[OrderItem]
    transactions: list[Transaction]

    def item(self, item_id: str) -> OrderItem:
        for item in self.items:
            if item.id == item_id:
                return item
        raise NotFound(f"Order item {item_id} not found in order {self.order.id}")

    def transaction(self, transaction_id: str) -> Transaction:
        for txn in self.transactions:
            if txn.id == transaction_id:
                return txn
        raise NotFound(
            f"Transaction {transaction_id} not found in order {self.order.id}"
        )

    def transaction_for(self, item_id: str) -> Transaction:
        for txn in self.transactions:
            if txn.order_item_id == item_id:
                return txn
        raise NotFound(f"No transaction for order item {item_id}")

    def item_statuses(self) -> list[OrderItemStatus]:
        return [item.status for item in self.items]


# ---------------------------------------------------------------------------
# Append-only audit records
# ---------------------------------------------------------------------------

class StatusHistoryEntry(BaseModel):
    """One status change.  ``order_item_id`` is None for order-level overrides."""

    id: str = Field(default_factory=new_id)
    order_id: str
    order_item_id: str | None = None
    status: str
    changed_at: datetime = Field(default_factory=utc_now)
    actor_id: str
    actor_role: ActorRole
    notes: str = ""
    forced: bool = False

    model_config = {"frozen": True}


class EscrowRelease(BaseModel):
    """Record of a money movement out of escrow."""

    id: str = Field(default_factory=new_id)
    order_id: str
    order_item_id: str | None = None
    transaction_id: str | None = None
    kind: EscrowReleaseKind
    amount: Decimal
    reason: str = ""
    actor_id: str
    actor_role: ActorRole
    external_ref: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}


class ProcessedGatewayEvent(BaseModel):
    """Processed-event ledger row, keyed by ``(provider_txn_id, status)``."""

    provider_txn_id: str
    status: GatewayPaymentStatus
    order_id: str
    received_at: datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}

    @property
    def key(self) -> str:
        return f"{self.provider_txn_id}:{self.status.value}"


# ---------------------------------------------------------------------------
# Gateway payloads
# ---------------------------------------------------------------------------

class GatewayEvent(BaseModel):
    """Normalized webhook payload."""

    order_code: int
    status: GatewayPaymentStatus
    provider_txn_id: str
    amount: Decimal | None = None

    @property
    def dedupe_key(self) -> str:
        return f"{self.provider_txn_id}:{self.status.value}"


class WebhookAck(BaseModel):
    outcome: WebhookOutcome
    message: str = ""
