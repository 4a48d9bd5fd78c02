"""Enumerations used across the escrow engine."""

from enum import Enum


class Mode(str, Enum):
    DEV = "dev"  # In-memory store, paper gateway
    PRODUCTION = "production"  # Postgres, HTTP gateway, Redis


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    EXPIRED = "expired"  # Set only by the reconciliation sweeper


class OrderItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    AWAITING_PICKUP = "awaiting_pickup"
    IN_WAREHOUSE = "in_warehouse"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class EscrowStatus(str, Enum):
    HOLDING = "holding"
    AWAITING_RELEASE = "awaiting_release"
    RELEASED = "released"
    TRANSFERRED = "transferred"
    TRANSFER_FAILED = "transfer_failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class ActorRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    SHIPPER = "shipper"
    ADMIN = "admin"
    SYSTEM = "system"  # Gateway callbacks, sweeper, release scheduler


class PaymentMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    QR_CODE = "qr_code"
    CARD = "card"
    WALLET = "wallet"


class GatewayPaymentStatus(str, Enum):
    """Normalized payment status reported by a gateway webhook."""

    PAID = "PAID"
    PENDING = "PENDING"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"


class DisputeStatus(str, Enum):
    NONE = "none"
    OPEN = "open"
    RESOLVED = "resolved"


class EscrowReleaseKind(str, Enum):
    RELEASE = "release"
    TRANSFER = "transfer"
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"


class ProductStatus(str, Enum):
    ACTIVE = "active"
    RESERVED = "reserved"  # Awaiting payment
    SOLD = "sold"


class WebhookOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    RETRY = "retry"
