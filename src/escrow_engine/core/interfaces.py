"""Protocol interfaces for the escrow engine.

All module boundaries are defined here as Protocol classes.
Implementations can be swapped (dev/production/tests) without changing
callers.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncContextManager, Callable, Coroutine, Protocol, runtime_checkable

from .enums import EscrowStatus
from .models import (
    EscrowRelease,
    GatewayEvent,
    OrderAggregate,
    ProcessedGatewayEvent,
    StatusHistoryEntry,
)


# ---------------------------------------------------------------------------
# Payment gateway
# ---------------------------------------------------------------------------

@runtime_checkable
class IPaymentGateway(Protocol):
    """Adapter over an external payment provider.

    Raises ``RetryableGatewayError`` for transient failures and
    ``TerminalGatewayError`` for permanent ones.
    """

    async def create_payment_intent(
        self, order_id: str, amount: Decimal, *, order_code: int
    ) -> str: ...

    async def verify_payment(self, intent_ref: str) -> bool: ...

    async def refund(
        self, txn_ref: str, amount: Decimal, reason: str, *, idempotency_key: str
    ) -> str: ...

    def parse_webhook(self, raw_payload: bytes, signature: str) -> GatewayEvent: ...

    async def payout_to_seller(
        self, seller_account_ref: str, amount: Decimal, *, idempotency_key: str
    ) -> str: ...


# ---------------------------------------------------------------------------
# Product catalog
# ---------------------------------------------------------------------------

@runtime_checkable
class IProductCatalog(Protocol):
    """Listing status collaborator.  All calls must be idempotent."""

    async def mark_reserved(self, product_id: str) -> None: ...
    async def mark_sold(self, product_id: str) -> None: ...
    async def mark_active(self, product_id: str) -> None: ...


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class IOrderUnitOfWork(Protocol):
    """A locked, mutable working copy of one order aggregate.

    Changes are committed atomically when the owning context exits
    without an exception and discarded otherwise.
    """

    aggregate: OrderAggregate
    pending_events: list[tuple[str, Any]]

    def append_history(self, entry: StatusHistoryEntry) -> None: ...
    def append_release(self, record: EscrowRelease) -> None: ...
    async def is_event_processed(self, key: str) -> bool: ...
    def mark_event_processed(self, event: ProcessedGatewayEvent) -> None: ...
    def emit(self, topic: str, event: Any) -> None: ...


@runtime_checkable
class IOrderStore(Protocol):
    """Transactional store for order aggregates."""

    def create(self, aggregate: OrderAggregate) -> AsyncContextManager[IOrderUnitOfWork]: ...

    def transaction(self, order_id: str) -> AsyncContextManager[IOrderUnitOfWork]: ...

    async def get(self, order_id: str) -> OrderAggregate: ...

    async def find_order_id_by_code(self, order_code: int) -> str | None: ...
    async def find_order_id_by_item(self, item_id: str) -> str | None: ...
    async def find_order_id_by_transaction(self, transaction_id: str) -> str | None: ...

    async def list_pending_orders(self, created_before: datetime) -> list[str]: ...

    async def list_escrow_candidates(
        self, status: EscrowStatus, *, max_payout_attempts: int | None = None
    ) -> list[tuple[str, str]]: ...

    async def list_status_history(self, order_id: str) -> list[StatusHistoryEntry]: ...
    async def list_escrow_releases(self, order_id: str) -> list[EscrowRelease]: ...


@runtime_checkable
class ISweepLock(Protocol):
    """Named lease used to keep scheduled passes from overlapping."""

    async def acquire(self, name: str, ttl_seconds: int) -> str | None: ...
    async def release(self, name: str, token: str) -> None: ...


# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------

@runtime_checkable
class IEventBus(Protocol):
    """Publish/subscribe bus for after-commit domain events."""

    async def publish(self, topic: str, event: Any) -> str:
        """Append *event* to *topic*; returns the bus entry id."""
        ...

    async def subscribe(
        self,
        topic: str,
        group: str,
        handler: Callable[[Any], Coroutine[Any, Any, None]],
    ) -> None: ...

    async def start(self) -> None: ...
    async def stop(self) -> None: ...
