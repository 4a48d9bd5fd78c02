"""Shared unit-of-work bookkeeping for order stores.

A unit of work holds a private working copy of one aggregate plus the
append-only records and after-commit domain events produced while it was
open.  Store implementations decide how to lock and how to persist.
"""

from __future__ import annotations

from typing import Any

from escrow_engine.core.errors import ConsistencyError
from escrow_engine.core.models import (
    EscrowRelease,
    OrderAggregate,
    ProcessedGatewayEvent,
    StatusHistoryEntry,
)


class UnitOfWork:
    def __init__(self, aggregate: OrderAggregate, *, expected_version: int | None) -> None:
        self.aggregate = aggregate
        self.expected_version = expected_version
        self._snapshot = aggregate.model_copy(deep=True)
        self.history: list[StatusHistoryEntry] = []
        self.releases: list[EscrowRelease] = []
        self.processed: list[ProcessedGatewayEvent] = []
        self.pending_events: list[tuple[str, Any]] = []

    @property
    def is_new(self) -> bool:
        return self.expected_version is None

    @property
    def dirty(self) -> bool:
        return (
            self.is_new
            or self.aggregate != self._snapshot
            or bool(self.history or self.releases or self.processed)
        )

    def check_lines_unchanged(self) -> None:
        """Line items and amounts are immutable after creation."""
        if self.is_new:
            return
        if _line_terms(self._snapshot) != _line_terms(self.aggregate) or (
            self._snapshot.order.total_amount != self.aggregate.order.total_amount
        ):
            raise ConsistencyError(
                f"Order {self.aggregate.order.id}: line items or amounts were modified"
            )

    def original_item(self, item_id: str):
        return self._snapshot.item(item_id)

    def original_transaction(self, transaction_id: str):
        return self._snapshot.transaction(transaction_id)

    def append_history(self, entry: StatusHistoryEntry) -> None:
        self.history.append(entry)

    def append_release(self, record: EscrowRelease) -> None:
        self.releases.append(record)

    def mark_event_processed(self, event: ProcessedGatewayEvent) -> None:
        self.processed.append(event)

    def has_pending_event_key(self, key: str) -> bool:
        return any(p.key == key for p in self.processed)

    def emit(self, topic: str, event: Any) -> None:
        """Queue a domain event for publication after commit."""
        self.pending_events.append((topic, event))


def _line_terms(agg: OrderAggregate) -> set[tuple]:
    return {
        (i.id, i.product_id, i.price, i.platform_fee, i.seller_amount, i.fee_percentage)
        for i in agg.items
    }
