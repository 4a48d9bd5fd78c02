"""In-memory order store for development and tests.

Each order has its own ``asyncio.Lock``; a unit of work holds it from
load to commit, so transitions on one order are serialized while
different orders proceed concurrently.  Commits also check the version
counter, mirroring the optimistic check the Postgres store performs.
Reads are lock-free and return copies.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

from escrow_engine.core.enums import EscrowStatus, OrderStatus
from escrow_engine.core.errors import ConflictError, NotFound
from escrow_engine.core.models import (
    EscrowRelease,
    OrderAggregate,
    ProcessedGatewayEvent,
    StatusHistoryEntry,
)

from .unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class MemoryUnitOfWork(UnitOfWork):
    def __init__(
        self, store: MemoryOrderStore, aggregate: OrderAggregate, *, expected_version: int | None
    ) -> None:
        super().__init__(aggregate, expected_version=expected_version)
        self._store = store

    async def is_event_processed(self, key: str) -> bool:
        return key in self._store._processed or self.has_pending_event_key(key)


class MemoryOrderStore:
    """Dict-backed implementation of ``IOrderStore``."""

    def __init__(self) -> None:
        self._orders: dict[str, OrderAggregate] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._by_code: dict[int, str] = {}
        self._by_item: dict[str, str] = {}
        self._by_txn: dict[str, str] = {}
        self._history: list[StatusHistoryEntry] = []
        self._releases: list[EscrowRelease] = []
        self._processed: dict[str, ProcessedGatewayEvent] = {}
        self._fail_next_commit: Exception | None = None
        self.commit_count = 0

    # ------------------------------------------------------------------
    # Test hooks
    # ------------------------------------------------------------------

    def fail_next_commit(self, error: Exception) -> None:
        """Make the next commit raise *error* (simulates a storage outage)."""
        self._fail_next_commit = error

    # ------------------------------------------------------------------
    # Units of work
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def create(self, aggregate: OrderAggregate) -> AsyncIterator[MemoryUnitOfWork]:
        order = aggregate.order
        async with self._locks[order.id]:
            if order.id in self._orders or order.order_code in self._by_code:
                raise ConflictError(f"Order {order.id} / code {order.order_code} already exists")
            uow = MemoryUnitOfWork(self, aggregate.model_copy(deep=True), expected_version=None)
            yield uow
            self._commit(uow)

    @asynccontextmanager
    async def transaction(self, order_id: str) -> AsyncIterator[MemoryUnitOfWork]:
        if order_id not in self._orders:
            raise NotFound(f"Order {order_id} not found")
        async with self._locks[order_id]:
            current = self._orders[order_id]
            uow = MemoryUnitOfWork(
                self, current.model_copy(deep=True), expected_version=current.order.version
            )
            yield uow
            self._commit(uow)

    def _commit(self, uow: MemoryUnitOfWork) -> None:
        if not uow.dirty:
            return
        if self._fail_next_commit is not None:
            error, self._fail_next_commit = self._fail_next_commit, None
            raise error

        agg = uow.aggregate
        order_id = agg.order.id
        if not uow.is_new:
            stored = self._orders[order_id]
            if stored.order.version != uow.expected_version:
                raise ConflictError(
                    f"Order {order_id} changed concurrently "
                    f"(expected v{uow.expected_version}, found v{stored.order.version})"
                )
            uow.check_lines_unchanged()
        for event in uow.processed:
            if event.key in self._processed:
                raise ConflictError(f"Gateway event {event.key} already processed")

        if not uow.is_new:
            agg.order.version += 1
        self._orders[order_id] = agg.model_copy(deep=True)
        self._by_code[agg.order.order_code] = order_id
        for item in agg.items:
            self._by_item[item.id] = order_id
        for txn in agg.transactions:
            self._by_txn[txn.id] = order_id
        self._history.extend(uow.history)
        self._releases.extend(uow.releases)
        for event in uow.processed:
            self._processed[event.key] = event
        self.commit_count += 1

    # ------------------------------------------------------------------
    # Lock-free reads
    # ------------------------------------------------------------------

    async def get(self, order_id: str) -> OrderAggregate:
        agg = self._orders.get(order_id)
        if agg is None:
            raise NotFound(f"Order {order_id} not found")
        return agg.model_copy(deep=True)

    async def find_order_id_by_code(self, order_code: int) -> str | None:
        return self._by_code.get(order_code)

    async def find_order_id_by_item(self, item_id: str) -> str | None:
        return self._by_item.get(item_id)

    async def find_order_id_by_transaction(self, transaction_id: str) -> str | None:
        return self._by_txn.get(transaction_id)

    async def list_pending_orders(self, created_before: datetime) -> list[str]:
        rows = [
            agg.order
            for agg in self._orders.values()
            if agg.order.status == OrderStatus.PENDING
            and agg.order.paid_at is None
            and agg.order.created_at <= created_before
        ]
        return [o.id for o in sorted(rows, key=lambda o: o.created_at)]

    async def list_escrow_candidates(
        self, status: EscrowStatus, *, max_payout_attempts: int | None = None
    ) -> list[tuple[str, str]]:
        out: list[tuple[str, str]] = []
        for agg in self._orders.values():
            for item in agg.items:
                if item.escrow_status != status:
                    continue
                txn = agg.transaction_for(item.id)
                if max_payout_attempts is not None and txn.payout_attempts >= max_payout_attempts:
                    continue
                out.append((agg.order.id, txn.id))
        return out

    async def list_status_history(self, order_id: str) -> list[StatusHistoryEntry]:
        return [h for h in self._history if h.order_id == order_id]

    async def list_escrow_releases(self, order_id: str) -> list[EscrowRelease]:
        return [r for r in self._releases if r.order_id == order_id]

    def is_event_recorded(self, key: str) -> bool:
        return key in self._processed

