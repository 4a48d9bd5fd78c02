"""PostgreSQL order store.

Each unit of work runs in its own session and database transaction.  The
order row is locked with ``SELECT ... FOR UPDATE`` before the aggregate
is evaluated, and the save is guarded by the ``version`` column so a
writer that bypassed the row lock still cannot overwrite a newer state.

Conversion helpers translate between core domain models
(:mod:`escrow_engine.core.models`) and ORM records.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_engine.core.enums import EscrowStatus, OrderStatus
from escrow_engine.core.errors import ConflictError, NotFound
from escrow_engine.core.models import (
    EscrowRelease,
    Order,
    OrderAggregate,
    OrderItem,
    StatusHistoryEntry,
    Transaction,
)
from escrow_engine.storage.unit_of_work import UnitOfWork

from .models import (
    Base,
    EscrowReleaseRecord,
    OrderItemRecord,
    OrderRecord,
    ProcessedGatewayEventRecord,
    StatusHistoryRecord,
    TransactionRecord,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def _column_values(
    model: BaseModel, record_cls: type[Base], *, exclude: frozenset[str] | set[str] = frozenset()
) -> dict[str, Any]:
    """Model fields that map onto *record_cls* columns, enums flattened."""
    columns = {c.key for c in record_cls.__table__.columns}
    values: dict[str, Any] = {}
    for name in columns - set(exclude):
        value = getattr(model, name)
        values[name] = value.value if isinstance(value, Enum) else value
    return values


def _record_values(record: Base) -> dict[str, Any]:
    return {c.key: getattr(record, c.key) for c in record.__table__.columns}


def _order_to_record(order: Order) -> OrderRecord:
    return OrderRecord(**_column_values(order, OrderRecord))


def _record_to_order(record: OrderRecord) -> Order:
    return Order.model_validate(_record_values(record))


def _item_to_record(item: OrderItem) -> OrderItemRecord:
    return OrderItemRecord(**_column_values(item, OrderItemRecord))


def _record_to_item(record: OrderItemRecord) -> OrderItem:
    return OrderItem.model_validate(_record_values(record))


def _transaction_to_record(txn: Transaction) -> TransactionRecord:
    values = _column_values(txn, TransactionRecord)
    values["pickup_evidence"] = list(txn.pickup_evidence)
    values["delivery_evidence"] = list(txn.delivery_evidence)
    return TransactionRecord(**values)


def _record_to_transaction(record: TransactionRecord) -> Transaction:
    return Transaction.model_validate(_record_values(record))


def _history_to_record(entry: StatusHistoryEntry) -> StatusHistoryRecord:
    return StatusHistoryRecord(**_column_values(entry, StatusHistoryRecord))


def _record_to_history(record: StatusHistoryRecord) -> StatusHistoryEntry:
    return StatusHistoryEntry.model_validate(_record_values(record))


def _release_to_record(release: EscrowRelease) -> EscrowReleaseRecord:
    return EscrowReleaseRecord(**_column_values(release, EscrowReleaseRecord))


def _record_to_release(record: EscrowReleaseRecord) -> EscrowRelease:
    return EscrowRelease.model_validate(_record_values(record))


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------

class PostgresUnitOfWork(UnitOfWork):
    def __init__(
        self, session: AsyncSession, aggregate: OrderAggregate, *, expected_version: int | None
    ) -> None:
        super().__init__(aggregate, expected_version=expected_version)
        self._session = session

    async def is_event_processed(self, key: str) -> bool:
        if self.has_pending_event_key(key):
            return True
        provider_txn_id, _, status = key.rpartition(":")
        row = await self._session.get(ProcessedGatewayEventRecord, (provider_txn_id, status))
        return row is not None

    async def flush(self) -> None:
        if not self.dirty:
            return
        agg = self.aggregate
        session = self._session

        if self.is_new:
            session.add(_order_to_record(agg.order))
            # Items must exist before their transactions reference them.
            await session.flush()
            session.add_all([_item_to_record(i) for i in agg.items])
            await session.flush()
            session.add_all([_transaction_to_record(t) for t in agg.transactions])
        else:
            self.check_lines_unchanged()
            result = await session.execute(
                update(OrderRecord)
                .where(
                    OrderRecord.id == agg.order.id,
                    OrderRecord.version == self.expected_version,
                )
                .values(
                    **_column_values(agg.order, OrderRecord, exclude={"id", "version"}),
                    version=self.expected_version + 1,
                )
            )
            if result.rowcount != 1:
                raise ConflictError(f"Order {agg.order.id} changed concurrently")
            agg.order.version = self.expected_version + 1

            for item in agg.items:
                if item != self.original_item(item.id):
                    await session.execute(
                        update(OrderItemRecord)
                        .where(OrderItemRecord.id == item.id)
                        .values(**_column_values(item, OrderItemRecord, exclude={"id"}))
                    )
            for txn in agg.transactions:
                if txn != self.original_transaction(txn.id):
                    values = _column_values(txn, TransactionRecord, exclude={"id"})
                    values["pickup_evidence"] = list(txn.pickup_evidence)
                    values["delivery_evidence"] = list(txn.delivery_evidence)
                    await session.execute(
                        update(TransactionRecord)
                        .where(TransactionRecord.id == txn.id)
                        .values(**values)
                    )

        session.add_all([_history_to_record(h) for h in self.history])
        session.add_all([_release_to_record(r) for r in self.releases])
        session.add_all(
            [
                ProcessedGatewayEventRecord(
                    provider_txn_id=p.provider_txn_id,
                    status=p.status.value,
                    order_id=p.order_id,
                    received_at=p.received_at,
                )
                for p in self.processed
            ]
        )
        try:
            await session.flush()
        except IntegrityError as exc:
            raise ConflictError(f"Order {agg.order.id}: conflicting write ({exc.orig})") from exc


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class PostgresOrderStore:
    """``IOrderStore`` backed by PostgreSQL."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def create(self, aggregate: OrderAggregate) -> AsyncIterator[PostgresUnitOfWork]:
        async with self._session_factory() as session:
            async with session.begin():
                uow = PostgresUnitOfWork(
                    session, aggregate.model_copy(deep=True), expected_version=None
                )
                yield uow
                await uow.flush()

    @asynccontextmanager
    async def transaction(self, order_id: str) -> AsyncIterator[PostgresUnitOfWork]:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(OrderRecord).where(OrderRecord.id == order_id).with_for_update()
                )
                record = result.scalar_one_or_none()
                if record is None:
                    raise NotFound(f"Order {order_id} not found")
                aggregate = await self._load(session, record)
                uow = PostgresUnitOfWork(session, aggregate, expected_version=record.version)
                yield uow
                await uow.flush()

    @staticmethod
    async def _load(session: AsyncSession, record: OrderRecord) -> OrderAggregate:
        items = (
            await session.execute(
                select(OrderItemRecord)
                .where(OrderItemRecord.order_id == record.id)
                .order_by(OrderItemRecord.created_at, OrderItemRecord.id)
            )
        ).scalars().all()
        txns = (
            await session.execute(
                select(TransactionRecord).where(TransactionRecord.order_id == record.id)
            )
        ).scalars().all()
        return OrderAggregate(
            order=_record_to_order(record),
            items=[_record_to_item(i) for i in items],
            transactions=[_record_to_transaction(t) for t in txns],
        )

    # ------------------------------------------------------------------
    # Lock-free reads
    # ------------------------------------------------------------------

    async def get(self, order_id: str) -> OrderAggregate:
        async with self._session_factory() as session:
            record = await session.get(OrderRecord, order_id)
            if record is None:
                raise NotFound(f"Order {order_id} not found")
            return await self._load(session, record)

    async def _scalar(self, stmt: Any) -> Any:
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def find_order_id_by_code(self, order_code: int) -> str | None:
        return await self._scalar(select(OrderRecord.id).where(OrderRecord.order_code == order_code))

    async def find_order_id_by_item(self, item_id: str) -> str | None:
        return await self._scalar(
            select(OrderItemRecord.order_id).where(OrderItemRecord.id == item_id)
        )

    async def find_order_id_by_transaction(self, transaction_id: str) -> str | None:
        return await self._scalar(
            select(TransactionRecord.order_id).where(TransactionRecord.id == transaction_id)
        )

    async def list_pending_orders(self, created_before: datetime) -> list[str]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(OrderRecord.id)
                .where(
                    OrderRecord.status == OrderStatus.PENDING.value,
                    OrderRecord.paid_at.is_(None),
                    OrderRecord.created_at <= created_before,
                )
                .order_by(OrderRecord.created_at)
            )
            return list(rows.scalars().all())

    async def list_escrow_candidates(
        self, status: EscrowStatus, *, max_payout_attempts: int | None = None
    ) -> list[tuple[str, str]]:
        stmt = (
            select(TransactionRecord.order_id, TransactionRecord.id)
            .join(OrderItemRecord, OrderItemRecord.id == TransactionRecord.order_item_id)
            .where(OrderItemRecord.escrow_status == status.value)
        )
        if max_payout_attempts is not None:
            stmt = stmt.where(TransactionRecord.payout_attempts < max_payout_attempts)
        async with self._session_factory() as session:
            rows = await session.execute(stmt)
            return [(order_id, txn_id) for order_id, txn_id in rows.all()]

    async def list_status_history(self, order_id: str) -> list[StatusHistoryEntry]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(StatusHistoryRecord)
                .where(StatusHistoryRecord.order_id == order_id)
                .order_by(StatusHistoryRecord.changed_at)
            )
            return [_record_to_history(r) for r in rows.scalars().all()]

    async def list_escrow_releases(self, order_id: str) -> list[EscrowRelease]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(EscrowReleaseRecord)
                .where(EscrowReleaseRecord.order_id == order_id)
                .order_by(EscrowReleaseRecord.created_at)
            )
            return [_record_to_release(r) for r in rows.scalars().all()]
