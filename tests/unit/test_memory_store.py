"""Tests for the in-memory order store and its unit of work."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from escrow_engine.core.enums import (
    ActorRole,
    EscrowStatus,
    GatewayPaymentStatus,
    PaymentMethod,
)
from escrow_engine.core.errors import ConflictError, ConsistencyError, NotFound
from escrow_engine.core.interfaces import IOrderStore
from escrow_engine.core.models import (
    Order,
    OrderAggregate,
    OrderItem,
    ProcessedGatewayEvent,
    StatusHistoryEntry,
    Transaction,
)
from escrow_engine.storage.memory import MemoryOrderStore
from escrow_engine.storage.unit_of_work import UnitOfWork

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _make_aggregate(order_code: int = 1001, created_at: datetime = T0) -> OrderAggregate:
    order = Order(
        order_code=order_code,
        buyer_id="buyer-1",
        shipping_address_id="addr-1",
        total_amount=Decimal("100.00"),
        payment_method=PaymentMethod.CARD,
        payment_intent_ref="pi_1",
        created_at=created_at,
    )
    item = OrderItem(
        order_id=order.id,
        product_id="product-1",
        seller_id="seller-1",
        price=Decimal("100.00"),
        platform_fee=Decimal("5.00"),
        seller_amount=Decimal("95.00"),
        fee_percentage=Decimal("5"),
    )
    txn = Transaction(
        order_id=order.id,
        order_item_id=item.id,
        buyer_id="buyer-1",
        seller_id="seller-1",
        seller_payout_ref="acct-1",
        amount=item.price,
        platform_fee=item.platform_fee,
        seller_amount=item.seller_amount,
    )
    return OrderAggregate(order=order, items=[item], transactions=[txn])


async def _stored(store: MemoryOrderStore, **kwargs) -> OrderAggregate:
    agg = _make_aggregate(**kwargs)
    async with store.create(agg):
        pass
    return agg


def test_satisfies_protocol():
    assert isinstance(MemoryOrderStore(), IOrderStore)


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_and_lookup(self, store):
        agg = await _stored(store)
        item_id = agg.items[0].id
        txn_id = agg.transactions[0].id

        assert (await store.get(agg.order.id)).order.id == agg.order.id
        assert await store.find_order_id_by_code(1001) == agg.order.id
        assert await store.find_order_id_by_item(item_id) == agg.order.id
        assert await store.find_order_id_by_transaction(txn_id) == agg.order.id

    @pytest.mark.asyncio
    async def test_duplicate_order_code(self, store):
        await _stored(store)
        with pytest.raises(ConflictError):
            await _stored(store)

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, store):
        agg = await _stored(store)
        copy = await store.get(agg.order.id)
        copy.items[0].escrow_status = EscrowStatus.HOLDING
        assert (await store.get(agg.order.id)).items[0].escrow_status is None

    @pytest.mark.asyncio
    async def test_unknown_order(self, store):
        with pytest.raises(NotFound):
            await store.get("missing")
        with pytest.raises(NotFound):
            async with store.transaction("missing"):
                pass


class TestTransaction:
    @pytest.mark.asyncio
    async def test_commit_bumps_version(self, store):
        agg = await _stored(store)
        async with store.transaction(agg.order.id) as uow:
            uow.aggregate.items[0].escrow_status = EscrowStatus.HOLDING
        after = await store.get(agg.order.id)
        assert after.order.version == 1
        assert after.items[0].escrow_status == EscrowStatus.HOLDING

    @pytest.mark.asyncio
    async def test_untouched_unit_of_work_does_not_commit(self, store):
        agg = await _stored(store)
        before = store.commit_count
        async with store.transaction(agg.order.id):
            pass
        assert store.commit_count == before
        assert (await store.get(agg.order.id)).order.version == 0

    @pytest.mark.asyncio
    async def test_exception_discards_changes(self, store):
        agg = await _stored(store)
        with pytest.raises(RuntimeError):
            async with store.transaction(agg.order.id) as uow:
                uow.aggregate.items[0].escrow_status = EscrowStatus.HOLDING
                uow.append_history(
                    StatusHistoryEntry(
                        order_id=agg.order.id, status="processing",
                        actor_id="system", actor_role=ActorRole.SYSTEM,
                    )
                )
                raise RuntimeError("abort")
        assert (await store.get(agg.order.id)).items[0].escrow_status is None
        assert await store.list_status_history(agg.order.id) == []

    @pytest.mark.asyncio
    async def test_line_amounts_are_immutable(self, store):
        agg = await _stored(store)
        with pytest.raises(ConsistencyError):
            async with store.transaction(agg.order.id) as uow:
                uow.aggregate.items[0].price = Decimal("1.00")

    @pytest.mark.parametrize("field", ["price", "platform_fee", "seller_amount"])
    def test_unit_of_work_guards_line_amounts(self, field):
        uow = UnitOfWork(_make_aggregate(), expected_version=0)
        setattr(uow.aggregate.items[0], field, Decimal("1.00"))
        with pytest.raises(ConsistencyError, match="line items"):
            uow.check_lines_unchanged()

    def test_unit_of_work_allows_refund_bookkeeping(self):
        uow = UnitOfWork(_make_aggregate(), expected_version=0)
        uow.aggregate.items[0].refunded_amount = Decimal("30.00")
        uow.aggregate.items[0].escrow_status = EscrowStatus.HOLDING
        uow.check_lines_unchanged()

    @pytest.mark.asyncio
    async def test_processed_events_are_deduplicated(self, store):
        agg = await _stored(store)
        event = ProcessedGatewayEvent(
            provider_txn_id="ft_1", status=GatewayPaymentStatus.PAID, order_id=agg.order.id
        )
        async with store.transaction(agg.order.id) as uow:
            assert not await uow.is_event_processed(event.key)
            uow.mark_event_processed(event)
            assert await uow.is_event_processed(event.key)

        assert store.is_event_recorded("ft_1:PAID")
        async with store.transaction(agg.order.id) as uow:
            assert await uow.is_event_processed("ft_1:PAID")


class TestQueries:
    @pytest.mark.asyncio
    async def test_pending_orders_by_age(self, store):
        old = await _stored(store, order_code=1, created_at=T0)
        await _stored(store, order_code=2, created_at=T0 + timedelta(hours=1))
        assert await store.list_pending_orders(T0 + timedelta(minutes=30)) == [old.order.id]

    @pytest.mark.asyncio
    async def test_escrow_candidates_respect_attempt_cap(self, store):
        agg = await _stored(store)
        async with store.transaction(agg.order.id) as uow:
            uow.aggregate.items[0].escrow_status = EscrowStatus.TRANSFER_FAILED
            uow.aggregate.transactions[0].payout_attempts = 5

        expected = [(agg.order.id, agg.transactions[0].id)]
        assert await store.list_escrow_candidates(EscrowStatus.TRANSFER_FAILED) == expected
        assert await store.list_escrow_candidates(
            EscrowStatus.TRANSFER_FAILED, max_payout_attempts=5
        ) == []
        assert await store.list_escrow_candidates(EscrowStatus.HOLDING) == []
