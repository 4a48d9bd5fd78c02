"""Tests for the logistics hooks."""

from __future__ import annotations

import pytest

from conftest import BUYER, PHOTOS, SHIPPER, only_item, seller_actor
from escrow_engine.core.enums import EscrowStatus, OrderItemStatus
from escrow_engine.core.errors import Unauthorized, ValidationError


@pytest.mark.asyncio
async def test_milestones_drive_fulfillment(flow, logistics):
    agg = await flow.paid("100.00")
    item = only_item(agg)

    await logistics.on_pickup_requested(item.id, seller_actor(item.seller_id))
    collected = await logistics.on_pickup_confirmed(item.id, SHIPPER, PHOTOS[:1])
    assert collected.transaction_for(item.id).tracking_number.startswith("TRK-")
    await logistics.on_dispatched(item.id, SHIPPER)
    delivered = await logistics.on_delivery_confirmed(item.id, SHIPPER, PHOTOS)

    assert only_item(delivered).status == OrderItemStatus.DELIVERED
    assert only_item(delivered).escrow_status == EscrowStatus.AWAITING_RELEASE


@pytest.mark.asyncio
async def test_buyer_cannot_report_pickup(flow, logistics):
    agg = await flow.paid("100.00")
    item = only_item(agg)
    await logistics.on_pickup_requested(item.id, seller_actor(item.seller_id))
    with pytest.raises(Unauthorized):
        await logistics.on_pickup_confirmed(item.id, BUYER, PHOTOS)


@pytest.mark.asyncio
async def test_delivery_without_photos(flow, logistics):
    agg = await flow.paid("100.00")
    item = only_item(agg)
    await flow.advance(item.id, item.seller_id, to="out_for_delivery")
    with pytest.raises(ValidationError):
        await logistics.on_delivery_confirmed(item.id, SHIPPER, [])
