"""Logistics-facing hooks.

The shipping integration reports physical milestones here; each hook is a
thin translation onto the orchestrator's fulfillment transitions so the
same validation, history and escrow effects apply.
"""

from __future__ import annotations

import logging
from typing import Sequence

from escrow_engine.core.models import Actor, OrderAggregate

from .service import OrderOrchestrator

logger = logging.getLogger(__name__)


class LogisticsService:
    def __init__(self, orchestrator: OrderOrchestrator) -> None:
        self._orders = orchestrator

    async def on_pickup_requested(self, item_id: str, seller: Actor) -> OrderAggregate:
        logger.info("Pickup requested for item %s by seller %s", item_id, seller.actor_id)
        return await self._orders.request_pickup(item_id, seller)

    async def on_pickup_confirmed(
        self, item_id: str, shipper: Actor, evidence: Sequence[str]
    ) -> OrderAggregate:
        agg = await self._orders.confirm_pickup(item_id, shipper, evidence)
        logger.info(
            "Item %s collected by %s (tracking %s)",
            item_id, shipper.actor_id, agg.transaction_for(item_id).tracking_number,
        )
        return agg

    async def on_dispatched(self, item_id: str, shipper: Actor) -> OrderAggregate:
        return await self._orders.dispatch(item_id, shipper)

    async def on_delivery_confirmed(
        self, item_id: str, actor: Actor, evidence: Sequence[str]
    ) -> OrderAggregate:
        """Delivery confirmed by the shipper or the buyer."""
        return await self._orders.confirm_delivery(item_id, actor, evidence)
