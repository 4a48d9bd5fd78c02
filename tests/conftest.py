"""Shared fixtures for the escrow-engine test suite."""

from __future__ import annotations

import logging
from decimal import Decimal

import pytest

from escrow_engine.catalog.memory import MemoryProductCatalog
from escrow_engine.core.clock import SimClock
from escrow_engine.core.config import FeeConfig, SweeperConfig
from escrow_engine.core.enums import ActorRole, PaymentMethod
from escrow_engine.core.models import (
    Actor,
    CreateOrderRequest,
    OrderAggregate,
    OrderLineRequest,
    SellerProfile,
)
from escrow_engine.event_bus.memory_bus import MemoryEventBus
from escrow_engine.fees.calculator import FeeCalculator
from escrow_engine.gateway.paper import PaperPaymentGateway
from escrow_engine.orchestrator.admin import AdminService
from escrow_engine.orchestrator.logistics import LogisticsService
from escrow_engine.orchestrator.service import OrderOrchestrator
from escrow_engine.payments.webhook import WebhookProcessor
from escrow_engine.scheduler.release import EscrowReleaseScheduler
from escrow_engine.scheduler.sweeper import ReconciliationSweeper
from escrow_engine.storage.locks import LocalSweepLock
from escrow_engine.storage.memory import MemoryOrderStore

BUYER = Actor(actor_id="buyer-1", role=ActorRole.BUYER)
OTHER_BUYER = Actor(actor_id="buyer-2", role=ActorRole.BUYER)
SHIPPER = Actor(actor_id="shipper-1", role=ActorRole.SHIPPER)
ADMIN = Actor.admin("admin-1")

PHOTOS = ["https://cdn.example.com/p/1.jpg", "https://cdn.example.com/p/2.jpg"]


def seller_actor(seller_id: str) -> Actor:
    return Actor(actor_id=seller_id, role=ActorRole.SELLER)


def make_seller(seller_id: str = "seller-1", **kwargs) -> SellerProfile:
    return SellerProfile(
        seller_id=seller_id, payout_account_ref=f"acct-{seller_id}", **kwargs
    )


def make_request(
    *prices: Decimal | str, buyer_id: str = "buyer-1"
) -> CreateOrderRequest:
    """One line per price, each from its own seller and product."""
    prices = prices or (Decimal("100.00"),)
    return CreateOrderRequest(
        buyer_id=buyer_id,
        shipping_address_id="addr-1",
        payment_method=PaymentMethod.BANK_TRANSFER,
        items=[
            OrderLineRequest(
                product_id=f"product-{n}",
                seller=make_seller(f"seller-{n}"),
                price=Decimal(str(price)),
            )
            for n, price in enumerate(prices, start=1)
        ],
    )


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> SimClock:
    return SimClock()


@pytest.fixture
def store() -> MemoryOrderStore:
    return MemoryOrderStore()


@pytest.fixture
def gateway() -> PaperPaymentGateway:
    return PaperPaymentGateway()


@pytest.fixture
def catalog() -> MemoryProductCatalog:
    return MemoryProductCatalog()


@pytest.fixture
def event_bus() -> MemoryEventBus:
    return MemoryEventBus()


@pytest.fixture
def fee_calculator() -> FeeCalculator:
    return FeeCalculator(FeeConfig().tiers)


@pytest.fixture
def sweeper_config() -> SweeperConfig:
    return SweeperConfig()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def orchestrator(store, gateway, catalog, fee_calculator, event_bus, clock) -> OrderOrchestrator:
    return OrderOrchestrator(
        store, gateway, catalog, fee_calculator, event_bus=event_bus, clock=clock
    )


@pytest.fixture
def sweep_lock() -> LocalSweepLock:
    return LocalSweepLock()


@pytest.fixture
def sweeper(orchestrator, sweep_lock, sweeper_config) -> ReconciliationSweeper:
    return ReconciliationSweeper(orchestrator, sweep_lock, sweeper_config)


@pytest.fixture
def releaser(orchestrator, sweep_lock, sweeper_config) -> EscrowReleaseScheduler:
    return EscrowReleaseScheduler(orchestrator, sweep_lock, sweeper_config)


@pytest.fixture
def admin(orchestrator, sweeper) -> AdminService:
    return AdminService(orchestrator, sweeper)


@pytest.fixture
def logistics(orchestrator) -> LogisticsService:
    return LogisticsService(orchestrator)


@pytest.fixture
def webhooks(orchestrator) -> WebhookProcessor:
    return WebhookProcessor(orchestrator)


# ---------------------------------------------------------------------------
# Scenario driver
# ---------------------------------------------------------------------------

class OrderFlow:
    """Drives orders through the happy path for tests that need a starting state."""

    def __init__(self, orchestrator: OrderOrchestrator, gateway: PaperPaymentGateway) -> None:
        self.orders = orchestrator
        self.gateway = gateway

    async def create(self, *prices: Decimal | str) -> OrderAggregate:
        return await self.orders.create_order(make_request(*prices), BUYER)

    async def paid(self, *prices: Decimal | str) -> OrderAggregate:
        agg = await self.create(*prices)
        self.gateway.mark_paid(agg.order.payment_intent_ref)
        return await self.orders.confirm_payment(agg.order.id, BUYER)

    async def advance(self, item_id: str, seller_id: str, *, to: str = "delivered") -> OrderAggregate:
        """Move a paid item forward; *to* is the last step to perform."""
        steps = ["awaiting_pickup", "in_warehouse", "out_for_delivery", "delivered"]
        agg = None
        for step in steps[: steps.index(to) + 1]:
            if step == "awaiting_pickup":
                agg = await self.orders.request_pickup(item_id, seller_actor(seller_id))
            elif step == "in_warehouse":
                agg = await self.orders.confirm_pickup(item_id, SHIPPER, PHOTOS[:1])
            elif step == "out_for_delivery":
                agg = await self.orders.dispatch(item_id, SHIPPER)
            else:
                agg = await self.orders.confirm_delivery(item_id, SHIPPER, PHOTOS)
        return agg

    async def delivered(self, *prices: Decimal | str) -> OrderAggregate:
        agg = await self.paid(*prices)
        for item in agg.items:
            agg = await self.advance(item.id, item.seller_id)
        return agg


@pytest.fixture
def flow(orchestrator, gateway) -> OrderFlow:
    return OrderFlow(orchestrator, gateway)


def only_item(agg: OrderAggregate):
    assert len(agg.items) == 1
    return agg.items[0]


@pytest.fixture
def restore_logging():
    """Undo the root-logger changes made by setup_logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
