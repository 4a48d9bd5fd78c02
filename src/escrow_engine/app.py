"""Application bootstrap and mode routing.

Wires the store, gateway, catalog, event bus and sweep lock for the
selected mode and exposes the services built on top of them.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import timedelta
from typing import Any

from .catalog.http_client import HttpProductCatalog
from .catalog.memory import MemoryProductCatalog
from .core.clock import IClock, WallClock
from .core.config import Settings, load_settings
from .core.enums import Mode
from .core.interfaces import IOrderStore, IPaymentGateway, IProductCatalog, ISweepLock
from .event_bus.bus import create_event_bus
from .fees.calculator import FeeCalculator
from .gateway.http_gateway import HttpPaymentGateway
from .gateway.paper import PaperPaymentGateway
from .observability.logger import setup_logging
from .observability.metrics import start_metrics_server
from .orchestrator.admin import AdminService
from .orchestrator.logistics import LogisticsService
from .orchestrator.service import OrderOrchestrator
from .payments.webhook import WebhookProcessor
from .scheduler.periodic import PeriodicTask
from .scheduler.release import EscrowReleaseScheduler
from .scheduler.sweeper import ReconciliationSweeper
from .storage.locks import LocalSweepLock, RedisSweepLock
from .storage.memory import MemoryOrderStore

logger = logging.getLogger(__name__)


class EscrowApp:
    """All wired services for one process."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: IOrderStore | None = None,
        gateway: IPaymentGateway | None = None,
        catalog: IProductCatalog | None = None,
        lock: ISweepLock | None = None,
        clock: IClock | None = None,
    ) -> None:
        self.settings = settings
        self.clock = clock or WallClock()
        production = settings.mode == Mode.PRODUCTION

        if store is None:
            if production:
                from .storage.postgres.connection import init_engine
                from .storage.postgres.repos import PostgresOrderStore

                store = PostgresOrderStore(init_engine(settings.postgres_url))
            else:
                store = MemoryOrderStore()
        if gateway is None:
            gw = settings.gateway
            if production:
                gateway = HttpPaymentGateway(
                    gw.base_url,
                    gw.api_key,
                    gw.checksum_key,
                    timeout=gw.timeout,
                    max_retries=gw.max_retries,
                    base_backoff=gw.base_backoff,
                )
            else:
                gateway = PaperPaymentGateway(gw.checksum_key or "paper-checksum-key")
        if catalog is None:
            if production:
                catalog = HttpProductCatalog(
                    settings.catalog.base_url, timeout=settings.catalog.timeout
                )
            else:
                catalog = MemoryProductCatalog()
        if lock is None:
            lock = RedisSweepLock(settings.redis_url) if production else LocalSweepLock()

        self.store = store
        self.gateway = gateway
        self.catalog = catalog
        self.lock = lock
        self.event_bus = create_event_bus(settings.mode, settings.redis_url)

        self.orchestrator = OrderOrchestrator(
            store,
            gateway,
            catalog,
            FeeCalculator(settings.fees.tiers),
            event_bus=self.event_bus,
            clock=self.clock,
            dispute_window=timedelta(days=settings.escrow.dispute_window_days),
        )
        self.sweeper = ReconciliationSweeper(self.orchestrator, lock, settings.sweeper)
        self.releaser = EscrowReleaseScheduler(self.orchestrator, lock, settings.sweeper)
        self.logistics = LogisticsService(self.orchestrator)
        self.admin = AdminService(self.orchestrator, self.sweeper)
        self.webhooks = WebhookProcessor(self.orchestrator)

    async def start(self) -> None:
        """Open network clients and start the event bus."""
        for resource in (self.gateway, self.catalog):
            if hasattr(resource, "open"):
                await resource.open()
        if isinstance(self.lock, RedisSweepLock):
            await self.lock.connect()
        await self.event_bus.start()

    async def stop(self) -> None:
        await self.event_bus.stop()
        if isinstance(self.lock, RedisSweepLock):
            await self.lock.close()
        for resource in (self.gateway, self.catalog):
            if hasattr(resource, "close"):
                await resource.close()
        if self.settings.mode == Mode.PRODUCTION:
            from .storage.postgres.connection import dispose

            await dispose()

    async def __aenter__(self) -> EscrowApp:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    def periodic_tasks(self) -> list[PeriodicTask]:
        return [
            PeriodicTask(
                "reconciliation-sweeper",
                self.sweeper.run_once,
                self.settings.sweeper.interval_seconds,
                clock=self.clock,
            ),
            PeriodicTask(
                "escrow-release",
                self.releaser.run_once,
                self.settings.escrow.release_interval_seconds,
                clock=self.clock,
            ),
        ]


def bootstrap(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Load and validate settings, then configure logging."""
    settings = load_settings(config_path=config_path, overrides=overrides)
    settings.validate_production()
    setup_logging(settings.observability.log_level, settings.observability.log_format)
    return settings


async def run_scheduler(settings: Settings) -> None:
    """Run the sweeper and release scheduler until SIGINT/SIGTERM."""
    if settings.observability.metrics_enabled:
        start_metrics_server(settings.observability.metrics_port, settings.mode.value)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # Windows
            pass

    async with EscrowApp(settings) as app:
        tasks = app.periodic_tasks()
        for task in tasks:
            await task.start()
        logger.info("Scheduler running in %s mode", settings.mode.value)
        try:
            await stop.wait()
        finally:
            for task in tasks:
                await task.stop()
    logger.info("Shutdown complete")
