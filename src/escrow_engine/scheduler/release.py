"""Escrow release scheduler.

Releases funds whose dispute window elapsed without a dispute, then pays
sellers for released funds.  Every row is re-checked under the order lock
(stale-timer guard), so overlapping or repeated passes are harmless.
"""

from __future__ import annotations

import logging
import time

from pydantic import BaseModel

from escrow_engine.core.config import SweeperConfig
from escrow_engine.core.enums import EscrowStatus
from escrow_engine.core.interfaces import ISweepLock
from escrow_engine.observability.logger import trace_scope
from escrow_engine.observability.metrics import record_sweep
from escrow_engine.orchestrator.service import OrderOrchestrator

logger = logging.getLogger(__name__)

LOCK_NAME = "escrow-release"


class ReleaseResult(BaseModel):
    released: int = 0
    transferred: int = 0
    transfer_failed: int = 0
    skipped: int = 0
    errors: int = 0
    lock_skipped: bool = False


class EscrowReleaseScheduler:
    def __init__(
        self,
        orchestrator: OrderOrchestrator,
        lock: ISweepLock,
        config: SweeperConfig | None = None,
    ) -> None:
        self._orders = orchestrator
        self._lock = lock
        self._config = config or SweeperConfig()

    async def run_once(self) -> ReleaseResult:
        with trace_scope(task="escrow-release"):
            token = await self._lock.acquire(LOCK_NAME, self._config.lock_ttl_seconds)
            if token is None:
                logger.info("Release pass already running elsewhere; skipping")
                return ReleaseResult(lock_skipped=True)

            started = time.monotonic()
            try:
                result = await self._run()
            finally:
                await self._lock.release(LOCK_NAME, token)

            record_sweep(
                "escrow_release",
                time.monotonic() - started,
                {
                    "released": result.released,
                    "transferred": result.transferred,
                    "transfer_failed": result.transfer_failed,
                },
            )
            logger.info(
                "Release pass finished: released=%d transferred=%d failed=%d skipped=%d errors=%d",
                result.released, result.transferred, result.transfer_failed,
                result.skipped, result.errors,
            )
            return result

    async def _run(self) -> ReleaseResult:
        result = ReleaseResult()
        store = self._orders.store

        for _order_id, transaction_id in await store.list_escrow_candidates(
            EscrowStatus.AWAITING_RELEASE
        ):
            try:
                released = await self._orders.auto_release(transaction_id)
            except Exception:
                result.errors += 1
                logger.exception("Auto-release failed for transaction %s", transaction_id)
                continue
            if released:
                result.released += 1
            else:
                result.skipped += 1

        for _order_id, transaction_id in await store.list_escrow_candidates(
            EscrowStatus.RELEASED
        ):
            try:
                outcome = await self._orders.payout(transaction_id)
            except Exception:
                result.errors += 1
                logger.exception("Payout failed for transaction %s", transaction_id)
                continue
            if outcome is None:
                result.skipped += 1
            elif outcome:
                result.transferred += 1
            else:
                result.transfer_failed += 1

        return result
