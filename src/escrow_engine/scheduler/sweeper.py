"""Reconciliation sweeper.

One pass:

1. Every PENDING order older than the payment window is checked with the
   gateway.  Paid orders get the capture they missed (lost webhook);
   unpaid ones are expired and their products released.
2. Failed seller payouts with attempts left are retried.

Each row runs in its own unit of work and re-checks state under the
order lock, so the pass is idempotent and safe to re-run after a crash.
A named sweep lock keeps two replicas from running passes side by side.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta

from pydantic import BaseModel

from escrow_engine.core.config import SweeperConfig
from escrow_engine.core.enums import EscrowStatus
from escrow_engine.core.errors import RetryableGatewayError, TerminalGatewayError
from escrow_engine.core.interfaces import ISweepLock
from escrow_engine.observability.logger import trace_scope
from escrow_engine.observability.metrics import record_sweep
from escrow_engine.orchestrator.service import OrderOrchestrator

logger = logging.getLogger(__name__)

LOCK_NAME = "reconciliation-sweep"


class SweepResult(BaseModel):
    expired: int = 0
    captured: int = 0
    payouts_retried: int = 0
    skipped: int = 0
    errors: int = 0
    lock_skipped: bool = False

    @property
    def changes(self) -> int:
        return self.expired + self.captured + self.payouts_retried


class ReconciliationSweeper:
    def __init__(
        self,
        orchestrator: OrderOrchestrator,
        lock: ISweepLock,
        config: SweeperConfig | None = None,
    ) -> None:
        self._orders = orchestrator
        self._lock = lock
        self._config = config or SweeperConfig()

    async def run_once(self) -> SweepResult:
        with trace_scope(task="sweeper"):
            token = await self._lock.acquire(LOCK_NAME, self._config.lock_ttl_seconds)
            if token is None:
                logger.info("Sweep already running elsewhere; skipping this tick")
                return SweepResult(lock_skipped=True)

            started = time.monotonic()
            try:
                result = await self._sweep()
            finally:
                await self._lock.release(LOCK_NAME, token)

            record_sweep(
                "reconciliation",
                time.monotonic() - started,
                {
                    "expired": result.expired,
                    "captured": result.captured,
                    "payout_retried": result.payouts_retried,
                },
            )
            logger.info(
                "Sweep finished: expired=%d captured=%d payouts_retried=%d skipped=%d errors=%d",
                result.expired, result.captured, result.payouts_retried,
                result.skipped, result.errors,
            )
            return result

    async def _sweep(self) -> SweepResult:
        result = SweepResult()
        cutoff = self._orders.clock.now() - timedelta(
            minutes=self._config.pending_expiry_minutes
        )

        for order_id in await self._orders.store.list_pending_orders(cutoff):
            try:
                await self._reconcile_pending(order_id, cutoff, result)
            except Exception:
                result.errors += 1
                logger.exception("Sweep failed for pending order %s", order_id)

        candidates = await self._orders.store.list_escrow_candidates(
            EscrowStatus.TRANSFER_FAILED,
            max_payout_attempts=self._config.max_payout_attempts,
        )
        for _order_id, transaction_id in candidates:
            try:
                outcome = await self._orders.payout(
                    transaction_id, max_attempts=self._config.max_payout_attempts
                )
            except Exception:
                result.errors += 1
                logger.exception("Payout retry failed for transaction %s", transaction_id)
                continue
            if outcome is None:
                result.skipped += 1
            else:
                result.payouts_retried += 1

        return result

    async def _reconcile_pending(
        self, order_id: str, cutoff: datetime, result: SweepResult
    ) -> None:
        agg = await self._orders.store.get(order_id)
        intent_ref = agg.order.payment_intent_ref

        paid = False
        if intent_ref is not None:
            try:
                paid = await self._orders.gateway.verify_payment(intent_ref)
            except RetryableGatewayError as exc:
                result.skipped += 1
                logger.warning("Gateway unavailable for order %s, retry next tick: %s", order_id, exc)
                return
            except TerminalGatewayError as exc:
                logger.warning("Gateway rejected intent for order %s: %s", order_id, exc)

        if paid:
            changed = await self._orders.apply_payment_captured(order_id, source="sweeper")
            if changed:
                result.captured += 1
            else:
                result.skipped += 1
            return

        if await self._orders.expire_order(order_id, cutoff=cutoff):
            result.expired += 1
        else:
            result.skipped += 1
