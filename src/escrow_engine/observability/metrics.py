"""Prometheus metrics endpoint.

Exposes escrow engine metrics for monitoring via Grafana.
"""

from __future__ import annotations

from decimal import Decimal

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    start_http_server,
)

# ---------------------------------------------------------------------------
# System metrics
# ---------------------------------------------------------------------------

SYSTEM_INFO = Info("escrow_engine", "Escrow engine information")

# ---------------------------------------------------------------------------
# Lifecycle metrics
# ---------------------------------------------------------------------------

ORDERS_CREATED = Counter(
    "escrow_orders_created_total",
    "Orders created",
    ["payment_method"],
)

ITEM_TRANSITIONS = Counter(
    "escrow_item_transitions_total",
    "Order item status transitions",
    ["from_status", "to_status", "forced"],
)

PAYMENTS_CAPTURED = Counter(
    "escrow_payments_captured_total",
    "Payment captures applied, by admission path",
    ["source"],
)

# ---------------------------------------------------------------------------
# Money metrics
# ---------------------------------------------------------------------------

ESCROW_MOVEMENTS = Counter(
    "escrow_money_movements_total",
    "Escrow releases, transfers and refunds",
    ["kind"],
)

ESCROW_AMOUNT = Counter(
    "escrow_money_moved_total",
    "Sum of money moved out of escrow",
    ["kind"],
)

PAYOUT_FAILURES = Counter(
    "escrow_payout_failures_total",
    "Seller payouts that failed at the gateway",
)

# ---------------------------------------------------------------------------
# Gateway / webhook metrics
# ---------------------------------------------------------------------------

GATEWAY_ERRORS = Counter(
    "escrow_gateway_errors_total",
    "Payment gateway errors",
    ["operation", "kind"],
)

WEBHOOKS_TOTAL = Counter(
    "escrow_webhooks_total",
    "Webhook deliveries by outcome",
    ["outcome"],
)

# ---------------------------------------------------------------------------
# Scheduler metrics
# ---------------------------------------------------------------------------

SWEEP_RUNS = Counter(
    "escrow_sweep_runs_total",
    "Scheduled pass executions",
    ["task"],
)

SWEEP_REPAIRS = Counter(
    "escrow_sweep_repairs_total",
    "Rows changed by scheduled passes",
    ["task", "action"],
)

SWEEP_LATENCY = Histogram(
    "escrow_sweep_latency_seconds",
    "Duration of a scheduled pass",
    ["task"],
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0],
)


def start_metrics_server(port: int = 9090, mode: str = "unknown") -> None:
    """Start Prometheus metrics HTTP server in a background thread."""
    from escrow_engine import __version__

    SYSTEM_INFO.info({
        "version": __version__,
        "mode": mode,
    })
    start_http_server(port)


# ---------------------------------------------------------------------------
# Convenience helpers
# ---------------------------------------------------------------------------


def record_order_created(payment_method: str) -> None:
    ORDERS_CREATED.labels(payment_method=payment_method).inc()


def record_item_transition(from_status: str, to_status: str, forced: bool = False) -> None:
    ITEM_TRANSITIONS.labels(
        from_status=from_status, to_status=to_status, forced=str(forced).lower()
    ).inc()


def record_payment_captured(source: str) -> None:
    PAYMENTS_CAPTURED.labels(source=source).inc()


def record_escrow_movement(kind: str, amount: Decimal) -> None:
    ESCROW_MOVEMENTS.labels(kind=kind).inc()
    ESCROW_AMOUNT.labels(kind=kind).inc(float(amount))


def record_payout_failure() -> None:
    PAYOUT_FAILURES.inc()


def record_gateway_error(operation: str, kind: str) -> None:
    GATEWAY_ERRORS.labels(operation=operation, kind=kind).inc()


def record_webhook(outcome: str) -> None:
    WEBHOOKS_TOTAL.labels(outcome=outcome).inc()


def record_sweep(task: str, seconds: float, repairs: dict[str, int]) -> None:
    SWEEP_RUNS.labels(task=task).inc()
    SWEEP_LATENCY.labels(task=task).observe(seconds)
    for action, count in repairs.items():
        if count:
            SWEEP_REPAIRS.labels(task=task, action=action).inc(count)
