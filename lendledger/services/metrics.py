"""
Prometheus metrics for the lending ledger.

Exposes operation outcomes, pool aggregates and liquidation activity.
"""

import time
from functools import wraps
from typing import Callable

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
)

from lendledger.core.errors import LedgerError
from lendledger.core.events import EventKind, EventSink, LedgerEvent

# Create a custom registry to avoid conflicts
REGISTRY = CollectorRegistry()

APP_INFO = Info(
    "lendledger",
    "Lending ledger application info",
    registry=REGISTRY,
)
APP_INFO.info({
    "version": "1.0.0",
    "name": "lendledger",
})

# Operation metrics
OPERATIONS_TOTAL = Counter(
    "lendledger_operations_total",
    "Total number of ledger operations",
    ["operation", "status"],
    registry=REGISTRY,
)

OPERATION_REJECTIONS_TOTAL = Counter(
    "lendledger_operation_rejections_total",
    "Total number of rejected ledger operations",
    ["operation", "error"],
    registry=REGISTRY,
)

OPERATION_DURATION_SECONDS = Histogram(
    "lendledger_operation_duration_seconds",
    "Ledger operation duration in seconds",
    ["operation"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0],
    registry=REGISTRY,
)

# Pool metrics
POOL_TOTAL_DEPOSITS = Gauge(
    "lendledger_pool_total_deposits",
    "Total deposits in a pool (smallest unit)",
    ["asset"],
    registry=REGISTRY,
)

POOL_TOTAL_BORROWS = Gauge(
    "lendledger_pool_total_borrows",
    "Total borrows from a pool (smallest unit)",
    ["asset"],
    registry=REGISTRY,
)

POOL_UTILIZATION_BPS = Gauge(
    "lendledger_pool_utilization_bps",
    "Pool utilization in basis points",
    ["asset"],
    registry=REGISTRY,
)

POOL_BORROW_RATE_BPS = Gauge(
    "lendledger_pool_borrow_rate_bps",
    "Annualized borrow rate in basis points",
    ["asset"],
    registry=REGISTRY,
)

POOL_SUPPLY_RATE_BPS = Gauge(
    "lendledger_pool_supply_rate_bps",
    "Annualized supply rate in basis points",
    ["asset"],
    registry=REGISTRY,
)

# Loan metrics
LOANS_OPENED_TOTAL = Counter(
    "lendledger_loans_opened_total",
    "Total number of loans opened",
    ["asset"],
    registry=REGISTRY,
)

LIQUIDATIONS_TOTAL = Counter(
    "lendledger_liquidations_total",
    "Total number of liquidations",
    ["asset"],
    registry=REGISTRY,
)

LIQUIDATED_DEBT_TOTAL = Counter(
    "lendledger_liquidated_debt_total",
    "Total debt repaid by liquidators (smallest unit)",
    ["asset"],
    registry=REGISTRY,
)

LIQUIDATABLE_LOANS = Gauge(
    "lendledger_liquidatable_loans",
    "Active loans currently below the liquidation threshold",
    registry=REGISTRY,
)

ACTIVE_LOANS = Gauge(
    "lendledger_active_loans",
    "Number of active loans",
    registry=REGISTRY,
)

# Monitoring cycle metrics
MONITORING_CYCLE_DURATION_SECONDS = Histogram(
    "lendledger_monitoring_cycle_duration_seconds",
    "Duration of liquidation monitor cycles in seconds",
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
    registry=REGISTRY,
)

MONITORING_CYCLES_TOTAL = Counter(
    "lendledger_monitoring_cycles_total",
    "Total number of liquidation monitor cycles",
    ["status"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Get all metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the Prometheus content type."""
    return CONTENT_TYPE_LATEST


def track_operation(operation: str):
    """Decorator to track ledger operation metrics."""
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.time()
            status = "success"
            try:
                return await func(*args, **kwargs)
            except LedgerError as e:
                status = "rejected"
                OPERATION_REJECTIONS_TOTAL.labels(operation=operation, error=e.kind).inc()
                raise
            except Exception:
                status = "error"
                raise
            finally:
                duration = time.time() - start_time
                OPERATIONS_TOTAL.labels(operation=operation, status=status).inc()
                OPERATION_DURATION_SECONDS.labels(operation=operation).observe(duration)
        return wrapper
    return decorator


def record_pool_metrics(
    asset: str,
    total_deposits: int,
    total_borrows: int,
    utilization: int,
    borrow_rate: int,
    supply_rate: int,
):
    """Record the aggregate state of a pool."""
    POOL_TOTAL_DEPOSITS.labels(asset=asset).set(total_deposits)
    POOL_TOTAL_BORROWS.labels(asset=asset).set(total_borrows)
    POOL_UTILIZATION_BPS.labels(asset=asset).set(utilization)
    POOL_BORROW_RATE_BPS.labels(asset=asset).set(borrow_rate)
    POOL_SUPPLY_RATE_BPS.labels(asset=asset).set(supply_rate)


def record_liquidation(asset: str, debt: int):
    LIQUIDATIONS_TOTAL.labels(asset=asset).inc()
    LIQUIDATED_DEBT_TOTAL.labels(asset=asset).inc(debt)


def update_loan_counts(active: int, liquidatable: int):
    ACTIVE_LOANS.set(active)
    LIQUIDATABLE_LOANS.set(liquidatable)


class MetricsEventSink(EventSink):
    """Updates pool gauges and loan counters from committed events."""

    async def publish(self, event: LedgerEvent) -> None:
        pool = event.details.get("pool")
        if pool:
            record_pool_metrics(
                asset=pool["asset"],
                total_deposits=pool["total_deposits"],
                total_borrows=pool["total_borrows"],
                utilization=pool["utilization"],
                borrow_rate=pool["borrow_rate"],
                supply_rate=pool["supply_rate"],
            )

        if event.kind is EventKind.BORROW:
            LOANS_OPENED_TOTAL.labels(asset=event.asset).inc()
        elif event.kind is EventKind.LIQUIDATE:
            record_liquidation(event.asset, event.amount)


class MonitoringCycleTimer:
    """Context manager for timing monitoring cycles."""

    def __init__(self):
        self._start_time = None

    def __enter__(self):
        self._start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self._start_time
        MONITORING_CYCLE_DURATION_SECONDS.observe(duration)

        status = "success" if exc_type is None else "error"
        MONITORING_CYCLES_TOTAL.labels(status=status).inc()

        return False  # Don't suppress exceptions
