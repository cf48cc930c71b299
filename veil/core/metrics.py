"""Prometheus metrics for Veil.

Tracks HTTP traffic, confidential computation lifecycle, market
transitions and settled value.
"""

import re
import time
from typing import Callable

from fastapi import Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)
from starlette.middleware.base import BaseHTTPMiddleware

from veil.config import settings


def get_registry() -> CollectorRegistry:
    """Get the appropriate registry for the current mode."""
    if settings.environment == "production":
        # In production with multiple workers, use multiprocess mode
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        return registry
    return REGISTRY


APP_INFO = Info("veil", "Veil application information")
APP_INFO.info({
    "version": "0.1.0",
    "environment": settings.environment,
})


# HTTP Request Metrics
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)


# Confidential computation metrics
COMPUTATIONS_QUEUED_TOTAL = Counter(
    "computations_queued_total",
    "Confidential computations queued",
    ["circuit"],
)

COMPUTATION_CALLBACKS_TOTAL = Counter(
    "computation_callbacks_total",
    "Computation callbacks received",
    ["circuit", "result"],  # result: "applied", "aborted", "rejected"
)

COMPUTATIONS_OUTSTANDING = Gauge(
    "computations_outstanding",
    "Computations queued and not yet called back",
    ["circuit"],
)


# Market metrics
MARKET_TRANSITIONS_TOTAL = Counter(
    "market_transitions_total",
    "Market status transitions",
    ["status"],
)

BETS_PLACED_TOTAL = Counter(
    "bets_placed_total",
    "Bets placed",
)

VAULT_DEPOSITS_AMOUNT = Counter(
    "vault_deposits_amount_total",
    "Value deposited into market vaults",
)

VAULT_WITHDRAWALS_AMOUNT = Counter(
    "vault_withdrawals_amount_total",
    "Value paid out of market vaults",
    ["type"],  # "payout", "refund"
)


def normalize_endpoint(path: str) -> str:
    """Normalize endpoint path to reduce metric cardinality.

    Replaces UUIDs and numeric IDs with placeholders.
    """
    path = re.sub(
        r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
        "{id}",
        path,
        flags=re.IGNORECASE,
    )
    path = re.sub(r"/\d+(/|$)", "/{id}\\1", path)
    return path


def record_computation_queued(circuit: str) -> None:
    COMPUTATIONS_QUEUED_TOTAL.labels(circuit=circuit).inc()
    COMPUTATIONS_OUTSTANDING.labels(circuit=circuit).inc()


def record_computation_callback(circuit: str, result: str) -> None:
    COMPUTATION_CALLBACKS_TOTAL.labels(circuit=circuit, result=result).inc()
    if result != "rejected":
        COMPUTATIONS_OUTSTANDING.labels(circuit=circuit).dec()


def record_market_transition(status: str) -> None:
    MARKET_TRANSITIONS_TOTAL.labels(status=status).inc()


def record_deposit(amount: int) -> None:
    BETS_PLACED_TOTAL.inc()
    VAULT_DEPOSITS_AMOUNT.inc(amount)


def record_withdrawal(kind: str, amount: int) -> None:
    VAULT_WITHDRAWALS_AMOUNT.labels(type=kind).inc(amount)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to automatically track HTTP metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        normalized = normalize_endpoint(request.url.path)
        start_time = time.perf_counter()
        status = 500

        try:
            response = await call_next(request)
            status = response.status_code
        finally:
            duration = time.perf_counter() - start_time
            HTTP_REQUESTS_TOTAL.labels(method=method, endpoint=normalized, status=status).inc()
            HTTP_REQUEST_DURATION.labels(method=method, endpoint=normalized).observe(duration)

        return response


async def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics output."""
    registry = get_registry()
    return generate_latest(registry), CONTENT_TYPE_LATEST
