"""Prometheus metrics for HTTP requests and sync activity.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- sync_* / remote_* metrics: recorded by the orchestrator and API client
- track_remote_call(): Context manager for remote API call metrics
- get_metrics_response(): FastAPI route handler body for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_runs_total = Counter(
    "sync_runs_total",
    "Orchestrated sync runs by terminal status",
    ["action", "status", "tenant_id"],
)

sync_run_duration_seconds = Histogram(
    "sync_run_duration_seconds",
    "Wall-clock duration of orchestrated sync runs",
    ["action", "tenant_id"],
    buckets=(0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0),
)

sync_items_total = Counter(
    "sync_items_total",
    "Per-item sync outcomes",
    ["entity_type", "outcome", "tenant_id"],
)

sync_runs_in_progress = Gauge(
    "sync_runs_in_progress",
    "Sync runs currently executing in this process",
)

# ── Remote API Metrics ───────────────────────────────────────────────────────

remote_requests_total = Counter(
    "remote_requests_total",
    "Accounting API requests",
    ["entity_kind", "operation", "status"],
)

remote_request_duration_seconds = Histogram(
    "remote_request_duration_seconds",
    "Accounting API request duration in seconds",
    ["entity_kind", "operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Remote Call Helper ──────────────────────────────────────────────────────


@asynccontextmanager
async def track_remote_call(
    entity_kind: str,
    operation: str,
) -> AsyncGenerator[None, None]:
    """Record count and duration of one accounting API call.

    Usage:
        async with track_remote_call("Invoice", "create"):
            response = await client.post(...)
    """
    start_time = time.perf_counter()
    status = "success"

    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time

        remote_requests_total.labels(
            entity_kind=entity_kind,
            operation=operation,
            status=status,
        ).inc()

        remote_request_duration_seconds.labels(
            entity_kind=entity_kind,
            operation=operation,
        ).observe(duration)


def record_run(action: str, status: str, tenant_id: str, duration_ms: int | None) -> None:
    """Record a finished sync run."""
    sync_runs_total.labels(action=action, status=status, tenant_id=tenant_id).inc()
    if duration_ms is not None:
        sync_run_duration_seconds.labels(action=action, tenant_id=tenant_id).observe(
            duration_ms / 1000
        )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
