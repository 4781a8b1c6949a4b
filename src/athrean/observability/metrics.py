"""Prometheus metrics for the Athrean API and generation engine.

Adds an HTTP middleware that records request latency per method/path/status, plus
counters and histograms fed by the generation orchestrator.
"""

from __future__ import annotations

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "athrean_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

GENERATION_OUTCOMES = Counter(
    "athrean_generations_total",
    "Generation runs by final outcome",
    labelnames=("outcome",),
)

DROPPED_RECORDS = Counter(
    "athrean_stream_records_dropped_total",
    "Stream records ignored while routing",
    labelnames=("reason",),
)

# Generations stream for seconds to minutes
GENERATION_DURATION = Histogram(
    "athrean_generation_duration_seconds",
    "Wall-clock duration of generation runs",
    buckets=(1.0, 2.5, 5.0, 10.0, 20.0, 40.0, 80.0, 160.0),
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /sessions/{id}) to a coarse label.

    Keeps the first segment, and the first two under the /api prefix.
    """
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    if segs[0] == "api" and len(segs) > 1:
        return "/api/" + segs[1]
    return "/" + segs[0]


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.endswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware
