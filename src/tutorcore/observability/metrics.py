from __future__ import annotations

"""Prometheus metrics for the tutoring API.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for chat turn outcomes and generation fallbacks.
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

REQUEST_LATENCY = Histogram(
    "tutor_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

CHAT_TURNS = Counter(
    "tutor_chat_turns_total",
    "Orchestrated chat messages by terminal outcome",
    labelnames=("outcome",),
)

GENERATION_FALLBACKS = Counter(
    "tutor_generation_fallbacks_total",
    "Deterministic fallbacks substituted for failed generation",
    labelnames=("stage",),
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /curricula/{id}) to a coarse label."""
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def record_chat_outcome(outcome: str) -> None:
    CHAT_TURNS.labels(outcome=outcome).inc()


def record_fallback(stage: str) -> None:
    GENERATION_FALLBACKS.labels(stage=stage).inc()


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/metrics"):
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
