"""
Prometheus metrics for the intake API.

Per-route HTTP latency, request counts and in-flight requests, plus the
payload size of document intake requests (uploads and inbound-email
webhooks). Cache hit/miss counters live here too so the embedding cache
can report without importing the service layer.

GET /metrics serves everything in the default registry, including the
Celery task, OCR, embedding and screening metrics the services register.
"""

import time
import logging
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    CONTENT_TYPE_LATEST,
    generate_latest,
    REGISTRY,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Match

logger = logging.getLogger(__name__)

UNMATCHED_ROUTE = "unmatched"
SKIPPED_PATHS = frozenset({"/metrics", "/health"})
INTAKE_PREFIXES = ("/files/upload", "/webhooks/")

HTTP_LATENCY = Histogram(
    "recruitment_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

HTTP_REQUESTS = Counter(
    "recruitment_http_requests_total",
    "HTTP requests by route and status",
    ["method", "route", "status"]
)

HTTP_IN_FLIGHT = Gauge(
    "recruitment_http_requests_in_flight",
    "HTTP requests currently being handled",
    ["route"]
)

INTAKE_BYTES = Histogram(
    "recruitment_intake_request_bytes",
    "Declared body size of upload and webhook requests",
    ["route"],
    buckets=[1e3, 1e4, 1e5, 5e5, 1e6, 5e6, 1e7, 5e7]
)

CACHE_HITS = Counter(
    "recruitment_cache_hits_total",
    "Cache hits",
    ["layer"]
)

CACHE_MISSES = Counter(
    "recruitment_cache_misses_total",
    "Cache misses",
    ["layer"]
)


def resolve_route(request: Request) -> str:
    """Route template for the request, so ids never become label values."""
    for route in request.app.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return route.path
    return UNMATCHED_ROUTE


def declared_body_size(request: Request) -> Optional[int]:
    value = request.headers.get("content-length")
    if value is None or not value.isdigit():
        return None
    return int(value)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in SKIPPED_PATHS:
            return await call_next(request)

        route = resolve_route(request)
        method = request.method

        if request.url.path.startswith(INTAKE_PREFIXES):
            size = declared_body_size(request)
            if size is not None:
                INTAKE_BYTES.labels(route=route).observe(size)

        HTTP_IN_FLIGHT.labels(route=route).inc()
        started = time.perf_counter()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        except Exception as e:
            logger.error(f"Unhandled error on {method} {route}: {e}")
            raise
        finally:
            HTTP_LATENCY.labels(method=method, route=route, status=status).observe(
                time.perf_counter() - started
            )
            HTTP_REQUESTS.labels(method=method, route=route, status=status).inc()
            HTTP_IN_FLIGHT.labels(route=route).dec()


def metrics_endpoint(request: Request) -> Response:
    return PlainTextResponse(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


def setup_metrics(app: FastAPI) -> None:
    """Install the middleware and expose /metrics."""
    app.add_middleware(PrometheusMiddleware)
    app.add_route("/metrics", metrics_endpoint, methods=["GET"])
    logger.info("Prometheus metrics configured")


def record_cache_hit(layer: str) -> None:
    CACHE_HITS.labels(layer=layer).inc()


def record_cache_miss(layer: str) -> None:
    CACHE_MISSES.labels(layer=layer).inc()
