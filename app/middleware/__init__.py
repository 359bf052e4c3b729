"""
HTTP middleware: Prometheus request and intake metrics.
"""

from app.middleware.metrics import (
    PrometheusMiddleware,
    setup_metrics,
    record_cache_hit,
    record_cache_miss,
)

__all__ = [
    "PrometheusMiddleware",
    "setup_metrics",
    "record_cache_hit",
    "record_cache_miss",
]
