"""
Tests for the Prometheus middleware

Uses a small standalone app so no database or queue is involved.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from app.middleware.metrics import record_cache_hit, record_cache_miss, setup_metrics


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.fixture
def client():
    app = FastAPI()
    setup_metrics(app)

    @app.get("/screening/{application_id}")
    async def read(application_id: int):
        return {"id": application_id}

    @app.post("/files/upload")
    async def upload():
        return {"ok": True}

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return TestClient(app)


class TestRequestMetrics:
    """Route templates as labels."""

    def test_counts_by_route_template(self, client):
        labels = {"method": "GET", "route": "/screening/{application_id}", "status": "200"}
        before = _sample("recruitment_http_requests_total", **labels)

        client.get("/screening/1")
        client.get("/screening/2")

        assert _sample("recruitment_http_requests_total", **labels) == before + 2

    def test_unknown_path_uses_unmatched_label(self, client):
        labels = {"method": "GET", "route": "unmatched", "status": "404"}
        before = _sample("recruitment_http_requests_total", **labels)

        client.get("/no/such/path")

        assert _sample("recruitment_http_requests_total", **labels) == before + 1

    def test_health_is_not_recorded(self, client):
        labels = {"method": "GET", "route": "/health", "status": "200"}
        before = _sample("recruitment_http_requests_total", **labels)

        client.get("/health")

        assert _sample("recruitment_http_requests_total", **labels) == before


class TestIntakeMetrics:
    def test_upload_body_size_observed(self, client):
        before = _sample("recruitment_intake_request_bytes_count", route="/files/upload")

        client.post("/files/upload", content=b"x" * 2048)

        assert _sample("recruitment_intake_request_bytes_count", route="/files/upload") == before + 1

    def test_other_routes_not_observed(self, client):
        before = _sample("recruitment_intake_request_bytes_count", route="/screening/{application_id}")

        client.get("/screening/3")

        assert _sample("recruitment_intake_request_bytes_count", route="/screening/{application_id}") == before


class TestMetricsEndpoint:
    def test_exposes_prometheus_text(self, client):
        record_cache_hit("embedding")
        record_cache_miss("embedding")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "recruitment_cache_hits_total" in response.text
        assert "recruitment_cache_misses_total" in response.text
