"""Tests for Prometheus metrics middleware."""
import pytest
from httpx import AsyncClient, ASGITransport
from vibeguard.api.main import app
from vibeguard.middleware.metrics import metrics, _normalize_path


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Reset metrics state between tests."""
    metrics.reset()
    yield


@pytest.mark.asyncio
async def test_metrics_endpoint_returns_prometheus_format():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        # Make a request to generate metrics
        await client.get("/health")
        # Fetch metrics
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "text/plain" in resp.headers["content-type"]
        body = resp.text
        assert "vibeguard_http_requests_total" in body
        assert "vibeguard_uptime_seconds" in body
        assert "vibeguard_active_requests" in body
        assert 'path="/health"' in body


@pytest.mark.asyncio
async def test_metrics_tracks_status_codes():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        await client.get("/api/v1/admin/moderation/stats")
        resp = await client.get("/metrics")
        assert 'status="403"' in resp.text


def test_pipeline_counters_rendered():
    metrics.record_decision("rejected")
    metrics.record_decision("rejected")
    metrics.record_classifier_attempt("transient")
    metrics.record_classifier_latency(0.25)
    body = metrics.render()
    assert 'vibeguard_moderation_decisions_total{action="rejected"} 2' in body
    assert 'vibeguard_classifier_attempts_total{outcome="transient"} 1' in body
    assert "vibeguard_classifier_latency_seconds_count 1" in body


def test_normalize_path_collapses_ids():
    assert _normalize_path("/api/v1/admin/moderation/queue/12345") == "/api/v1/admin/moderation/queue/:id"
    assert _normalize_path(
        "/api/v1/admin/moderation/queue/3f2b8c1e-9a4d-4e7b-8c2a-1d5e6f7a8b9c/claim"
    ) == "/api/v1/admin/moderation/queue/:id/claim"
    assert _normalize_path("/api/v1/admin/moderation/stats") == "/api/v1/admin/moderation/stats"
    assert _normalize_path("/health") == "/health"
