"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response inside the envelope with status, version and components
  - components.database reports 'ok' when the store answers, 'error' otherwise
  - No authentication required
"""

from __future__ import annotations

from auth.results import StoreError


def test_health_returns_200_with_components(api_client):
    """Health endpoint returns 200 with status, version, and components."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    data = body["data"]
    assert data["status"] == "healthy"
    assert data["version"] == "1.0.0"
    assert data["components"] == {"app": "ok", "database": "ok"}


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "healthy"


def test_health_degraded_when_database_unreachable(api_client, monkeypatch):
    client, service, _ = api_client

    def broken_ping():
        raise StoreError("connection refused")

    monkeypatch.setattr(service.store, "ping", broken_ping)
    data = client.get("/api/v1/health").json()["data"]
    assert data["status"] == "degraded"
    assert data["components"]["database"] == "error"
