"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok', or 'error' with status 'degraded'
  - No authentication required
"""

from __future__ import annotations

from unittest.mock import patch


def test_health_returns_200_with_components(api):
    """Health endpoint returns 200 with status, version, and components."""
    resp = api.client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["version"] == "0.1.0"
    assert data["components"] == {"app": "ok", "database": "ok"}


def test_health_reports_degraded_database(api):
    db = api.client.app.state.db
    with patch.object(db, "ping", return_value=False):
        data = api.client.get("/api/v1/health").json()
    assert data["status"] == "degraded"
    assert data["components"]["database"] == "error"


def test_health_no_auth_required(api):
    """Health endpoint is accessible without any authentication headers."""
    api.client.cookies.clear()
    resp = api.client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_unknown_host_rejected(api):
    resp = api.client.get("/api/v1/health", headers={"Host": "evil.example.com"})
    assert resp.status_code == 400
