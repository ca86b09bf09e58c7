"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok' against the test database
  - No authentication required, and no audit record is produced
"""

from __future__ import annotations

from api.main import VERSION, app


def test_health_returns_200_with_components(api_client):
    """Health endpoint returns 200 with status, version, and components."""
    client, token, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["version"] == VERSION
    assert data["components"]["app"] == "ok"
    assert data["components"]["database"] == "ok"


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_health_is_not_audited(api_client):
    """The health probe bypasses the gate, so it leaves no access records."""
    client, _, _ = api_client
    app.state.audit.flush()
    before = app.state.audit_store.count()
    client.get("/api/v1/health")
    app.state.audit.flush()
    assert app.state.audit_store.count() == before


def test_unknown_host_rejected(api_client):
    """TrustedHostMiddleware refuses Host headers outside ALLOWED_HOSTS."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health", headers={"Host": "evil.example.com"})
    assert resp.status_code == 400
