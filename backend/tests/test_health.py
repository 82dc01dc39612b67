# tests/test_health.py — Health, root, and response header tests
import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient):
    """Health endpoint reports database connectivity"""
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["database"] == "connected"
    assert data["version"] == "1.0.0"
    assert set(data["services"]) == {"rest", "graphql", "mcp"}


@pytest.mark.asyncio
async def test_root_lists_surfaces(client: AsyncClient):
    resp = await client.get("/")
    assert resp.status_code == 200
    data = resp.json()
    assert data["name"] == "Agentboard"
    assert data["graphql"] == "/graphql"
    assert data["mcp"] == "/mcp/"


@pytest.mark.asyncio
async def test_security_headers(client: AsyncClient):
    """Responses include security headers"""
    resp = await client.get("/health")
    assert resp.headers.get("X-Content-Type-Options") == "nosniff"
    assert resp.headers.get("X-Frame-Options") == "DENY"
    assert "x-request-id" in resp.headers


@pytest.mark.asyncio
async def test_request_id_is_propagated(client: AsyncClient):
    resp = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert resp.headers["x-request-id"] == "req-123"
    assert resp.headers["x-correlation-id"] == "req-123"
    assert resp.headers["x-response-time"].endswith("s")


@pytest.mark.asyncio
async def test_domain_errors_carry_code(client: AsyncClient):
    resp = await client.get("/api/projects/does-not-exist")
    assert resp.status_code == 404
    body = resp.json()
    assert body["code"] == "not_found"
    assert body["detail"] == "Project not found"
    assert body["request_id"]


def test_telemetry_disabled_without_endpoint(monkeypatch):
    from telemetry import setup_telemetry
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    assert setup_telemetry() is None
