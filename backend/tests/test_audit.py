# tests/test_audit.py — Request audit middleware and audit queries
import pytest
from httpx import AsyncClient

from tests.conftest import agent_headers


@pytest.mark.asyncio
async def test_api_requests_are_audited(client: AsyncClient, test_project, test_agent):
    resp = await client.post(
        f"/api/projects/{test_project.id}/tickets",
        json={"title": "Audited"},
        headers=agent_headers(test_agent),
    )
    assert resp.status_code == 201

    resp = await client.get("/api/audit")
    assert resp.status_code == 200
    entries = resp.json()
    http_entry = next(e for e in entries if e["method"] == "POST")
    assert http_entry["path"] == f"/api/projects/{test_project.id}/tickets"
    assert http_entry["status_code"] == 201
    assert http_entry["agent_id"] == test_agent.id
    assert "Audited" in http_entry["details"]


@pytest.mark.asyncio
async def test_failed_requests_are_audited(client: AsyncClient, test_project):
    await client.post(f"/api/projects/{test_project.id}/tickets", json={"title": "No key"})
    entries = (await client.get("/api/audit")).json()
    denied = next(e for e in entries if e["method"] == "POST")
    assert denied["status_code"] == 401
    assert denied["agent_id"] is None


@pytest.mark.asyncio
async def test_non_api_paths_are_not_audited(client: AsyncClient):
    await client.get("/health")
    entries = (await client.get("/api/audit")).json()
    assert all(not e["path"].startswith("/health") for e in entries)


@pytest.mark.asyncio
async def test_audit_limit(client: AsyncClient):
    for _ in range(5):
        await client.get("/api/projects")

    assert len((await client.get("/api/audit", params={"limit": 2})).json()) == 2
    # Invalid and negative limits fall back to the default
    assert len((await client.get("/api/audit", params={"limit": "abc"})).json()) >= 5
    assert len((await client.get("/api/audit", params={"limit": -1})).json()) >= 5


@pytest.mark.asyncio
async def test_audit_by_agent(client: AsyncClient, test_project, test_agent, other_agent):
    await client.post(
        f"/api/projects/{test_project.id}/tickets", json={"title": "Mine"}, headers=agent_headers(test_agent),
    )
    await client.post(
        f"/api/projects/{test_project.id}/tickets", json={"title": "Theirs"}, headers=agent_headers(other_agent),
    )

    entries = (await client.get(f"/api/audit/agent/{test_agent.id}")).json()
    assert entries
    assert all(e["agent_id"] == test_agent.id for e in entries)


@pytest.mark.asyncio
async def test_audit_entries_are_published(client: AsyncClient, event_bus):
    sub = event_bus.subscribe("audit_added")
    await client.get("/api/projects")
    payload = await sub.get()
    assert payload["method"] == "GET"
    assert payload["path"] == "/api/projects"
