# tests/test_agents.py — Agent registry and admin credential endpoints
import pytest
from httpx import AsyncClient

from tests.conftest import admin_headers, agent_headers


@pytest.mark.asyncio
async def test_create_agent_requires_admin_key(client: AsyncClient, admin_key):
    resp = await client.post("/api/agents", json={"name": "bot"})
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Missing X-Admin-Key header"

    resp = await client.post("/api/agents", json={"name": "bot"}, headers=admin_headers("wrong"))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_create_agent(client: AsyncClient, admin_key):
    resp = await client.post("/api/agents", json={"name": "  builder  "}, headers=admin_headers(admin_key))
    assert resp.status_code == 201
    data = resp.json()
    assert data["name"] == "builder"
    assert data["api_key"].startswith("ab-")


@pytest.mark.asyncio
async def test_create_agent_duplicate_and_blank(client: AsyncClient, admin_key):
    headers = admin_headers(admin_key)
    await client.post("/api/agents", json={"name": "twin"}, headers=headers)

    resp = await client.post("/api/agents", json={"name": "twin"}, headers=headers)
    assert resp.status_code == 409
    assert resp.json()["code"] == "duplicate"

    resp = await client.post("/api/agents", json={"name": "   "}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation"


@pytest.mark.asyncio
async def test_list_agents_hides_keys(client: AsyncClient, test_agent, admin_key):
    resp = await client.get("/api/agents")
    assert resp.status_code == 200
    agents = resp.json()
    assert [a["name"] for a in agents] == ["test-agent"]
    assert "api_key" not in agents[0]

    resp = await client.get("/api/agents/keys", headers=admin_headers(admin_key))
    assert resp.status_code == 200
    assert resp.json()[0]["api_key"] == test_agent.api_key


@pytest.mark.asyncio
async def test_get_and_delete_agent(client: AsyncClient, test_agent, admin_key):
    resp = await client.get(f"/api/agents/{test_agent.id}")
    assert resp.status_code == 200
    assert resp.json()["name"] == "test-agent"

    resp = await client.delete(f"/api/agents/{test_agent.id}", headers=admin_headers(admin_key))
    assert resp.status_code == 204

    resp = await client.delete(f"/api/agents/{test_agent.id}", headers=admin_headers(admin_key))
    assert resp.status_code == 404

    # The deleted agent's key no longer authenticates
    resp = await client.post("/api/projects/any/tickets", json={"title": "x"}, headers=agent_headers(test_agent))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_rotate_admin_key(client: AsyncClient, admin_key):
    resp = await client.post("/api/agents/admin-key/rotate", headers=admin_headers(admin_key))
    assert resp.status_code == 200
    new_key = resp.json()["admin_key"]
    assert new_key != admin_key

    resp = await client.post("/api/agents", json={"name": "late"}, headers=admin_headers(admin_key))
    assert resp.status_code == 403
    resp = await client.post("/api/agents", json={"name": "late"}, headers=admin_headers(new_key))
    assert resp.status_code == 201
