# tests/test_mcp.py — MCP tools and the transport session guard
import json
from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from mcp.server.fastmcp.exceptions import ToolError
from starlette.datastructures import State
from starlette.responses import JSONResponse

from routers.mcp_tools import BoardTools, TOOL_NAMES, create_mcp_server
from routers.mcp_transport import McpSessionGuard, is_initialize_request

ACCEPT = "application/json, text/event-stream"
INITIALIZE = {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}}
LIST_TOOLS = {"jsonrpc": "2.0", "id": 2, "method": "tools/list"}


@pytest.fixture
def runtime(session_factory, event_bus, write_lock):
    state = State()
    state.session_factory = session_factory
    state.event_bus = event_bus
    state.write_lock = write_lock
    return state


def http_ctx(api_key):
    """Stand-in for the MCP request context over Streamable HTTP"""
    return SimpleNamespace(request_context=SimpleNamespace(request=SimpleNamespace(headers={"x-api-key": api_key})))


def error_of(exc_info) -> dict:
    return json.loads(str(exc_info.value))


# ============================================================
# TOOLS
# ============================================================

@pytest.mark.asyncio
async def test_tools_act_as_header_agent(runtime, test_agent, test_project):
    tools = BoardTools(runtime)
    ctx = http_ctx(test_agent.api_key)

    me = await tools.whoami(ctx=ctx)
    assert me["id"] == test_agent.id

    ticket = await tools.create_ticket(test_project.id, "From MCP", ctx=ctx)
    assert ticket["agent_id"] == test_agent.id

    moved = await tools.move_ticket(test_project.id, ticket["id"], "in_progress", ctx=ctx)
    assert moved["column"] == "in_progress"

    history = await tools.get_ticket_history(test_project.id, ticket["id"], ctx=ctx)
    assert [(h["field"], h["new_value"], h["agent_id"]) for h in history] == [
        ("column", "in_progress", test_agent.id),
    ]


@pytest.mark.asyncio
async def test_tool_errors_are_json(runtime, test_agent, test_project):
    tools = BoardTools(runtime)
    ctx = http_ctx(test_agent.api_key)

    with pytest.raises(ToolError) as exc:
        await tools.get_ticket(test_project.id, "missing", ctx=ctx)
    assert error_of(exc) == {"code": "not_found", "error": "Ticket not found"}

    with pytest.raises(ToolError) as exc:
        await tools.create_ticket(test_project.id, "  ", ctx=ctx)
    assert error_of(exc)["code"] == "validation"

    with pytest.raises(ToolError) as exc:
        await tools.whoami(ctx=http_ctx("ab-unknown"))
    assert error_of(exc)["code"] == "unauthorized"


@pytest.mark.asyncio
async def test_update_and_list_tools(runtime, test_agent, test_project):
    tools = BoardTools(runtime)
    ctx = http_ctx(test_agent.api_key)
    ticket = await tools.create_ticket(test_project.id, "Before", ctx=ctx)

    updated = await tools.update_ticket(test_project.id, ticket["id"], title="After", ctx=ctx)
    assert updated["title"] == "After"

    page = await tools.list_tickets(test_project.id, ctx=ctx)
    assert page["total"] == 1
    assert page["data"][0]["title"] == "After"

    comment = await tools.add_comment(test_project.id, ticket["id"], "done here", ctx=ctx)
    assert comment["agent_id"] == test_agent.id
    assert len(await tools.get_comments(test_project.id, ticket["id"], ctx=ctx)) == 1

    deleted = await tools.delete_ticket(test_project.id, ticket["id"], ctx=ctx)
    assert deleted == {"deleted": True, "ticket_id": ticket["id"]}


@pytest.mark.asyncio
async def test_stdio_agent_is_created_on_first_use(runtime):
    tools = BoardTools(runtime, agent_name="stdio-bot")
    first = await tools.whoami()
    second = await tools.whoami()
    assert first["name"] == "stdio-bot"
    assert first["id"] == second["id"]

    agents = await tools.list_agents()
    assert [a["name"] for a in agents] == ["stdio-bot"]


@pytest.mark.asyncio
async def test_server_registers_every_tool(runtime):
    server = create_mcp_server(runtime)
    names = {tool.name for tool in await server.list_tools()}
    assert names == set(TOOL_NAMES)


# ============================================================
# TRANSPORT GUARD
# ============================================================

def fake_transport():
    """Minimal stand-in for the SDK's Streamable HTTP app"""
    calls = []

    async def app(scope, receive, send):
        body = b""
        while True:
            message = await receive()
            body += message.get("body", b"")
            if not message.get("more_body"):
                break
        calls.append((scope["method"], body))
        headers = {"mcp-session-id": "sess-1"} if is_initialize_request(body) else {}
        await JSONResponse({"jsonrpc": "2.0", "id": 1, "result": {}}, headers=headers)(scope, receive, send)

    return app, calls


@pytest_asyncio.fixture
async def guard_client(runtime):
    inner, calls = fake_transport()
    guard = McpSessionGuard(inner, runtime)
    async with AsyncClient(transport=ASGITransport(app=guard), base_url="http://test") as ac:
        yield ac, guard, calls


@pytest.mark.asyncio
async def test_guard_requires_api_key(guard_client):
    client, _, calls = guard_client
    resp = await client.post("/", json=INITIALIZE, headers={"Accept": ACCEPT})
    assert resp.status_code == 401
    error = resp.json()["error"]
    assert error["code"] == -32001
    assert error["data"]["recovery"] == "add_api_key_header"
    assert calls == []

    resp = await client.post("/", json=INITIALIZE, headers={"Accept": ACCEPT, "X-Api-Key": "ab-bad"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == -32002


@pytest.mark.asyncio
async def test_guard_checks_accept_header(guard_client, test_agent):
    client, _, _ = guard_client
    resp = await client.post("/", json=INITIALIZE, headers={"X-Api-Key": test_agent.api_key, "Accept": "application/json"})
    assert resp.status_code == 406
    assert resp.json()["error"]["code"] == -32000


@pytest.mark.asyncio
async def test_guard_requires_initialize_without_session(guard_client, test_agent):
    client, _, calls = guard_client
    headers = {"X-Api-Key": test_agent.api_key, "Accept": ACCEPT}
    resp = await client.post("/", json=LIST_TOOLS, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"]["data"]["recovery"] == "send_initialize"
    assert calls == []


@pytest.mark.asyncio
async def test_guard_binds_session_to_agent(guard_client, test_agent, other_agent, service):
    client, guard, calls = guard_client
    headers = {"X-Api-Key": test_agent.api_key, "Accept": ACCEPT}

    resp = await client.post("/", json=INITIALIZE, headers=headers)
    assert resp.status_code == 200
    assert resp.headers["mcp-session-id"] == "sess-1"
    # Body was replayed to the transport intact
    assert json.loads(calls[0][1])["method"] == "initialize"
    assert "sess-1" in guard.live_sessions
    assert await service.get_mcp_session_agent("sess-1") == test_agent.id

    resp = await client.post("/", json=LIST_TOOLS, headers={**headers, "Mcp-Session-Id": "sess-1"})
    assert resp.status_code == 200

    resp = await client.post(
        "/", json=LIST_TOOLS,
        headers={"X-Api-Key": other_agent.api_key, "Accept": ACCEPT, "Mcp-Session-Id": "sess-1"},
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["data"]["reason"] == "agent_mismatch"


@pytest.mark.asyncio
async def test_guard_unknown_and_expired_sessions(guard_client, test_agent, service):
    client, _, _ = guard_client
    headers = {"X-Api-Key": test_agent.api_key, "Accept": ACCEPT}

    resp = await client.post("/", json=LIST_TOOLS, headers={**headers, "Mcp-Session-Id": "never-issued"})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == -32003

    # Persisted by a previous process, unknown to this one
    await service.bind_mcp_session("old-session", test_agent.id)
    resp = await client.post("/", json=LIST_TOOLS, headers={**headers, "Mcp-Session-Id": "old-session"})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == -32004
    assert await service.get_mcp_session_agent("old-session") is None


@pytest.mark.asyncio
async def test_guard_delete_forgets_session(guard_client, test_agent, service):
    client, guard, _ = guard_client
    headers = {"X-Api-Key": test_agent.api_key, "Accept": ACCEPT}
    await client.post("/", json=INITIALIZE, headers=headers)

    resp = await client.delete("/", headers={**headers, "Mcp-Session-Id": "sess-1"})
    assert resp.status_code == 200
    assert "sess-1" not in guard.live_sessions
    assert await service.get_mcp_session_agent("sess-1") is None


@pytest.mark.asyncio
async def test_prune_stale_sessions(service, test_agent):
    await service.bind_mcp_session("fresh", test_agent.id)
    assert await service.prune_mcp_sessions(30) == 0
    assert await service.prune_mcp_sessions(-1) == 1
    assert await service.get_mcp_session_agent("fresh") is None


def test_initialize_detection():
    assert is_initialize_request(json.dumps(INITIALIZE).encode())
    assert is_initialize_request(json.dumps([LIST_TOOLS, INITIALIZE]).encode())
    assert not is_initialize_request(json.dumps(LIST_TOOLS).encode())
    assert not is_initialize_request(b"not json")
    assert not is_initialize_request(b"")


@pytest.mark.asyncio
async def test_guard_drops_idle_sessions(runtime, test_agent, service):
    inner, _ = fake_transport()
    guard = McpSessionGuard(inner, runtime, idle_timeout=60)
    headers = {"X-Api-Key": test_agent.api_key, "Accept": ACCEPT}
    async with AsyncClient(transport=ASGITransport(app=guard), base_url="http://test") as client:
        await client.post("/", json=INITIALIZE, headers=headers)
        assert "sess-1" in guard.live_sessions

        # Abandoned without DELETE
        guard.live_sessions["sess-1"] -= 120
        assert guard.prune_idle() == 1
        assert guard.live_sessions == {}

        resp = await client.post("/", json=LIST_TOOLS, headers={**headers, "Mcp-Session-Id": "sess-1"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == -32004
    assert await service.get_mcp_session_agent("sess-1") is None


@pytest.mark.asyncio
async def test_guard_keeps_active_sessions(guard_client, test_agent):
    client, guard, _ = guard_client
    headers = {"X-Api-Key": test_agent.api_key, "Accept": ACCEPT}
    await client.post("/", json=INITIALIZE, headers=headers)

    resp = await client.post("/", json=LIST_TOOLS, headers={**headers, "Mcp-Session-Id": "sess-1"})
    assert resp.status_code == 200
    assert guard.prune_idle() == 0
    assert "sess-1" in guard.live_sessions
