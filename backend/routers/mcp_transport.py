# routers/mcp_transport.py — Authentication and session binding for the MCP endpoint
"""
McpSessionGuard wraps the Streamable HTTP app from the MCP SDK. Before a
request reaches the SDK it checks the agent's API key, the Accept header and
the Mcp-Session-Id, and answers with a JSON-RPC error that tells the client
how to recover:

    -32001  401  missing X-Api-Key                  recovery: add_api_key_header
    -32002  403  unknown key / session of another agent
    -32000  400  no session and not an initialize   recovery: send_initialize
    -32000  406  Accept lacks json + event-stream   recovery: set_accept_header
    -32003  404  session id never issued            recovery: send_initialize
    -32004  404  session lost on server restart     recovery: send_initialize
    -32603  500  anything else

Sessions are bound to the initializing agent and persisted, which is how a
session that survived in the client but not in this process is told apart
from one that never existed. Sessions idle for longer than the idle timeout
are dropped from the live set and answered like a restart (-32004).
"""
import json
import time
import logging
from typing import Dict, Optional

from starlette.datastructures import Headers
from starlette.responses import JSONResponse

from board_service import BoardService

logger = logging.getLogger("agentboard.mcp")

SESSION_HEADER = "mcp-session-id"
DEFAULT_IDLE_TIMEOUT = 60 * 60


def jsonrpc_error(status_code: int, code: int, message: str, **data) -> JSONResponse:
    error = {"code": code, "message": message}
    if data:
        error["data"] = data
    return JSONResponse(status_code=status_code, content={"jsonrpc": "2.0", "error": error, "id": None})


def is_initialize_request(body: bytes) -> bool:
    try:
        payload = json.loads(body or b"null")
    except ValueError:
        return False
    messages = payload if isinstance(payload, list) else [payload]
    return any(isinstance(m, dict) and m.get("method") == "initialize" for m in messages)


async def _read_body(receive) -> bytes:
    body = b""
    while True:
        message = await receive()
        if message["type"] != "http.request":
            break
        body += message.get("body", b"")
        if not message.get("more_body", False):
            break
    return body


def _replay(body: bytes, receive):
    sent = False

    async def replay():
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class McpSessionGuard:
    """Pure ASGI middleware in front of the MCP transport."""

    def __init__(self, app, state, idle_timeout: float = DEFAULT_IDLE_TIMEOUT):
        self.app = app
        self.state = state
        self.idle_timeout = idle_timeout
        # session id -> monotonic time of last use
        self.live_sessions: Dict[str, float] = {}

    def prune_idle(self) -> int:
        cutoff = time.monotonic() - self.idle_timeout
        stale = [sid for sid, seen in self.live_sessions.items() if seen < cutoff]
        for sid in stale:
            del self.live_sessions[sid]
        if stale:
            logger.info(f"Dropped {len(stale)} idle MCP session(s)")
        return len(stale)

    def _service(self, db) -> BoardService:
        return BoardService(db, self.state.event_bus, self.state.write_lock)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def guarded_send(message):
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self._handle(scope, receive, guarded_send)
        except Exception:
            logger.exception("MCP transport failure")
            if not response_started:
                await jsonrpc_error(500, -32603, "Internal server error")(scope, receive, send)

    async def _handle(self, scope, receive, send):
        self.prune_idle()
        headers = Headers(scope=scope)
        method = scope["method"]
        api_key = headers.get("x-api-key")
        session_id = headers.get(SESSION_HEADER)

        if not api_key:
            await jsonrpc_error(401, -32001, "Missing X-Api-Key header",
                                recovery="add_api_key_header")(scope, receive, send)
            return

        async with self.state.session_factory() as db:
            service = self._service(db)
            agent = await service.get_agent_by_api_key(api_key)
            if not agent:
                await jsonrpc_error(403, -32002, "Invalid API key",
                                    reason="invalid_api_key")(scope, receive, send)
                return

            if method == "POST":
                accept = headers.get("accept", "")
                if "application/json" not in accept or "text/event-stream" not in accept:
                    await jsonrpc_error(
                        406, -32000,
                        "Not Acceptable: client must accept both application/json and text/event-stream",
                        recovery="set_accept_header",
                    )(scope, receive, send)
                    return

            if session_id:
                rejection = await self._check_session(service, session_id, agent.id)
                if rejection is not None:
                    await rejection(scope, receive, send)
                    return
                await service.touch_mcp_session(session_id)
            else:
                body = await _read_body(receive) if method == "POST" else b""
                if not is_initialize_request(body):
                    await jsonrpc_error(400, -32000, "Bad Request: no valid session ID provided",
                                        recovery="send_initialize")(scope, receive, send)
                    return
                receive = _replay(body, receive)

        new_session_id: Optional[str] = None
        status_code = 0

        async def capture_send(message):
            nonlocal new_session_id, status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                for name, value in message.get("headers", []):
                    if name.decode("latin-1").lower() == SESSION_HEADER:
                        new_session_id = value.decode("latin-1")
            await send(message)

        await self.app(scope, receive, capture_send)

        if not session_id and new_session_id and status_code < 400:
            await self._bind(new_session_id, agent.id)
        elif session_id and method == "DELETE" and status_code < 400:
            await self._forget(session_id)

    async def _check_session(self, service: BoardService, session_id: str, agent_id: str):
        bound_agent = await service.get_mcp_session_agent(session_id)
        if bound_agent and bound_agent != agent_id:
            return jsonrpc_error(403, -32002, "Session belongs to a different agent",
                                 reason="agent_mismatch")
        if session_id in self.live_sessions:
            self.live_sessions[session_id] = time.monotonic()
            return None
        if bound_agent:
            # Known to the store but not live here: restarted or idle too long
            await service.forget_mcp_session(session_id)
            return jsonrpc_error(404, -32004, "Session expired or server restarted",
                                 recovery="send_initialize")
        return jsonrpc_error(404, -32003, "Unknown session", recovery="send_initialize")

    async def _bind(self, session_id: str, agent_id: str):
        self.live_sessions[session_id] = time.monotonic()
        async with self.state.session_factory() as db:
            await self._service(db).bind_mcp_session(session_id, agent_id)
        logger.info(f"MCP session opened [sid={session_id[:8]} agent={agent_id[:8]}]")

    async def _forget(self, session_id: str):
        self.live_sessions.pop(session_id, None)
        async with self.state.session_factory() as db:
            await self._service(db).forget_mcp_session(session_id)
        logger.info(f"MCP session closed [sid={session_id[:8]}]")
