# routers/mcp_tools.py — Board operations exposed as MCP tools
"""
Each tool opens its own database session and goes through BoardService, so
tool calls get the same validation, revisions and events as REST.

The calling agent is resolved per call: over Streamable HTTP from the
request's X-Api-Key header, in stdio mode from the agent name the process
was started with. Domain failures come back as tool errors whose text is a
JSON object: {"code": "not_found" | "validation" | "duplicate" | "internal", "error": "..."}.
"""
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from board_service import BoardService, DEFAULT_PER_PAGE
from errors import BoardError
from schemas import AgentOut

logger = logging.getLogger("agentboard.mcp")

SERVER_INSTRUCTIONS = (
    "Agentboard is a Kanban board shared by humans and agents. Columns are "
    "backlog, ready, in_progress, in_review and done. Every change you make is "
    "recorded in the ticket history under your agent name."
)


def _tool_error(code: str, message: str) -> ToolError:
    return ToolError(json.dumps({"code": code, "error": message}))


class BoardTools:
    """Tool implementations bound to the application runtime.

    `state` is any object carrying session_factory, event_bus and write_lock
    (app.state for the HTTP server). It is read at call time, so the tools
    can be built before the lifespan has populated it.
    """

    def __init__(self, state, agent_name: Optional[str] = None):
        self.state = state
        self.agent_name = agent_name

    @asynccontextmanager
    async def _service(self):
        async with self.state.session_factory() as db:
            yield BoardService(db, self.state.event_bus, self.state.write_lock)

    async def _resolve_agent(self, service: BoardService, ctx: Optional[Context]) -> AgentOut:
        if self.agent_name:
            agent = await service.get_or_create_agent(self.agent_name)
            return AgentOut(id=agent.id, name=agent.name, created_at=agent.created_at)

        request = None
        if ctx is not None:
            request = getattr(ctx.request_context, "request", None)
        api_key = request.headers.get("x-api-key") if request is not None else None
        agent = await service.get_agent_by_api_key(api_key)
        if not agent:
            raise _tool_error("unauthorized", "Missing or invalid X-Api-Key header")
        return agent

    async def _call(self, ctx: Optional[Context], operation):
        """Run operation(service, agent) and translate failures into tool errors."""
        try:
            async with self._service() as service:
                agent = await self._resolve_agent(service, ctx)
                return await operation(service, agent)
        except ToolError:
            raise
        except BoardError as e:
            raise _tool_error(e.code, e.message)
        except Exception:
            logger.exception("MCP tool call failed")
            raise _tool_error("internal", "Internal error")

    # ============================================================
    # PROJECTS
    # ============================================================

    async def list_projects(self, ctx: Context = None) -> list:
        """List every project on the board."""
        async def op(service, agent):
            return [p.model_dump() for p in await service.get_all_projects()]
        return await self._call(ctx, op)

    async def get_project(self, project_id: str, ctx: Context = None) -> dict:
        """Get a project by id."""
        async def op(service, agent):
            return (await service.get_project(project_id, actor_id=agent.id)).model_dump()
        return await self._call(ctx, op)

    async def create_project(self, name: str, description: Optional[str] = None, ctx: Context = None) -> dict:
        """Create a new project board."""
        async def op(service, agent):
            return (await service.create_project(name, description, actor_id=agent.id)).model_dump()
        return await self._call(ctx, op)

    async def delete_project(self, project_id: str, ctx: Context = None) -> dict:
        """Delete a project together with all of its tickets."""
        async def op(service, agent):
            await service.delete_project(project_id, actor_id=agent.id)
            return {"deleted": True, "project_id": project_id}
        return await self._call(ctx, op)

    # ============================================================
    # TICKETS
    # ============================================================

    async def list_tickets(self, project_id: str, column: Optional[str] = None, page: int = 1,
                           per_page: int = DEFAULT_PER_PAGE, ctx: Context = None) -> dict:
        """List a project's tickets in board order, optionally filtered by column. Pages are 1-based."""
        async def op(service, agent):
            result = await service.get_tickets_by_project(
                project_id, actor_id=agent.id, column=column, page=page, per_page=per_page,
            )
            return result.model_dump()
        return await self._call(ctx, op)

    async def get_ticket(self, project_id: str, ticket_id: str, ctx: Context = None) -> dict:
        """Get a single ticket."""
        async def op(service, agent):
            return (await service.get_ticket(project_id, ticket_id, viewer_id=agent.id)).model_dump()
        return await self._call(ctx, op)

    async def create_ticket(self, project_id: str, title: str, description: Optional[str] = None,
                            column: Optional[str] = None, ctx: Context = None) -> dict:
        """Create a ticket. It is appended to the end of its column (backlog by default)."""
        async def op(service, agent):
            ticket = await service.create_ticket(project_id, title, description, column, agent_id=agent.id)
            return ticket.model_dump()
        return await self._call(ctx, op)

    async def update_ticket(self, project_id: str, ticket_id: str, title: Optional[str] = None,
                            description: Optional[str] = None, column: Optional[str] = None,
                            ctx: Context = None) -> dict:
        """Update title, description and/or column. Unchanged values are not recorded."""
        async def op(service, agent):
            fields = {"title": title, "description": description, "column": column}
            return (await service.update_ticket(project_id, ticket_id, fields, actor_id=agent.id)).model_dump()
        return await self._call(ctx, op)

    async def move_ticket(self, project_id: str, ticket_id: str, column: str, ctx: Context = None) -> dict:
        """Move a ticket to another column."""
        async def op(service, agent):
            return (await service.move_ticket(project_id, ticket_id, column, actor_id=agent.id)).model_dump()
        return await self._call(ctx, op)

    async def delete_ticket(self, project_id: str, ticket_id: str, ctx: Context = None) -> dict:
        """Delete a ticket and its comments and history."""
        async def op(service, agent):
            await service.delete_ticket(project_id, ticket_id, actor_id=agent.id)
            return {"deleted": True, "ticket_id": ticket_id}
        return await self._call(ctx, op)

    async def assign_ticket(self, project_id: str, ticket_id: str, agent_id: str, ctx: Context = None) -> dict:
        """Assign a ticket to an agent."""
        async def op(service, agent):
            return (await service.assign_ticket(project_id, ticket_id, agent_id, actor_id=agent.id)).model_dump()
        return await self._call(ctx, op)

    async def unassign_ticket(self, project_id: str, ticket_id: str, ctx: Context = None) -> dict:
        """Clear a ticket's assignee."""
        async def op(service, agent):
            return (await service.unassign_ticket(project_id, ticket_id, actor_id=agent.id)).model_dump()
        return await self._call(ctx, op)

    # ============================================================
    # COMMENTS, HISTORY, AGENTS
    # ============================================================

    async def add_comment(self, project_id: str, ticket_id: str, body: str, ctx: Context = None) -> dict:
        """Comment on a ticket as the calling agent."""
        async def op(service, agent):
            return (await service.create_comment(project_id, ticket_id, agent.id, body)).model_dump()
        return await self._call(ctx, op)

    async def get_comments(self, project_id: str, ticket_id: str, ctx: Context = None) -> list:
        """All comments on a ticket, oldest first."""
        async def op(service, agent):
            comments = await service.get_comments_by_ticket(project_id, ticket_id, actor_id=agent.id)
            return [c.model_dump() for c in comments]
        return await self._call(ctx, op)

    async def get_ticket_history(self, project_id: str, ticket_id: str, ctx: Context = None) -> list:
        """Field-level revision history of a ticket, oldest first."""
        async def op(service, agent):
            revisions = await service.get_revisions_by_ticket(project_id, ticket_id, actor_id=agent.id)
            return [r.model_dump() for r in revisions]
        return await self._call(ctx, op)

    async def list_agents(self, ctx: Context = None) -> list:
        """List registered agents."""
        async def op(service, agent):
            return [a.model_dump() for a in await service.get_all_agents()]
        return await self._call(ctx, op)

    async def whoami(self, ctx: Context = None) -> dict:
        """Identify the agent these tool calls are attributed to."""
        async def op(service, agent):
            return agent.model_dump()
        return await self._call(ctx, op)


TOOL_NAMES = [
    "list_projects", "get_project", "create_project", "delete_project",
    "list_tickets", "get_ticket", "create_ticket", "update_ticket", "move_ticket",
    "delete_ticket", "assign_ticket", "unassign_ticket",
    "add_comment", "get_comments", "get_ticket_history",
    "list_agents", "whoami",
]


def register_tools(server: FastMCP, tools: BoardTools) -> FastMCP:
    for name in TOOL_NAMES:
        method = getattr(tools, name)
        server.add_tool(method, name=name, description=method.__doc__)
    return server


def create_mcp_server(state, agent_name: Optional[str] = None) -> FastMCP:
    server = FastMCP(
        "agentboard",
        instructions=SERVER_INSTRUCTIONS,
        host=os.getenv("HOST", "0.0.0.0"),
        streamable_http_path="/",
    )
    return register_tools(server, BoardTools(state, agent_name=agent_name))
