# board_service.py — Business layer: the single mutation path for every surface
"""
BoardService owns validation, revision bookkeeping, activity and audit
trails and event publication. REST, GraphQL and MCP all construct one per
unit of work and call the same methods.

Every mutation follows the same shape:

    validate  ->  [write_lock: read, diff, write, commit]  ->  activity
              ->  publish event(s)  ->  audit entry

Activity and audit are written after the primary commit and are
log-and-continue: a failure there never fails the mutation.
"""
import asyncio
import logging
import math
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import Depends
from starlette.requests import HTTPConnection
from sqlalchemy.ext.asyncio import AsyncSession

from board_store import BoardStore, FieldChange
from database import get_db_session
from errors import NotFoundError, ValidationError, DuplicateError
from events import EventBus, EventChannel
from models import ActivityAction, TicketColumn, COLUMN_ORDER, Ticket, utcnow
from schemas import (
    AgentOut, AgentWithKeyOut, ProjectOut, TicketOut, PaginatedTickets, CommentOut,
    RevisionOut, ActivityOut, AuditEntryOut,
    agent_out, agent_with_key_out, project_out, ticket_out, comment_out,
    revision_out, activity_out, audit_out,
)

logger = logging.getLogger("agentboard.service")

ADMIN_KEY_SETTING = "admin_api_key"
AGENT_KEY_PREFIX = "ab-"
ADMIN_KEY_PREFIX = "admin-"

DEFAULT_PER_PAGE = 50
MAX_PER_PAGE = 200
DEFAULT_LOG_LIMIT = 100
MAX_LOG_LIMIT = 1000

# Revision fields in the order they are evaluated within one call
REVISION_ORDER = ("title", "description", "column", "assignee_id")


def generate_agent_key() -> str:
    return f"{AGENT_KEY_PREFIX}{secrets.token_urlsafe(24)}"


def generate_admin_key() -> str:
    return f"{ADMIN_KEY_PREFIX}{secrets.token_urlsafe(32)}"


def clamp_limit(value: Any, default: int = DEFAULT_LOG_LIMIT, maximum: int = MAX_LOG_LIMIT) -> int:
    """Lenient limit parsing for log queries: junk or non-positive -> default."""
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return default
    if limit <= 0:
        return default
    return min(limit, maximum)


def validate_column(value: Any) -> str:
    if not isinstance(value, str) or value not in COLUMN_ORDER:
        raise ValidationError(
            f"Invalid column '{value}'. Must be one of: {', '.join(COLUMN_ORDER)}"
        )
    return value


def _require_text(value: Any, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required")
    return value.strip()


def _optional_text(value: Any, label: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be a string")
    return value


class BoardService:

    def __init__(self, db: AsyncSession, bus: EventBus, lock: Optional[asyncio.Lock] = None):
        self.db = db
        self.store = BoardStore(db)
        self.bus = bus
        self.lock = lock or asyncio.Lock()

    # ============================================================
    # HELPERS
    # ============================================================

    async def _require_project(self, project_id: str):
        project = await self.store.get_project(project_id)
        if not project:
            raise NotFoundError("Project not found")
        return project

    async def _require_ticket(self, project_id: str, ticket_id: str) -> Ticket:
        await self._require_project(project_id)
        ticket = await self.store.get_ticket(project_id, ticket_id)
        if not ticket:
            raise NotFoundError("Ticket not found")
        return ticket

    async def _require_agent(self, agent_id: Optional[str]):
        agent = await self.store.get_agent(agent_id) if agent_id else None
        if not agent:
            raise NotFoundError("Agent not found")
        return agent

    async def _log_activity(self, project_id: str, ticket_id: Optional[str], agent_id: Optional[str],
                            action: ActivityAction, details: str = "") -> Optional[ActivityOut]:
        try:
            activity = await self.store.create_activity(project_id, ticket_id, agent_id, action.value, details)
        except Exception:
            logger.exception(f"Failed to record activity {action.value} for project {project_id}")
            return None
        out = activity_out(activity)
        self.bus.publish(EventChannel.ACTIVITY_ADDED, out.model_dump())
        return out

    async def _audit(self, agent_id: Optional[str], action: str, resource: str,
                     details: Optional[str] = None, status_code: int = 200):
        try:
            entry = await self.store.create_audit_entry(agent_id, action, resource, status_code, details)
        except Exception:
            logger.exception(f"Failed to write audit entry {action} {resource}")
            return None
        out = audit_out(entry)
        self.bus.publish(EventChannel.AUDIT_ADDED, out.model_dump())
        return out

    @staticmethod
    def _diff(ticket: Ticket, requested: Dict[str, Any]) -> List[FieldChange]:
        changes = []
        for field in REVISION_ORDER:
            if field not in requested:
                continue
            old = getattr(ticket, field)
            new = requested[field]
            if old != new:
                changes.append((field, old, new))
        return changes

    async def _apply_ticket_changes(self, project_id: str, ticket_id: str, requested: Dict[str, Any],
                                    actor_id: Optional[str]):
        """Diff and persist under the write lock. Returns (ticket, changes)."""
        async with self.lock:
            return await self._write_ticket_changes(project_id, ticket_id, requested, actor_id)

    async def _write_ticket_changes(self, project_id: str, ticket_id: str, requested: Dict[str, Any],
                                    actor_id: Optional[str]):
        # Caller holds self.lock
        ticket = await self._require_ticket(project_id, ticket_id)
        changes = self._diff(ticket, requested)
        if not changes:
            return ticket, []
        position = None
        if any(field == "column" for field, _, _ in changes):
            position = await self.store.next_position(project_id, requested["column"])
        ticket = await self.store.update_ticket_fields(ticket, changes, actor_id, position)
        return ticket, changes

    # ============================================================
    # AGENTS
    # ============================================================

    async def create_agent(self, name: Any) -> AgentWithKeyOut:
        name = _require_text(name, "Agent name")
        async with self.lock:
            agent = await self.store.create_agent(name, generate_agent_key())
        logger.info(f"🤖 Agent registered: {name} [{agent.id[:8]}]")
        self.bus.publish(EventChannel.AGENT_CHANGED, {"action": "created", "agent": agent_out(agent).model_dump()})
        await self._audit(None, "CREATE", f"agent:{agent.id}", f"Created agent '{name}'")
        return agent_with_key_out(agent)

    async def get_or_create_agent(self, name: Any) -> AgentWithKeyOut:
        """Look up an agent by name, registering it on first use."""
        name = _require_text(name, "Agent name")
        agent = await self.store.get_agent_by_name(name)
        if agent:
            return agent_with_key_out(agent)
        try:
            return await self.create_agent(name)
        except DuplicateError:
            agent = await self.store.get_agent_by_name(name)
            if not agent:
                raise
            return agent_with_key_out(agent)

    async def get_all_agents(self) -> List[AgentOut]:
        return [agent_out(a) for a in await self.store.list_agents()]

    async def get_all_agents_with_keys(self) -> List[AgentWithKeyOut]:
        return [agent_with_key_out(a) for a in await self.store.list_agents()]

    async def get_agent(self, agent_id: str) -> AgentOut:
        return agent_out(await self._require_agent(agent_id))

    async def find_agent(self, agent_id: Optional[str]) -> Optional[AgentOut]:
        agent = await self.store.get_agent(agent_id) if agent_id else None
        return agent_out(agent) if agent else None

    async def get_agent_by_api_key(self, api_key: Any) -> Optional[AgentOut]:
        if not isinstance(api_key, str) or not api_key:
            return None
        agent = await self.store.get_agent_by_api_key(api_key)
        return agent_out(agent) if agent else None

    async def delete_agent(self, agent_id: str, actor_id: Optional[str] = None):
        async with self.lock:
            agent = await self._require_agent(agent_id)
            name = agent.name
            await self.store.delete_agent(agent_id)
        logger.info(f"Agent deleted: {name} [{agent_id[:8]}]")
        self.bus.publish(EventChannel.AGENT_CHANGED, {"action": "deleted", "agent": {"id": agent_id, "name": name}})
        await self._audit(actor_id, "DELETE", f"agent:{agent_id}", f"Deleted agent '{name}'")

    # ============================================================
    # ADMIN CREDENTIAL
    # ============================================================

    async def get_or_create_admin_key(self) -> str:
        key = await self.store.get_setting(ADMIN_KEY_SETTING)
        if key:
            return key
        async with self.lock:
            key = await self.store.get_setting(ADMIN_KEY_SETTING)
            if not key:
                key = generate_admin_key()
                await self.store.set_setting(ADMIN_KEY_SETTING, key)
                logger.info("🔑 Generated new admin API key")
        return key

    async def rotate_admin_key(self) -> str:
        key = generate_admin_key()
        async with self.lock:
            await self.store.set_setting(ADMIN_KEY_SETTING, key)
        logger.info("🔑 Admin API key rotated")
        await self._audit(None, "ROTATE", "admin-key", "Admin API key rotated")
        return key

    async def override_admin_key(self, value: str) -> str:
        value = _require_text(value, "Admin key")
        async with self.lock:
            await self.store.set_setting(ADMIN_KEY_SETTING, value)
        return value

    # ============================================================
    # PROJECTS
    # ============================================================

    async def create_project(self, name: Any, description: Any = None,
                             actor_id: Optional[str] = None) -> ProjectOut:
        name = _require_text(name, "Project name")
        description = _optional_text(description, "Description")
        async with self.lock:
            project = await self.store.create_project(name, description)
        out = project_out(project)
        self.bus.publish(EventChannel.PROJECT_CHANGED, {"action": "created", "project": out.model_dump()})
        await self._audit(actor_id, "CREATE", f"project:{project.id}", f"Created project '{name}'")
        return out

    async def get_all_projects(self) -> List[ProjectOut]:
        return [project_out(p) for p in await self.store.list_projects()]

    async def get_project(self, project_id: str, actor_id: Optional[str] = None) -> ProjectOut:
        project = await self._require_project(project_id)
        out = project_out(project)
        if actor_id:
            await self._log_activity(project_id, None, actor_id, ActivityAction.PROJECT_READ,
                                     f"Viewed project '{out.name}'")
            await self._audit(actor_id, "READ", f"project:{project_id}")
        return out

    async def delete_project(self, project_id: str, actor_id: Optional[str] = None):
        async with self.lock:
            project = await self._require_project(project_id)
            snapshot = project_out(project)
            await self.store.delete_project(project_id)
        logger.info(f"Project deleted: {snapshot.name} [{project_id[:8]}]")
        self.bus.publish(EventChannel.PROJECT_CHANGED, {"action": "deleted", "project": snapshot.model_dump()})
        await self._audit(actor_id, "DELETE", f"project:{project_id}", f"Deleted project '{snapshot.name}'")

    # ============================================================
    # TICKETS
    # ============================================================

    async def create_ticket(self, project_id: str, title: Any, description: Any = None,
                            column: Any = None, agent_id: Optional[str] = None) -> TicketOut:
        title = _require_text(title, "Title")
        description = _optional_text(description, "Description")
        column = validate_column(column) if column is not None else TicketColumn.BACKLOG.value

        async with self.lock:
            await self._require_project(project_id)
            position = await self.store.next_position(project_id, column)
            ticket = await self.store.create_ticket(project_id, title, description, column, position, agent_id)

        out = ticket_out(ticket)
        await self._log_activity(project_id, ticket.id, agent_id, ActivityAction.TICKET_CREATED,
                                 f"Created ticket '{title}' in {column}")
        self.bus.publish(EventChannel.TICKET_CREATED, out.model_dump())
        await self._audit(agent_id, "CREATE", f"ticket:{ticket.id}", f"project:{project_id}")
        return out

    async def get_ticket(self, project_id: str, ticket_id: str, viewer_id: Optional[str] = None) -> TicketOut:
        ticket = await self._require_ticket(project_id, ticket_id)
        out = ticket_out(ticket)
        if viewer_id:
            await self._log_activity(project_id, ticket_id, viewer_id, ActivityAction.TICKET_READ,
                                     f"Viewed ticket '{out.title}'")
            await self.notify_ticket_view(project_id, ticket_id, viewer_id)
            await self._audit(viewer_id, "READ", f"ticket:{ticket_id}")
        return out

    async def list_project_tickets(self, project_id: str) -> List[TicketOut]:
        """Whole board, unpaginated. Used by nested GraphQL resolution."""
        await self._require_project(project_id)
        return [ticket_out(t) for t in await self.store.list_tickets(project_id)]

    async def get_tickets_by_project(self, project_id: str, actor_id: Optional[str] = None,
                                     column: Optional[str] = None, page: int = 1,
                                     per_page: int = DEFAULT_PER_PAGE) -> PaginatedTickets:
        if column is not None:
            validate_column(column)
        if not isinstance(page, int) or page < 1:
            raise ValidationError("page must be a positive integer")
        if not isinstance(per_page, int) or not 1 <= per_page <= MAX_PER_PAGE:
            raise ValidationError(f"per_page must be between 1 and {MAX_PER_PAGE}")
        await self._require_project(project_id)

        total = await self.store.count_tickets(project_id, column)
        tickets = await self.store.list_tickets(
            project_id, column, offset=(page - 1) * per_page, limit=per_page,
        )
        result = PaginatedTickets(
            data=[ticket_out(t) for t in tickets],
            total=total,
            page=page,
            per_page=per_page,
            total_pages=max(1, math.ceil(total / per_page)),
        )
        if actor_id:
            scope = f" in {column}" if column else ""
            await self._log_activity(project_id, None, actor_id, ActivityAction.TICKETS_LISTED,
                                     f"Listed {len(result.data)} tickets{scope}")
            await self._audit(actor_id, "LIST", f"project:{project_id}/tickets")
        return result

    async def update_ticket(self, project_id: str, ticket_id: str, fields: Dict[str, Any],
                            actor_id: Optional[str] = None) -> TicketOut:
        # Validate everything before touching the store
        requested: Dict[str, Any] = {}
        if fields.get("title") is not None:
            requested["title"] = _require_text(fields["title"], "Title")
        if fields.get("description") is not None:
            requested["description"] = _optional_text(fields["description"], "Description")
        if fields.get("column") is not None:
            requested["column"] = validate_column(fields["column"])

        ticket, changes = await self._apply_ticket_changes(project_id, ticket_id, requested, actor_id)
        out = ticket_out(ticket)
        if not changes:
            return out

        changed = ", ".join(field for field, _, _ in changes)
        await self._log_activity(project_id, ticket_id, actor_id, ActivityAction.TICKET_UPDATED,
                                 f"Updated {changed} on '{out.title}'")
        self.bus.publish(EventChannel.TICKET_UPDATED, out.model_dump())
        await self._audit(actor_id, "UPDATE", f"ticket:{ticket_id}", changed)
        return out

    async def move_ticket(self, project_id: str, ticket_id: str, column: Any,
                          actor_id: Optional[str] = None) -> TicketOut:
        column = validate_column(column)
        ticket, changes = await self._apply_ticket_changes(project_id, ticket_id, {"column": column}, actor_id)
        out = ticket_out(ticket)
        if not changes:
            return out

        _, old_column, _ = changes[0]
        who = "Human" if actor_id is None else "Agent"
        await self._log_activity(project_id, ticket_id, actor_id, ActivityAction.TICKET_MOVED,
                                 f"{who} moved '{out.title}' from {old_column} → {column}")
        self.bus.publish(EventChannel.TICKET_MOVED, out.model_dump())
        await self._audit(actor_id, "MOVE", f"ticket:{ticket_id}", f"{old_column} → {column}")
        return out

    async def close_ticket(self, project_id: str, ticket_id: str) -> TicketOut:
        return await self.move_ticket(project_id, ticket_id, TicketColumn.DONE.value, actor_id=None)

    async def open_ticket(self, project_id: str, ticket_id: str) -> TicketOut:
        return await self.move_ticket(project_id, ticket_id, TicketColumn.BACKLOG.value, actor_id=None)

    async def assign_ticket(self, project_id: str, ticket_id: str, assignee_id: Any,
                            actor_id: Optional[str] = None) -> TicketOut:
        if not isinstance(assignee_id, str) or not assignee_id:
            raise ValidationError("agent_id is required")
        async with self.lock:
            # The assignee must still exist when the reference is written
            assignee = await self._require_agent(assignee_id)
            ticket, changes = await self._write_ticket_changes(
                project_id, ticket_id, {"assignee_id": assignee_id}, actor_id,
            )
        out = ticket_out(ticket)
        if not changes:
            return out

        await self._log_activity(project_id, ticket_id, actor_id, ActivityAction.TICKET_ASSIGNED,
                                 f"Assigned '{out.title}' to {assignee.name}")
        self.bus.publish(EventChannel.TICKET_UPDATED, out.model_dump())
        await self._audit(actor_id, "ASSIGN", f"ticket:{ticket_id}", f"agent:{assignee_id}")
        return out

    async def unassign_ticket(self, project_id: str, ticket_id: str,
                              actor_id: Optional[str] = None) -> TicketOut:
        ticket, changes = await self._apply_ticket_changes(
            project_id, ticket_id, {"assignee_id": None}, actor_id,
        )
        out = ticket_out(ticket)
        if not changes:
            return out

        await self._log_activity(project_id, ticket_id, actor_id, ActivityAction.TICKET_UNASSIGNED,
                                 f"Unassigned '{out.title}'")
        self.bus.publish(EventChannel.TICKET_UPDATED, out.model_dump())
        await self._audit(actor_id, "UNASSIGN", f"ticket:{ticket_id}")
        return out

    async def delete_ticket(self, project_id: str, ticket_id: str, actor_id: Optional[str] = None):
        async with self.lock:
            ticket = await self._require_ticket(project_id, ticket_id)
            snapshot = ticket_out(ticket)
            await self.store.delete_ticket(ticket)

        await self._log_activity(project_id, ticket_id, actor_id, ActivityAction.TICKET_DELETED,
                                 f"Deleted ticket '{snapshot.title}'")
        self.bus.publish(EventChannel.TICKET_DELETED, snapshot.model_dump())
        await self._audit(actor_id, "DELETE", f"ticket:{ticket_id}", f"project:{project_id}")
        return snapshot

    async def notify_ticket_view(self, project_id: str, ticket_id: str, agent_id: Optional[str]):
        agent = await self.find_agent(agent_id)
        self.bus.publish(EventChannel.TICKET_VIEWED, {
            "project_id": project_id,
            "ticket_id": ticket_id,
            "agent_id": agent_id,
            "agent_name": agent.name if agent else None,
        })

    # ============================================================
    # COMMENTS & REVISIONS
    # ============================================================

    async def create_comment(self, project_id: str, ticket_id: str, agent_id: Optional[str],
                             body: Any) -> CommentOut:
        body = _require_text(body, "Comment body")
        await self._require_agent(agent_id)
        async with self.lock:
            ticket = await self._require_ticket(project_id, ticket_id)
            title = ticket.title
            comment = await self.store.create_comment(ticket_id, agent_id, body)

        out = comment_out(comment)
        await self._log_activity(project_id, ticket_id, agent_id, ActivityAction.COMMENT_ADDED,
                                 f"Commented on '{title}'")
        self.bus.publish(EventChannel.COMMENT_ADDED, {**out.model_dump(), "project_id": project_id})
        await self._audit(agent_id, "COMMENT", f"ticket:{ticket_id}")
        return out

    async def get_comments_by_ticket(self, project_id: str, ticket_id: str,
                                     actor_id: Optional[str] = None) -> List[CommentOut]:
        await self._require_ticket(project_id, ticket_id)
        comments = [comment_out(c) for c in await self.store.list_comments(ticket_id)]
        if actor_id:
            await self._log_activity(project_id, ticket_id, actor_id, ActivityAction.COMMENTS_READ,
                                     f"Read {len(comments)} comments")
            await self._audit(actor_id, "READ", f"ticket:{ticket_id}/comments")
        return comments

    async def get_revisions_by_ticket(self, project_id: str, ticket_id: str,
                                      actor_id: Optional[str] = None) -> List[RevisionOut]:
        await self._require_ticket(project_id, ticket_id)
        revisions = [revision_out(r) for r in await self.store.list_revisions(ticket_id)]
        if actor_id:
            await self._log_activity(project_id, ticket_id, actor_id, ActivityAction.HISTORY_READ,
                                     f"Read {len(revisions)} revisions")
            await self._audit(actor_id, "READ", f"ticket:{ticket_id}/revisions")
        return revisions

    # ============================================================
    # ACTIVITY & AUDIT QUERIES
    # ============================================================

    async def get_activities_by_project(self, project_id: str, limit: Any = DEFAULT_LOG_LIMIT) -> List[ActivityOut]:
        await self._require_project(project_id)
        return [activity_out(a) for a in await self.store.list_activities(project_id, clamp_limit(limit))]

    async def get_audit_entries(self, limit: Any = DEFAULT_LOG_LIMIT) -> List[AuditEntryOut]:
        return [audit_out(e) for e in await self.store.list_audit_entries(clamp_limit(limit))]

    async def get_audit_entries_by_agent(self, agent_id: str, limit: Any = DEFAULT_LOG_LIMIT) -> List[AuditEntryOut]:
        return [audit_out(e) for e in await self.store.list_audit_entries(clamp_limit(limit), agent_id=agent_id)]

    async def record_request(self, agent_id: Optional[str], method: str, path: str,
                             status_code: int, body: Optional[str] = None):
        """Request-level audit from the HTTP middleware."""
        return await self._audit(agent_id, method, path, body, status_code=status_code)

    # ============================================================
    # MCP SESSIONS
    # ============================================================

    async def bind_mcp_session(self, session_id: str, agent_id: str):
        await self.store.save_mcp_session(session_id, agent_id)

    async def get_mcp_session_agent(self, session_id: str) -> Optional[str]:
        session = await self.store.get_mcp_session(session_id)
        return session.agent_id if session else None

    async def touch_mcp_session(self, session_id: str):
        await self.store.touch_mcp_session(session_id)

    async def forget_mcp_session(self, session_id: str) -> bool:
        return await self.store.delete_mcp_session(session_id)

    async def prune_mcp_sessions(self, retention_days: int) -> int:
        removed = await self.store.prune_mcp_sessions(utcnow() - timedelta(days=retention_days))
        if removed:
            logger.info(f"Pruned {removed} stale MCP session(s)")
        return removed


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

def get_event_bus(conn: HTTPConnection) -> EventBus:
    return conn.app.state.event_bus


async def get_board_service(
    conn: HTTPConnection,
    db: AsyncSession = Depends(get_db_session),
) -> BoardService:
    return BoardService(db, conn.app.state.event_bus, conn.app.state.write_lock)
