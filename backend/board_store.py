# board_store.py — Persistence gateway over one AsyncSession
"""
BoardStore is the only code that touches the ORM. It knows nothing about
events or validation: absence is reported as None, uniqueness violations
as DuplicateError, and every write method is its own transaction.

Cascades (project -> tickets -> comments/revisions, agent -> SET NULL) are
declared on the schema and executed by the database, so after a bulk delete
the identity map is cleared to avoid serving rows the database removed.
"""
import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select, func, delete, update, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import DuplicateError
from models import (
    Setting, Agent, Project, Ticket, Comment, TicketRevision, Activity,
    AuditEntry, McpSession, COLUMN_ORDER, utcnow,
)

logger = logging.getLogger("agentboard.store")

# (field, old_value, new_value) as recorded in ticket_revisions
FieldChange = Tuple[str, Optional[str], Optional[str]]

# Revision field -> Ticket attribute
REVISION_FIELDS = {
    "title": "title",
    "description": "description",
    "column": "column",
    "assignee_id": "assignee_id",
}

_column_rank = case(
    *[(Ticket.column == name, rank) for rank, name in enumerate(COLUMN_ORDER)],
    else_=len(COLUMN_ORDER),
)


def _as_text(value) -> str:
    return "" if value is None else str(value)


class BoardStore:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _commit(self):
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    # ============================================================
    # SETTINGS
    # ============================================================

    async def get_setting(self, key: str) -> Optional[str]:
        result = await self.db.execute(select(Setting.value).where(Setting.key == key))
        return result.scalar_one_or_none()

    async def set_setting(self, key: str, value: str):
        setting = await self.db.get(Setting, key)
        if setting:
            setting.value = value
            setting.updated_at = utcnow()
        else:
            self.db.add(Setting(key=key, value=value))
        await self._commit()

    # ============================================================
    # AGENTS
    # ============================================================

    async def create_agent(self, name: str, api_key: str) -> Agent:
        agent = Agent(name=name, api_key=api_key)
        self.db.add(agent)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateError(f"Agent with name '{name}' already exists")
        await self.db.refresh(agent)
        return agent

    async def list_agents(self) -> Sequence[Agent]:
        result = await self.db.execute(select(Agent).order_by(Agent.created_at.asc(), Agent.name.asc()))
        return result.scalars().all()

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        if not agent_id:
            return None
        result = await self.db.execute(select(Agent).where(Agent.id == agent_id))
        return result.scalar_one_or_none()

    async def get_agent_by_name(self, name: str) -> Optional[Agent]:
        result = await self.db.execute(select(Agent).where(Agent.name == name))
        return result.scalar_one_or_none()

    async def get_agent_by_api_key(self, api_key: str) -> Optional[Agent]:
        result = await self.db.execute(select(Agent).where(Agent.api_key == api_key))
        return result.scalar_one_or_none()

    async def delete_agent(self, agent_id: str) -> bool:
        result = await self.db.execute(delete(Agent).where(Agent.id == agent_id))
        await self._commit()
        self.db.expunge_all()
        return result.rowcount > 0

    # ============================================================
    # PROJECTS
    # ============================================================

    async def create_project(self, name: str, description: str = "") -> Project:
        project = Project(name=name, description=description or "")
        self.db.add(project)
        await self._commit()
        await self.db.refresh(project)
        return project

    async def list_projects(self) -> Sequence[Project]:
        result = await self.db.execute(select(Project).order_by(Project.created_at.asc()))
        return result.scalars().all()

    async def get_project(self, project_id: str) -> Optional[Project]:
        return await self.db.get(Project, project_id)

    async def delete_project(self, project_id: str) -> bool:
        result = await self.db.execute(delete(Project).where(Project.id == project_id))
        await self._commit()
        self.db.expunge_all()
        return result.rowcount > 0

    # ============================================================
    # TICKETS
    # ============================================================

    async def next_position(self, project_id: str, column: str) -> int:
        """Append-to-end slot: max + 1, or 0 for an empty column."""
        stmt = select(func.coalesce(func.max(Ticket.position), -1) + 1).where(
            Ticket.project_id == project_id, Ticket.column == column
        )
        result = await self.db.execute(stmt)
        return int(result.scalar())

    async def create_ticket(self, project_id: str, title: str, description: str,
                            column: str, position: int, agent_id: Optional[str]) -> Ticket:
        now = utcnow()
        ticket = Ticket(
            project_id=project_id,
            title=title,
            description=description or "",
            column=column,
            position=position,
            agent_id=agent_id,
            created_at=now,
            updated_at=now,
        )
        self.db.add(ticket)
        await self._commit()
        await self.db.refresh(ticket)
        return ticket

    async def get_ticket(self, project_id: str, ticket_id: str) -> Optional[Ticket]:
        result = await self.db.execute(
            select(Ticket).where(Ticket.id == ticket_id, Ticket.project_id == project_id)
        )
        return result.scalar_one_or_none()

    async def list_tickets(self, project_id: str, column: Optional[str] = None,
                           offset: int = 0, limit: Optional[int] = None) -> Sequence[Ticket]:
        stmt = (
            select(Ticket)
            .where(Ticket.project_id == project_id)
            .order_by(_column_rank, Ticket.position.asc(), Ticket.created_at.asc())
        )
        if column:
            stmt = stmt.where(Ticket.column == column)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def count_tickets(self, project_id: str, column: Optional[str] = None) -> int:
        stmt = select(func.count(Ticket.id)).where(Ticket.project_id == project_id)
        if column:
            stmt = stmt.where(Ticket.column == column)
        result = await self.db.execute(stmt)
        return result.scalar() or 0

    async def update_ticket_fields(self, ticket: Ticket, changes: List[FieldChange],
                                   actor_id: Optional[str], position: Optional[int] = None) -> Ticket:
        """Apply changes and their revisions in one transaction.

        `changes` must already be filtered to values that differ; the caller
        computed them from the row it holds under the write lock.
        """
        now = utcnow()
        for field, old, new in changes:
            setattr(ticket, REVISION_FIELDS[field], new)
            self.db.add(TicketRevision(
                ticket_id=ticket.id,
                agent_id=actor_id,
                field=field,
                old_value=_as_text(old),
                new_value=_as_text(new),
                timestamp=now,
            ))
        if position is not None:
            ticket.position = position
        ticket.updated_at = now
        await self._commit()
        await self.db.refresh(ticket)
        return ticket

    async def delete_ticket(self, ticket: Ticket):
        await self.db.execute(delete(Ticket).where(Ticket.id == ticket.id))
        await self._commit()
        self.db.expunge_all()

    # ============================================================
    # COMMENTS & REVISIONS
    # ============================================================

    async def create_comment(self, ticket_id: str, agent_id: str, body: str) -> Comment:
        comment = Comment(ticket_id=ticket_id, agent_id=agent_id, body=body)
        self.db.add(comment)
        await self._commit()
        await self.db.refresh(comment)
        return comment

    async def list_comments(self, ticket_id: str) -> Sequence[Comment]:
        result = await self.db.execute(
            select(Comment).where(Comment.ticket_id == ticket_id)
            .order_by(Comment.created_at.asc(), Comment.id.asc())
        )
        return result.scalars().all()

    async def list_revisions(self, ticket_id: str) -> Sequence[TicketRevision]:
        result = await self.db.execute(
            select(TicketRevision).where(TicketRevision.ticket_id == ticket_id)
            .order_by(TicketRevision.timestamp.asc(), TicketRevision.id.asc())
        )
        return result.scalars().all()

    # ============================================================
    # ACTIVITY & AUDIT
    # ============================================================

    async def create_activity(self, project_id: str, ticket_id: Optional[str],
                              agent_id: Optional[str], action: str, details: str = "") -> Activity:
        activity = Activity(
            project_id=project_id,
            ticket_id=ticket_id,
            agent_id=agent_id,
            action=action,
            details=details or "",
        )
        self.db.add(activity)
        await self._commit()
        await self.db.refresh(activity)
        return activity

    async def list_activities(self, project_id: str, limit: int = 100) -> Sequence[Activity]:
        result = await self.db.execute(
            select(Activity).where(Activity.project_id == project_id)
            .order_by(Activity.timestamp.desc(), Activity.id.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def create_audit_entry(self, agent_id: Optional[str], method: str, path: str,
                                 status_code: int = 200, details: Optional[str] = None) -> AuditEntry:
        entry = AuditEntry(
            agent_id=agent_id,
            method=method,
            path=path,
            status_code=status_code,
            details=details,
        )
        self.db.add(entry)
        await self._commit()
        await self.db.refresh(entry)
        return entry

    async def list_audit_entries(self, limit: int = 100, agent_id: Optional[str] = None) -> Sequence[AuditEntry]:
        stmt = select(AuditEntry).order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc()).limit(limit)
        if agent_id:
            stmt = stmt.where(AuditEntry.agent_id == agent_id)
        result = await self.db.execute(stmt)
        return result.scalars().all()

    # ============================================================
    # MCP SESSIONS
    # ============================================================

    async def save_mcp_session(self, session_id: str, agent_id: str) -> McpSession:
        session = await self.db.get(McpSession, session_id)
        now = utcnow()
        if session:
            session.agent_id = agent_id
            session.last_seen_at = now
        else:
            session = McpSession(session_id=session_id, agent_id=agent_id, created_at=now, last_seen_at=now)
            self.db.add(session)
        await self._commit()
        return session

    async def get_mcp_session(self, session_id: str) -> Optional[McpSession]:
        # Always hit the database: the transport guard writes through other sessions
        result = await self.db.execute(select(McpSession).where(McpSession.session_id == session_id))
        return result.scalar_one_or_none()

    async def touch_mcp_session(self, session_id: str):
        await self.db.execute(
            update(McpSession).where(McpSession.session_id == session_id).values(last_seen_at=utcnow())
        )
        await self._commit()

    async def delete_mcp_session(self, session_id: str) -> bool:
        result = await self.db.execute(delete(McpSession).where(McpSession.session_id == session_id))
        await self._commit()
        return result.rowcount > 0

    async def prune_mcp_sessions(self, older_than: datetime) -> int:
        result = await self.db.execute(delete(McpSession)
            .where(McpSession.last_seen_at < older_than)
            .execution_options(synchronize_session=False)
        )
        await self._commit()
        return result.rowcount or 0
