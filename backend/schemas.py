# schemas.py — Pydantic request/response models shared by REST, GraphQL and MCP
from datetime import datetime, timezone
from typing import Optional, List

from pydantic import BaseModel, Field

from models import Agent, Project, Ticket, Comment, TicketRevision, Activity, AuditEntry


def _ts(dt) -> Optional[str]:
    if dt is None:
        return None
    if isinstance(dt, datetime):
        # SQLite hands back naive datetimes; everything is stored as UTC
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.isoformat()
    return str(dt)


# ============================================================
# REQUEST BODIES
# ============================================================

class AgentCreate(BaseModel):
    name: str = Field(..., max_length=100)


class ProjectCreate(BaseModel):
    name: str = Field(..., max_length=200)
    description: Optional[str] = None


class TicketCreate(BaseModel):
    title: str = Field(..., max_length=500)
    description: Optional[str] = None
    column: Optional[str] = None


class TicketUpdate(BaseModel):
    title: Optional[str] = Field(default=None, max_length=500)
    description: Optional[str] = None
    column: Optional[str] = None


class TicketMove(BaseModel):
    column: str


class TicketAssign(BaseModel):
    agent_id: str


class CommentCreate(BaseModel):
    body: str = Field(..., max_length=20000)


# ============================================================
# RESPONSE MODELS
# ============================================================

class AgentOut(BaseModel):
    id: str
    name: str
    created_at: Optional[str] = None


class AgentWithKeyOut(AgentOut):
    api_key: str


class ProjectOut(BaseModel):
    id: str
    name: str
    description: str = ""
    created_at: Optional[str] = None


class TicketOut(BaseModel):
    id: str
    project_id: str
    title: str
    description: str = ""
    column: str
    position: int
    agent_id: Optional[str] = None
    assignee_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class PaginatedTickets(BaseModel):
    data: List[TicketOut]
    total: int
    page: int
    per_page: int
    total_pages: int


class CommentOut(BaseModel):
    id: str
    ticket_id: str
    agent_id: str
    body: str
    created_at: Optional[str] = None


class RevisionOut(BaseModel):
    id: int
    ticket_id: str
    agent_id: Optional[str] = None
    field: str
    old_value: str
    new_value: str
    timestamp: Optional[str] = None


class ActivityOut(BaseModel):
    id: int
    project_id: str
    ticket_id: Optional[str] = None
    agent_id: Optional[str] = None
    action: str
    details: str = ""
    timestamp: Optional[str] = None


class AuditEntryOut(BaseModel):
    id: int
    agent_id: Optional[str] = None
    method: str
    path: str
    status_code: int
    details: Optional[str] = None
    timestamp: Optional[str] = None


class AdminKeyOut(BaseModel):
    admin_key: str


# ============================================================
# ORM -> OUT
# ============================================================

def agent_out(agent: Agent) -> AgentOut:
    return AgentOut(id=agent.id, name=agent.name, created_at=_ts(agent.created_at))


def agent_with_key_out(agent: Agent) -> AgentWithKeyOut:
    return AgentWithKeyOut(
        id=agent.id, name=agent.name, api_key=agent.api_key, created_at=_ts(agent.created_at),
    )


def project_out(project: Project) -> ProjectOut:
    return ProjectOut(
        id=project.id,
        name=project.name,
        description=project.description or "",
        created_at=_ts(project.created_at),
    )


def ticket_out(ticket: Ticket) -> TicketOut:
    return TicketOut(
        id=ticket.id,
        project_id=ticket.project_id,
        title=ticket.title,
        description=ticket.description or "",
        column=ticket.column,
        position=ticket.position,
        agent_id=ticket.agent_id,
        assignee_id=ticket.assignee_id,
        created_at=_ts(ticket.created_at),
        updated_at=_ts(ticket.updated_at),
    )


def comment_out(comment: Comment) -> CommentOut:
    return CommentOut(
        id=comment.id,
        ticket_id=comment.ticket_id,
        agent_id=comment.agent_id,
        body=comment.body,
        created_at=_ts(comment.created_at),
    )


def revision_out(rev: TicketRevision) -> RevisionOut:
    return RevisionOut(
        id=rev.id,
        ticket_id=rev.ticket_id,
        agent_id=rev.agent_id,
        field=rev.field,
        old_value=rev.old_value or "",
        new_value=rev.new_value or "",
        timestamp=_ts(rev.timestamp),
    )


def activity_out(activity: Activity) -> ActivityOut:
    return ActivityOut(
        id=activity.id,
        project_id=activity.project_id,
        ticket_id=activity.ticket_id,
        agent_id=activity.agent_id,
        action=activity.action,
        details=activity.details or "",
        timestamp=_ts(activity.timestamp),
    )


def audit_out(entry: AuditEntry) -> AuditEntryOut:
    return AuditEntryOut(
        id=entry.id,
        agent_id=entry.agent_id,
        method=entry.method,
        path=entry.path,
        status_code=entry.status_code,
        details=entry.details,
        timestamp=_ts(entry.timestamp),
    )
