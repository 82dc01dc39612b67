# models.py — Database models for Agentboard
# - UUID string primary keys for agents, projects, tickets, comments
# - Integer keys for append-only logs (revisions, activity, audit) so that
#   entries sharing a timestamp still have a stable order
# - FK cascades declared here; SQLite enforces them via PRAGMA foreign_keys

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, Integer, ForeignKey, Text, Index,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class TicketColumn(str, PyEnum):
    BACKLOG = "backlog"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"


# Board order, used for listings
COLUMN_ORDER = [c.value for c in TicketColumn]


class ActivityAction(str, PyEnum):
    TICKET_CREATED = "ticket_created"
    TICKET_UPDATED = "ticket_updated"
    TICKET_MOVED = "ticket_moved"
    TICKET_DELETED = "ticket_deleted"
    TICKET_ASSIGNED = "ticket_assigned"
    TICKET_UNASSIGNED = "ticket_unassigned"
    COMMENT_ADDED = "comment_added"
    # Reads by a known agent
    PROJECT_READ = "project_read"
    TICKETS_LISTED = "tickets_listed"
    TICKET_READ = "ticket_read"
    COMMENTS_READ = "comments_read"
    HISTORY_READ = "history_read"


# ============================================================
# SETTINGS
# ============================================================

class Setting(Base):
    """Persisted key/value configuration (admin key lives here)"""
    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# AGENTS
# ============================================================

class Agent(Base):
    __tablename__ = "agents"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, unique=True)
    api_key = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ============================================================
# PROJECTS & TICKETS
# ============================================================

class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Ticket(Base):
    """A card on a project board"""
    __tablename__ = "tickets"

    id = Column(String, primary_key=True, default=new_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    column = Column("column_name", String(20), nullable=False, default=TicketColumn.BACKLOG.value)
    position = Column(Integer, nullable=False, default=0)  # Order within column

    # Actors
    agent_id = Column(String, ForeignKey("agents.id", ondelete="SET NULL"), nullable=True)  # creator
    assignee_id = Column(String, ForeignKey("agents.id", ondelete="SET NULL"), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_tickets_project_column", "project_id", "column_name", "position"),
    )


class Comment(Base):
    __tablename__ = "comments"

    id = Column(String, primary_key=True, default=new_uuid)
    ticket_id = Column(String, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    agent_id = Column(String, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class TicketRevision(Base):
    """Append-only field-level change record"""
    __tablename__ = "ticket_revisions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(String, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    agent_id = Column(String, ForeignKey("agents.id", ondelete="SET NULL"), nullable=True)  # None = human
    field = Column(String, nullable=False)
    old_value = Column(Text, nullable=False, default="")
    new_value = Column(Text, nullable=False, default="")
    timestamp = Column(DateTime(timezone=True), default=utcnow)


# ============================================================
# ACTIVITY & AUDIT
# ============================================================

class Activity(Base):
    """Project-level feed entry. ticket_id is informational and outlives the ticket."""
    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    ticket_id = Column(String, nullable=True)
    agent_id = Column(String, ForeignKey("agents.id", ondelete="SET NULL"), nullable=True)
    action = Column(String, nullable=False)
    details = Column(Text, nullable=False, default="")
    timestamp = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_activity_project_ts", "project_id", "timestamp"),
    )


class AuditEntry(Base):
    """Request- and action-level audit trail"""
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(String, ForeignKey("agents.id", ondelete="SET NULL"), nullable=True, index=True)
    method = Column(String, nullable=False)      # HTTP verb or business action (CREATE, MOVE, ...)
    path = Column(String, nullable=False)        # URL path or resource description
    status_code = Column(Integer, nullable=False, default=200)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)


# ============================================================
# TOOL-PROTOCOL SESSIONS
# ============================================================

class McpSession(Base):
    """Binds an MCP transport session to the agent that initialised it"""
    __tablename__ = "mcp_sessions"

    session_id = Column(String, primary_key=True)
    agent_id = Column(String, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    last_seen_at = Column(DateTime(timezone=True), default=utcnow)
