# routers/tickets.py — Kanban tickets, comments and revision history
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response

from auth import require_agent, optional_agent
from board_service import BoardService, get_board_service, DEFAULT_PER_PAGE, MAX_PER_PAGE
from schemas import (
    AgentOut, TicketCreate, TicketUpdate, TicketMove, TicketAssign, TicketOut,
    PaginatedTickets, CommentCreate, CommentOut, RevisionOut,
)

router = APIRouter(prefix="/api/projects/{project_id}/tickets", tags=["Tickets"])


# ============================================================
# TICKET ENDPOINTS
# ============================================================

@router.post("", response_model=TicketOut, status_code=201)
async def create_ticket(
    project_id: str,
    data: TicketCreate,
    agent: AgentOut = Depends(require_agent),
    service: BoardService = Depends(get_board_service),
):
    """Create a ticket at the end of its column (backlog unless given)"""
    return await service.create_ticket(
        project_id, data.title, data.description, data.column, agent_id=agent.id,
    )


@router.get("", response_model=PaginatedTickets)
async def list_tickets(
    project_id: str,
    column: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=DEFAULT_PER_PAGE, ge=1, le=MAX_PER_PAGE),
    agent: Optional[AgentOut] = Depends(optional_agent),
    service: BoardService = Depends(get_board_service),
):
    """Board order: by column, then position within the column"""
    return await service.get_tickets_by_project(
        project_id,
        actor_id=agent.id if agent else None,
        column=column,
        page=page,
        per_page=per_page,
    )


@router.get("/{ticket_id}", response_model=TicketOut)
async def get_ticket(
    project_id: str,
    ticket_id: str,
    agent: Optional[AgentOut] = Depends(optional_agent),
    service: BoardService = Depends(get_board_service),
):
    return await service.get_ticket(project_id, ticket_id, viewer_id=agent.id if agent else None)


@router.patch("/{ticket_id}", response_model=TicketOut)
async def update_ticket(
    project_id: str,
    ticket_id: str,
    data: TicketUpdate,
    agent: AgentOut = Depends(require_agent),
    service: BoardService = Depends(get_board_service),
):
    return await service.update_ticket(
        project_id, ticket_id, data.model_dump(exclude_none=True), actor_id=agent.id,
    )


@router.patch("/{ticket_id}/move", response_model=TicketOut)
async def move_ticket(
    project_id: str,
    ticket_id: str,
    data: TicketMove,
    agent: AgentOut = Depends(require_agent),
    service: BoardService = Depends(get_board_service),
):
    return await service.move_ticket(project_id, ticket_id, data.column, actor_id=agent.id)


@router.post("/{ticket_id}/assign", response_model=TicketOut)
async def assign_ticket(
    project_id: str,
    ticket_id: str,
    data: TicketAssign,
    agent: AgentOut = Depends(require_agent),
    service: BoardService = Depends(get_board_service),
):
    return await service.assign_ticket(project_id, ticket_id, data.agent_id, actor_id=agent.id)


@router.post("/{ticket_id}/unassign", response_model=TicketOut)
async def unassign_ticket(
    project_id: str,
    ticket_id: str,
    agent: AgentOut = Depends(require_agent),
    service: BoardService = Depends(get_board_service),
):
    return await service.unassign_ticket(project_id, ticket_id, actor_id=agent.id)


@router.post("/{ticket_id}/close", response_model=TicketOut)
async def close_ticket(
    project_id: str,
    ticket_id: str,
    service: BoardService = Depends(get_board_service),
):
    """Human action from the board UI: move to done"""
    return await service.close_ticket(project_id, ticket_id)


@router.post("/{ticket_id}/open", response_model=TicketOut)
async def open_ticket(
    project_id: str,
    ticket_id: str,
    service: BoardService = Depends(get_board_service),
):
    """Human action from the board UI: send back to backlog"""
    return await service.open_ticket(project_id, ticket_id)


@router.delete("/{ticket_id}", status_code=204)
async def delete_ticket(
    project_id: str,
    ticket_id: str,
    agent: AgentOut = Depends(require_agent),
    service: BoardService = Depends(get_board_service),
):
    await service.delete_ticket(project_id, ticket_id, actor_id=agent.id)
    return Response(status_code=204)


# ============================================================
# COMMENTS & HISTORY
# ============================================================

@router.post("/{ticket_id}/comments", response_model=CommentOut, status_code=201)
async def add_comment(
    project_id: str,
    ticket_id: str,
    data: CommentCreate,
    agent: AgentOut = Depends(require_agent),
    service: BoardService = Depends(get_board_service),
):
    return await service.create_comment(project_id, ticket_id, agent.id, data.body)


@router.get("/{ticket_id}/comments", response_model=List[CommentOut])
async def list_comments(
    project_id: str,
    ticket_id: str,
    agent: Optional[AgentOut] = Depends(optional_agent),
    service: BoardService = Depends(get_board_service),
):
    return await service.get_comments_by_ticket(project_id, ticket_id, actor_id=agent.id if agent else None)


@router.get("/{ticket_id}/revisions", response_model=List[RevisionOut])
async def list_revisions(
    project_id: str,
    ticket_id: str,
    agent: Optional[AgentOut] = Depends(optional_agent),
    service: BoardService = Depends(get_board_service),
):
    """Field-level change history, oldest first"""
    return await service.get_revisions_by_ticket(project_id, ticket_id, actor_id=agent.id if agent else None)
