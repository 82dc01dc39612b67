# routers/projects.py — Project boards and their activity feeds
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response

from auth import require_admin, optional_agent
from board_service import BoardService, get_board_service, DEFAULT_LOG_LIMIT
from schemas import ProjectCreate, ProjectOut, ActivityOut, AgentOut

router = APIRouter(prefix="/api/projects", tags=["Projects"])


@router.post("", response_model=ProjectOut, status_code=201, dependencies=[Depends(require_admin)])
async def create_project(
    data: ProjectCreate,
    service: BoardService = Depends(get_board_service),
):
    return await service.create_project(data.name, data.description)


@router.get("", response_model=List[ProjectOut])
async def list_projects(service: BoardService = Depends(get_board_service)):
    return await service.get_all_projects()


@router.get("/{project_id}", response_model=ProjectOut)
async def get_project(
    project_id: str,
    agent: Optional[AgentOut] = Depends(optional_agent),
    service: BoardService = Depends(get_board_service),
):
    return await service.get_project(project_id, actor_id=agent.id if agent else None)


@router.delete("/{project_id}", status_code=204, dependencies=[Depends(require_admin)])
async def delete_project(project_id: str, service: BoardService = Depends(get_board_service)):
    """Delete a project with all of its tickets, comments, revisions and activity"""
    await service.delete_project(project_id)
    return Response(status_code=204)


@router.get("/{project_id}/activity", response_model=List[ActivityOut])
async def list_activity(
    project_id: str,
    limit: Optional[str] = Query(default=None),
    service: BoardService = Depends(get_board_service),
):
    """Newest first. Invalid or non-positive limits fall back to the default."""
    return await service.get_activities_by_project(project_id, limit if limit is not None else DEFAULT_LOG_LIMIT)
