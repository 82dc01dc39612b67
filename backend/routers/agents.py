# routers/agents.py — Agent registry and admin credential management
from typing import List

from fastapi import APIRouter, Depends, Response

from auth import require_admin
from board_service import BoardService, get_board_service
from schemas import AgentCreate, AgentOut, AgentWithKeyOut, AdminKeyOut

router = APIRouter(prefix="/api/agents", tags=["Agents"])


@router.post("", response_model=AgentWithKeyOut, status_code=201, dependencies=[Depends(require_admin)])
async def create_agent(
    data: AgentCreate,
    service: BoardService = Depends(get_board_service),
):
    """Register an agent. The returned api_key is the agent's credential."""
    return await service.create_agent(data.name)


@router.get("", response_model=List[AgentOut])
async def list_agents(service: BoardService = Depends(get_board_service)):
    return await service.get_all_agents()


@router.get("/keys", response_model=List[AgentWithKeyOut], dependencies=[Depends(require_admin)])
async def list_agents_with_keys(service: BoardService = Depends(get_board_service)):
    return await service.get_all_agents_with_keys()


@router.post("/admin-key/rotate", response_model=AdminKeyOut, dependencies=[Depends(require_admin)])
async def rotate_admin_key(service: BoardService = Depends(get_board_service)):
    """Issue a new admin key. The old one stops working immediately."""
    return AdminKeyOut(admin_key=await service.rotate_admin_key())


@router.get("/{agent_id}", response_model=AgentOut)
async def get_agent(agent_id: str, service: BoardService = Depends(get_board_service)):
    return await service.get_agent(agent_id)


@router.delete("/{agent_id}", status_code=204, dependencies=[Depends(require_admin)])
async def delete_agent(agent_id: str, service: BoardService = Depends(get_board_service)):
    await service.delete_agent(agent_id)
    return Response(status_code=204)
