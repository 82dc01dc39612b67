# routers/audit.py — Read access to the audit trail
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from board_service import BoardService, get_board_service, DEFAULT_LOG_LIMIT
from schemas import AuditEntryOut

router = APIRouter(prefix="/api/audit", tags=["Audit"])


@router.get("", response_model=List[AuditEntryOut])
async def list_audit_entries(
    limit: Optional[str] = Query(default=None),
    service: BoardService = Depends(get_board_service),
):
    """Most recent entries first; limit defaults to 100 and is capped at 1000"""
    return await service.get_audit_entries(limit if limit is not None else DEFAULT_LOG_LIMIT)


@router.get("/agent/{agent_id}", response_model=List[AuditEntryOut])
async def list_agent_audit_entries(
    agent_id: str,
    limit: Optional[str] = Query(default=None),
    service: BoardService = Depends(get_board_service),
):
    return await service.get_audit_entries_by_agent(agent_id, limit if limit is not None else DEFAULT_LOG_LIMIT)
