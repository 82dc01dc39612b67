# auth.py — API-key authentication for agents and the board administrator
# - Agents authenticate with X-Api-Key (ab-… keys issued on registration)
# - Administrative writes require X-Admin-Key, persisted in settings and
#   re-read on every request so that rotation takes effect immediately
# - Resolved agent ids are stashed on request.state for the audit middleware

import hmac
from typing import Optional

from fastapi import HTTPException, Depends, Request
from fastapi.security import APIKeyHeader

from board_service import BoardService, get_board_service
from schemas import AgentOut

agent_key_header = APIKeyHeader(name="X-Api-Key", auto_error=False)
admin_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)


def keys_match(provided: str, expected: str) -> bool:
    return hmac.compare_digest(provided.encode(), expected.encode())


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def require_agent(
    request: Request,
    api_key: Optional[str] = Depends(agent_key_header),
    service: BoardService = Depends(get_board_service),
) -> AgentOut:
    if not api_key:
        raise HTTPException(status_code=401, detail="Missing X-Api-Key header")
    agent = await service.get_agent_by_api_key(api_key)
    if not agent:
        raise HTTPException(status_code=403, detail="Invalid API key")
    request.state.agent_id = agent.id
    return agent


async def optional_agent(
    request: Request,
    api_key: Optional[str] = Depends(agent_key_header),
    service: BoardService = Depends(get_board_service),
) -> Optional[AgentOut]:
    """Reads are open; a valid key only attributes them. A bad key is still rejected."""
    if not api_key:
        return None
    agent = await service.get_agent_by_api_key(api_key)
    if not agent:
        raise HTTPException(status_code=403, detail="Invalid API key")
    request.state.agent_id = agent.id
    return agent


async def require_admin(
    admin_key: Optional[str] = Depends(admin_key_header),
    service: BoardService = Depends(get_board_service),
) -> None:
    if not admin_key:
        raise HTTPException(status_code=401, detail="Missing X-Admin-Key header")
    expected = await service.get_or_create_admin_key()
    if not keys_match(admin_key, expected):
        raise HTTPException(status_code=403, detail="Invalid admin key")
