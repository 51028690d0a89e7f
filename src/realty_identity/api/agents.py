"""
realty_identity/api/agents.py — Agent-only endpoints.

Open to agents whose registration was approved; other callers get 403.
"""

from fastapi import APIRouter, Depends

from realty_identity.api.responses import ok
from realty_identity.db.repositories import approval_repo
from realty_identity.models.user import UserRead
from realty_identity.services.rbac import require_approved_agent

router = APIRouter(prefix="/agents", tags=["agents"])


@router.get("/me", summary="Profile of the approved agent")
async def agent_me(agent: dict = Depends(require_approved_agent)):
    approval = await approval_repo.get_latest_approval(agent["id"])
    return ok(data={"agent": UserRead.from_row(agent, approval)})
