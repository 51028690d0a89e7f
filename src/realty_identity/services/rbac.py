"""
realty_identity/services/rbac.py — Role checks for the portal API.

Roles are flat (user, agent, admin). Agents additionally need an approved
agent registration before agent-only endpoints open up.
"""

from __future__ import annotations

import logging

from fastapi import Depends

from realty_identity.db.repositories import approval_repo
from realty_identity.dependencies import get_current_identity
from realty_identity.exceptions import AuthorizationError
from realty_identity.models.enums import ApprovalStatus, Role

logger = logging.getLogger(__name__)


def has_role(identity: dict, *roles: str) -> bool:
    return identity.get("role") in roles


def require_role(*roles: Role | str):
    """FastAPI dependency: the caller must hold one of ``roles``; returns the identity row."""
    allowed = tuple(r.value if isinstance(r, Role) else r for r in roles)

    async def _check(identity: dict = Depends(get_current_identity)) -> dict:
        if not has_role(identity, *allowed):
            logger.warning("RBAC: identity %s denied, requires %s", identity.get("id"), allowed)
            raise AuthorizationError(f"Role {' or '.join(allowed)} required")
        return identity

    return _check


async def require_approved_agent(identity: dict = Depends(require_role(Role.AGENT))) -> dict:
    """FastAPI dependency: an agent whose latest approval is approved."""
    approval = await approval_repo.get_latest_approval(identity["id"])
    if approval is None or approval["status"] != ApprovalStatus.APPROVED.value:
        logger.info("RBAC: agent %s not approved yet", identity["id"])
        raise AuthorizationError("Agent account is awaiting approval")
    return identity
