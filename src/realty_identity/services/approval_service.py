"""
realty_identity/services/approval_service.py — Admin side of the identity lifecycle.

    • agent approval queue and decisions (approve / reject)
    • suspension and reinstatement
    • soft deletion (terminal; frees email, phone and license number)

Each action commits in the store first, then audits and notifies.
"""

from __future__ import annotations

import logging

from realty_identity.config import IdentitySettings
from realty_identity.db.repositories import approval_repo, identity_repo
from realty_identity.exceptions import ConflictError, NotFoundError
from realty_identity.models.approval import ApprovalRead
from realty_identity.models.audit import ClientContext
from realty_identity.models.enums import ApprovalDecision, IdentityStatus
from realty_identity.models.user import UserRead
from realty_identity.services.audit_logger import AuditSink, record_event
from realty_identity.services.notifier import Notifier, agent_approved_email, deliver

logger = logging.getLogger(__name__)


class ApprovalService:
    def __init__(self, settings: IdentitySettings, notifier: Notifier, audit: AuditSink):
        self.settings = settings
        self.notifier = notifier
        self.audit = audit

    async def list_pending(self, limit: int = 20, offset: int = 0) -> list[ApprovalRead]:
        rows = await approval_repo.list_pending_approvals(limit=limit, offset=offset)
        return [ApprovalRead.from_row(r) for r in rows]

    async def decide(
        self,
        approval_id: int,
        decision: ApprovalDecision,
        reviewer_id: int,
        notes: str | None = None,
        client: ClientContext | None = None,
    ) -> ApprovalRead:
        """
        Approves or rejects a pending approval.

        Raises ``NotFoundError`` for an unknown id and ``ConflictError`` when
        the approval was already decided.
        """
        row = await approval_repo.decide_approval(approval_id, decision, reviewer_id, notes)
        approved = decision == ApprovalDecision.APPROVE
        await record_event(
            self.audit, "agent_approve" if approved else "agent_reject",
            user_id=reviewer_id, client=client,
            details={"approval_id": approval_id, "identity_id": row["identity_id"]},
        )
        if approved:
            await self._announce_approval(row, reviewer_id)
        return ApprovalRead.from_row(row)

    async def _announce_approval(self, approval: dict, reviewer_id: int) -> None:
        agent = await identity_repo.find_by_id(approval["identity_id"])
        if agent is not None:
            message = agent_approved_email(self.settings.notification_sender, agent["name"])
            await deliver(
                "email",
                self.notifier.send_email(agent["email"], message.subject, message.body),
                self.settings.notifier_timeout_seconds,
            )
        try:
            from realty_identity.events import emit_agent_approved
            await emit_agent_approved(
                user_id=approval["identity_id"], approval_id=approval["id"], reviewer_id=reviewer_id,
            )
        except Exception as exc:
            logger.warning("Failed to emit agent.approved event: %s", exc)

    async def suspend(self, identity_id: int, actor_id: int, client: ClientContext | None = None) -> UserRead:
        """Suspends an identity and revokes its sessions."""
        if identity_id == actor_id:
            raise ConflictError("Administrators cannot suspend their own account")
        row = await identity_repo.set_status(identity_id, IdentityStatus.SUSPENDED.value)
        await record_event(
            self.audit, "user_suspend", user_id=actor_id, client=client,
            details={"identity_id": identity_id},
        )
        return UserRead.from_row(row, await approval_repo.get_latest_approval(identity_id))

    async def reinstate(self, identity_id: int, actor_id: int, client: ClientContext | None = None) -> UserRead:
        row = await identity_repo.reinstate(identity_id)
        await record_event(
            self.audit, "user_reinstate", user_id=actor_id, client=client,
            details={"identity_id": identity_id, "status": row["status"]},
        )
        return UserRead.from_row(row, await approval_repo.get_latest_approval(identity_id))

    async def delete(self, identity_id: int, actor_id: int, client: ClientContext | None = None) -> None:
        if identity_id == actor_id:
            raise ConflictError("Administrators cannot delete their own account")
        await identity_repo.soft_delete(identity_id)
        await record_event(
            self.audit, "user_delete", user_id=actor_id, client=client,
            details={"identity_id": identity_id},
        )

    async def get_identity(self, identity_id: int) -> UserRead:
        row = await identity_repo.find_by_id(identity_id)
        if row is None:
            raise NotFoundError("Identity", str(identity_id))
        return UserRead.from_row(row, await approval_repo.get_latest_approval(identity_id))
