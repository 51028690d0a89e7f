"""
realty_identity/db/repositories/approval_repo.py — Pending approvals (PostgreSQL).

An approval decision and the resulting identity status change commit in
one transaction.
"""

from __future__ import annotations

from datetime import datetime

import asyncpg

from realty_identity.database import get_connection, serializable
from realty_identity.db.repositories.identity_repo import apply_activation
from realty_identity.exceptions import ConflictError, NotFoundError
from realty_identity.models.common import utc_now
from realty_identity.models.enums import ApprovalDecision, ApprovalStatus


async def get_latest_approval(identity_id: int) -> dict | None:
    """Most recent approval record of an identity."""
    async with get_connection() as conn:
        row = await conn.fetchrow(
            """
            SELECT * FROM pending_approvals
            WHERE identity_id = $1 ORDER BY submitted_at DESC, id DESC LIMIT 1
            """,
            identity_id,
        )
        return dict(row) if row else None


async def list_pending_approvals(limit: int = 20, offset: int = 0) -> list[dict]:
    """Pending approvals, oldest first."""
    async with get_connection() as conn:
        rows = await conn.fetch(
            """
            SELECT * FROM pending_approvals
            WHERE status = 'pending'
            ORDER BY submitted_at ASC, id ASC
            LIMIT $1 OFFSET $2
            """,
            limit, offset,
        )
        return [dict(r) for r in rows]


async def decide_approval(
    approval_id: int,
    decision: ApprovalDecision,
    reviewer_id: int,
    notes: str | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Records an approve/reject decision and re-derives the identity status.

    Raises ``NotFoundError`` for an unknown approval and ``ConflictError``
    when it was already decided.
    """
    now = now or utc_now()
    new_status = (
        ApprovalStatus.APPROVED if decision == ApprovalDecision.APPROVE else ApprovalStatus.REJECTED
    )

    async def work(conn: asyncpg.Connection) -> dict:
        row = await conn.fetchrow(
            "SELECT * FROM pending_approvals WHERE id = $1 FOR UPDATE", approval_id
        )
        if row is None:
            raise NotFoundError("Approval", str(approval_id))
        if row["status"] != ApprovalStatus.PENDING.value:
            raise ConflictError(
                "Approval has already been decided",
                details={"approval_id": approval_id, "status": row["status"]},
            )
        updated = await conn.fetchrow(
            """
            UPDATE pending_approvals
            SET status = $1, reviewer_id = $2, decided_at = $3, notes = $4
            WHERE id = $5
            RETURNING *
            """,
            new_status.value, reviewer_id, now, notes, approval_id,
        )
        await apply_activation(conn, row["identity_id"], now)
        return dict(updated)

    return await serializable(work)
