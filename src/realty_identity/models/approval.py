"""
realty_identity/models/approval.py — Agent onboarding approval records.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from realty_identity.models.common import IdentityBase
from realty_identity.models.enums import ApprovalDecision, ApprovalStatus, ApprovalType


class ApprovalRead(IdentityBase):
    id: int
    identity_id: int
    approval_type: ApprovalType
    status: ApprovalStatus
    submitted_at: datetime
    reviewer_id: int | None = None
    decided_at: datetime | None = None
    notes: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "ApprovalRead":
        return cls(**{k: row.get(k) for k in cls.model_fields})


class ApprovalDecisionRequest(IdentityBase):
    """Body of POST /admin/approvals/{id}/decision."""
    decision: ApprovalDecision
    notes: str | None = Field(default=None, max_length=2000)
