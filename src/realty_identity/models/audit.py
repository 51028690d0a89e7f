"""
realty_identity/models/audit.py — Consumer-visible audit event schema.

Severity rules:
    • event name containing delete | ban | suspend | forced | breach → high
    • login | password | admin | approve | reject → medium
    • anything else → low
    • failures: 5xx → high, 429 → medium, 401/403 → medium
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from realty_identity.models.common import utc_now
from realty_identity.models.enums import Severity

_HIGH_KEYWORDS = ("delete", "ban", "suspend", "forced", "breach")
_MEDIUM_KEYWORDS = ("login", "password", "admin", "approve", "reject")


def severity_for_event(event_type: str) -> Severity:
    """Severity derived from the event name."""
    if any(k in event_type for k in _HIGH_KEYWORDS):
        return Severity.HIGH
    if any(k in event_type for k in _MEDIUM_KEYWORDS):
        return Severity.MEDIUM
    return Severity.LOW


def severity_for_status(status_code: int) -> Severity:
    """Severity of a failed operation derived from its HTTP status."""
    if status_code >= 500:
        return Severity.HIGH
    if status_code in (401, 403, 429):
        return Severity.MEDIUM
    return Severity.LOW


class AuditEvent(BaseModel):
    event_type: str
    user_id: int | None = None
    ip: str | None = None
    user_agent: str | None = None
    severity: Severity = Severity.LOW
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class ClientContext(BaseModel):
    """Caller metadata carried from the HTTP layer into services."""
    ip: str | None = None
    user_agent: str | None = None
