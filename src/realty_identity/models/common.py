"""
realty_identity/models/common.py — Base types of the identity domain.
"""

from datetime import datetime, timezone

from pydantic import BaseModel


class IdentityBase(BaseModel):
    """Base Pydantic model for identity schemas."""

    model_config = {"str_strip_whitespace": True}


def utc_now() -> datetime:
    """Timezone-aware current time; the default clock of every service."""
    return datetime.now(timezone.utc)
