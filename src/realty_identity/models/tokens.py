"""
realty_identity/models/tokens.py — Signed token claims and token pairs.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from realty_identity.models.enums import TokenType


class Claims(BaseModel):
    """Verified claims of an access or refresh token."""
    sub: int
    role: str
    ver: int = Field(..., ge=1)
    typ: TokenType
    iat: int
    exp: int
    jti: str | None = None


class TokenPair(BaseModel):
    """Access + refresh tokens returned by login and refresh."""
    access: str
    refresh: str
    token_type: str = "Bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime
    refresh_jti: str = Field(..., exclude=True)
