"""
realty_identity/models/user.py — Request and response records of the identity API.

Request bodies are a closed set of DTOs; validation failures surface as 400.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import EmailStr, Field, field_validator, model_validator

from realty_identity.models.common import IdentityBase
from realty_identity.models.enums import ApprovalStatus, IdentityStatus, Role
from realty_identity.models.policy import (
    PHONE_PATTERN,
    normalize_email,
    password_policy_violations,
)


def _check_password(value: str) -> str:
    violations = password_policy_violations(value)
    if violations:
        raise ValueError("Password " + "; ".join(violations))
    return value


# ═══════════════════════════════════════════════════════════════════════════
# REGISTRATION
# ═══════════════════════════════════════════════════════════════════════════


class AgentProfile(IdentityBase):
    """Profile fields an agent supplies on registration."""
    license_number: str = Field(..., min_length=5, max_length=100, examples=["KL-RERA-2024-0117"])
    agency_name: str = Field(..., min_length=2, max_length=255)
    experience_years: int = Field(..., ge=0, le=50)
    commission_rate: Decimal | None = Field(default=None, ge=0, le=Decimal("99.99"), decimal_places=2)
    specialization: str | None = Field(default=None, max_length=1000)
    bio: str | None = Field(default=None, max_length=2000)


class RegisterRequest(IdentityBase):
    """Registration of a user or an agent."""
    name: str = Field(..., min_length=2, max_length=255, examples=["Anjali Menon"])
    email: EmailStr = Field(..., examples=["anjali@example.com"])
    phone: str = Field(..., pattern=PHONE_PATTERN.pattern, examples=["+919876543210"])
    password: str = Field(..., min_length=8, max_length=128)
    confirm_password: str | None = Field(default=None, alias="confirmPassword")
    role: Literal["user", "agent"] = Field(default="user")
    agent_profile: AgentProfile | None = None

    model_config = {"str_strip_whitespace": True, "populate_by_name": True}

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        return normalize_email(v)

    @field_validator("password")
    @classmethod
    def _password_policy(cls, v: str) -> str:
        return _check_password(v)

    @model_validator(mode="after")
    def _cross_field_rules(self) -> "RegisterRequest":
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("Passwords do not match")
        if self.role == Role.AGENT.value and self.agent_profile is None:
            raise ValueError("agent_profile is required for agent registration")
        if self.role == Role.USER.value and self.agent_profile is not None:
            raise ValueError("agent_profile is only accepted for agent registration")
        return self


class AgentCreateRequest(IdentityBase):
    """Body of POST /admin/agents: an agent account opened by an administrator."""
    name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN.pattern)
    agent_profile: AgentProfile

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        return normalize_email(v)


class VerificationResetRequest(IdentityBase):
    """Body of POST /admin/identities/{id}/reset-verification."""
    reset_email: bool = True
    reset_phone: bool = True


# ═══════════════════════════════════════════════════════════════════════════
# AUTH FLOWS
# ═══════════════════════════════════════════════════════════════════════════


class LoginRequest(IdentityBase):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        return normalize_email(v)


class RefreshRequest(IdentityBase):
    refresh_token: str = Field(..., min_length=1, alias="refreshToken")

    model_config = {"str_strip_whitespace": True, "populate_by_name": True}


class EmailTokenRequest(IdentityBase):
    """Body of POST /auth/verify-email."""
    token: str = Field(..., min_length=1, max_length=512)


class EmailRequest(IdentityBase):
    """Body of endpoints keyed by email only."""
    email: EmailStr

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        return normalize_email(v)


class PhoneCodeRequest(IdentityBase):
    """Body of POST /auth/verify-phone."""
    phone: str = Field(..., pattern=PHONE_PATTERN.pattern)
    code: str = Field(..., pattern=r"^\d{6}$")


class PhoneRequest(IdentityBase):
    phone: str = Field(..., pattern=PHONE_PATTERN.pattern)


class ResetPasswordRequest(IdentityBase):
    """Body of POST /auth/reset-password. Policy is checked by the service."""
    token: str = Field(..., min_length=32, max_length=512)
    password: str = Field(..., min_length=1, max_length=1024)
    confirm_password: str | None = Field(default=None, alias="confirmPassword")

    model_config = {"str_strip_whitespace": True, "populate_by_name": True}


class ChangePasswordRequest(IdentityBase):
    current_password: str = Field(..., min_length=1, max_length=1024, alias="currentPassword")
    new_password: str = Field(..., min_length=1, max_length=1024, alias="newPassword")

    model_config = {"str_strip_whitespace": True, "populate_by_name": True}


# ═══════════════════════════════════════════════════════════════════════════
# RESPONSES
# ═══════════════════════════════════════════════════════════════════════════


class UserRead(IdentityBase):
    """Public view of an identity (no credentials, no secrets)."""
    id: int
    name: str
    email: str
    phone: str
    role: Role
    status: IdentityStatus
    email_verified: bool = False
    phone_verified: bool = False
    created_at: datetime | None = None
    last_login_at: datetime | None = None
    license_number: str | None = None
    agency_name: str | None = None
    experience_years: int | None = None
    commission_rate: Decimal | None = None
    specialization: str | None = None
    bio: str | None = None
    approval_status: ApprovalStatus | None = None

    @classmethod
    def from_row(cls, row: dict, approval: dict | None = None) -> "UserRead":
        """Converts a store row (dict) into the public view."""
        return cls(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            phone=row["phone"],
            role=row["role"],
            status=row["status"],
            email_verified=row.get("email_verified_at") is not None,
            phone_verified=row.get("phone_verified_at") is not None,
            created_at=row.get("created_at"),
            last_login_at=row.get("last_login_at"),
            license_number=row.get("license_number"),
            agency_name=row.get("agency_name"),
            experience_years=row.get("experience_years"),
            commission_rate=row.get("commission_rate"),
            specialization=row.get("specialization"),
            bio=row.get("bio"),
            approval_status=approval["status"] if approval else None,
        )


class DeliveryReport(IdentityBase):
    """Outcome of one notification channel."""
    sent: bool = False
    error: str | None = None


class NotificationReport(IdentityBase):
    email: DeliveryReport = Field(default_factory=DeliveryReport)
    sms: DeliveryReport = Field(default_factory=DeliveryReport)
