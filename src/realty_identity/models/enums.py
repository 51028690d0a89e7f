"""
realty_identity/models/enums.py — Enumerations of the identity domain.

    • Role — permissions and activation prerequisites
    • IdentityStatus — lifecycle position of an identity
    • ApprovalStatus / ApprovalDecision — agent onboarding review
    • VerificationOutcome / RedeemOutcome — results of store compare-and-clear
"""

from enum import Enum


class Role(str, Enum):
    """Role of an identity."""
    USER = "user"
    AGENT = "agent"
    ADMIN = "admin"


class IdentityStatus(str, Enum):
    """Lifecycle status of an identity."""
    PENDING_VERIFICATION = "pending_verification"
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"
    LOCKED = "locked"


class ApprovalStatus(str, Enum):
    """Status of a pending approval record."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalDecision(str, Enum):
    """Decision an admin may take on a pending approval."""
    APPROVE = "approve"
    REJECT = "reject"


class ApprovalType(str, Enum):
    """Kind of review an approval record asks for."""
    AGENT_REGISTRATION = "agent_registration"
    ADMIN_CREATED = "admin_created"


class VerificationOutcome(str, Enum):
    """Result of an email/phone compare-and-clear."""
    VERIFIED = "verified"
    TOKEN_INVALID = "token_invalid"
    ALREADY_VERIFIED = "already_verified"


class RedeemOutcome(str, Enum):
    """Result of a password-reset redemption."""
    REDEEMED = "redeemed"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"


class TokenType(str, Enum):
    """Kind of signed token."""
    ACCESS = "access"
    REFRESH = "refresh"


class Severity(str, Enum):
    """Audit event severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
