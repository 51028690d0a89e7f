"""
realty_identity.models — Data models of the identity domain.

Re-exports the main classes:
    from realty_identity.models import UserRead, RegisterRequest
"""

from realty_identity.models.enums import (  # noqa: F401
    ApprovalDecision,
    ApprovalStatus,
    ApprovalType,
    IdentityStatus,
    RedeemOutcome,
    Role,
    Severity,
    TokenType,
    VerificationOutcome,
)
from realty_identity.models.user import (  # noqa: F401
    AgentProfile,
    ChangePasswordRequest,
    DeliveryReport,
    EmailRequest,
    EmailTokenRequest,
    LoginRequest,
    NotificationReport,
    PhoneCodeRequest,
    PhoneRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserRead,
)
from realty_identity.models.tokens import Claims, TokenPair  # noqa: F401
from realty_identity.models.approval import ApprovalDecisionRequest, ApprovalRead  # noqa: F401
from realty_identity.models.audit import AuditEvent, ClientContext  # noqa: F401
