"""
═══════════════════════════════════════════════════════════════════════════════
Identity — Domain Exception Hierarchy
═══════════════════════════════════════════════════════════════════════════════

Every domain error derives from ``IdentityError``. The ``code`` attribute is
mapped to an HTTP status in ``realty_identity.main`` (see ``STATUS_BY_CODE``).
"""

from __future__ import annotations

from datetime import datetime


class IdentityError(Exception):
    """
    Base class of all identity domain errors.

    Attributes
    ──────────
        message (str):  Human readable description, returned to the client.
        code (str):     String code used for the HTTP status mapping.
        details (dict): Extra data (field, entity id and so on).
    """

    def __init__(
        self,
        message: str,
        code: str = "IDENTITY_ERROR",
        details: dict | None = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)


# ── Input ────────────────────────────────────────────────────────────────────


class ValidationError(IdentityError):
    """Input shape violation: 400."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, code="IDENTITY_VALIDATION_ERROR", details=details)


class WeakPasswordError(ValidationError):
    """Password does not satisfy the password policy: 400."""

    def __init__(self, violations: list[str]):
        super().__init__(
            "Password does not meet the password policy",
            details={"field": "password", "violations": violations},
        )
        self.violations = violations


# ── Authentication ───────────────────────────────────────────────────────────


class AuthenticationError(IdentityError):
    """Bad credentials or bad token: 401."""

    def __init__(self, message: str = "Authentication failed", code: str = "IDENTITY_AUTH_ERROR"):
        super().__init__(message, code=code)


class AccountLockedError(AuthenticationError):
    """Too many failed logins: 423."""

    def __init__(self, locked_until: datetime):
        super().__init__(
            "Account temporarily locked due to repeated failed login attempts",
            code="IDENTITY_LOCKED",
        )
        self.locked_until = locked_until
        self.details = {"locked_until": locked_until.isoformat()}


class TokenExpiredError(AuthenticationError):
    """Signed token or reset token past its expiry."""

    def __init__(self, message: str = "Token has expired", code: str = "IDENTITY_TOKEN_EXPIRED"):
        super().__init__(message, code=code)


class ResetTokenExpiredError(TokenExpiredError):
    """Password-reset token past ``password_reset_expires``: 400."""

    def __init__(self):
        super().__init__(
            "Password reset token has expired, please request a new one",
            code="IDENTITY_RESET_TOKEN_EXPIRED",
        )


class BadSignatureError(AuthenticationError):
    """Signature does not match any accepted signing key."""

    def __init__(self, message: str = "Token signature is invalid"):
        super().__init__(message, code="IDENTITY_AUTH_ERROR")


class WrongTokenTypeError(AuthenticationError):
    """Access token presented where a refresh token is expected, or vice versa."""

    def __init__(self, expected: str):
        super().__init__(f"Expected a {expected} token", code="IDENTITY_AUTH_ERROR")
        self.details = {"expected": expected}


class MalformedTokenError(AuthenticationError):
    """Token cannot be decoded or lacks required claims."""

    def __init__(self, message: str = "Token is malformed"):
        super().__init__(message, code="IDENTITY_AUTH_ERROR")


class RevokedTokenError(AuthenticationError):
    """Token version no longer matches the identity: 401."""

    def __init__(self, message: str = "Token has been revoked, please log in again"):
        super().__init__(message, code="IDENTITY_TOKEN_REVOKED")


# ── Verification ─────────────────────────────────────────────────────────────


class TokenInvalidError(IdentityError):
    """Verification token/code or reset token unknown or already spent: 400."""

    def __init__(self, message: str = "Invalid or expired verification token"):
        super().__init__(message, code="IDENTITY_TOKEN_INVALID")


class AlreadyVerifiedError(IdentityError):
    """Channel already verified: 409."""

    def __init__(self, channel: str):
        super().__init__(
            f"{channel.capitalize()} is already verified",
            code="IDENTITY_ALREADY_VERIFIED",
            details={"channel": channel},
        )


# ── Authorization / lookup / conflicts ───────────────────────────────────────


class AuthorizationError(IdentityError):
    """Role or ownership check failed: 403."""

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, code="IDENTITY_AUTHZ_ERROR")


class NotFoundError(IdentityError):
    """Addressable resource missing: 404."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            message=f"{entity} not found: {entity_id}",
            code="IDENTITY_NOT_FOUND",
            details={"entity": entity, "id": entity_id},
        )


class ConflictError(IdentityError):
    """State conflict: 409."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, code="IDENTITY_CONFLICT", details=details)


class DuplicateError(ConflictError):
    """Uniqueness conflict on email, phone or license number: 409."""

    _MESSAGES = {
        "email": "Email address already registered",
        "phone": "Phone number already registered",
        "license_number": "License number already registered",
    }

    def __init__(self, field: str):
        super().__init__(
            self._MESSAGES.get(field, f"{field} already registered"),
            details={"field": field},
        )
        self.field = field


# ── Throttling ───────────────────────────────────────────────────────────────


class RateLimitedError(IdentityError):
    """Too many attempts in the window: 429. Mutates no state."""

    def __init__(self, route_class: str, retry_after: int):
        super().__init__(
            "Too many attempts, please try again later.",
            code="IDENTITY_RATE_LIMITED",
            details={"route_class": route_class},
        )
        self.route_class = route_class
        self.retry_after = retry_after


# ── Infrastructure ───────────────────────────────────────────────────────────


class TransportError(IdentityError):
    """Notification delivery failed. Recorded, never propagated to HTTP."""

    def __init__(self, channel: str, message: str):
        super().__init__(message, code="IDENTITY_TRANSPORT_ERROR", details={"channel": channel})
        self.channel = channel


class HashingError(IdentityError):
    """Hashing misconfiguration (cost out of range): 500."""

    def __init__(self, message: str):
        super().__init__(message, code="IDENTITY_INTERNAL_ERROR")


class InternalError(IdentityError):
    """Unexpected failure: 500."""

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message, code="IDENTITY_INTERNAL_ERROR")


__all__ = [
    "IdentityError",
    "ValidationError",
    "WeakPasswordError",
    "AuthenticationError",
    "AccountLockedError",
    "TokenExpiredError",
    "ResetTokenExpiredError",
    "BadSignatureError",
    "WrongTokenTypeError",
    "MalformedTokenError",
    "RevokedTokenError",
    "TokenInvalidError",
    "AlreadyVerifiedError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "DuplicateError",
    "RateLimitedError",
    "TransportError",
    "HashingError",
    "InternalError",
]
