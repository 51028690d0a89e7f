"""
═══════════════════════════════════════════════════════════════════════════════
Identity — FastAPI dependencies (Dependency Injection)
═══════════════════════════════════════════════════════════════════════════════

``ServiceContainer`` wires the services once at startup and lives in
``app.state.container``. Route handlers reach it through ``get_container``;
``get_current_identity`` resolves the bearer token to a current identity row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from fastapi import Header, Request

from realty_identity.config import IdentitySettings
from realty_identity.exceptions import AuthenticationError
from realty_identity.models.audit import ClientContext
from realty_identity.services.approval_service import ApprovalService
from realty_identity.services.audit_logger import AuditSink, IdentityAuditLogger, MemoryAuditSink
from realty_identity.services.claim_signer import ClaimSigner
from realty_identity.services.login_service import LoginService
from realty_identity.services.notifier import LoggingNotifier, Notifier
from realty_identity.services.password_hasher import CredentialHasher
from realty_identity.services.rate_limiter import RateLimiter, client_ip
from realty_identity.services.registration_service import RegistrationService
from realty_identity.services.reset_service import ResetService
from realty_identity.services.session_service import SessionService
from realty_identity.services.verification_service import VerificationService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: IdentitySettings
    hasher: CredentialHasher
    signer: ClaimSigner
    rate_limiter: RateLimiter
    notifier: Notifier
    audit: AuditSink
    registration: RegistrationService
    verification: VerificationService
    login: LoginService
    reset: ResetService
    sessions: SessionService
    approvals: ApprovalService


def build_notifier(settings: IdentitySettings) -> Notifier:
    """HTTP gateway when URLs are configured, the logging notifier otherwise."""
    if settings.email_gateway_url or settings.sms_gateway_url:
        from realty_identity.adapters.notify_gateway import HttpNotifier

        return HttpNotifier(
            email_url=settings.email_gateway_url,
            sms_url=settings.sms_gateway_url,
            sender=settings.notification_sender,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    return LoggingNotifier(reveal_secrets=settings.app_env == "development")


def build_audit_sink(settings: IdentitySettings) -> AuditSink:
    if settings.identity_store == "memory":
        return MemoryAuditSink()
    return IdentityAuditLogger(publish_nats=settings.nats_enabled)


def build_container(
    settings: IdentitySettings,
    notifier: Notifier | None = None,
    audit: AuditSink | None = None,
) -> ServiceContainer:
    """Creates every service from ``settings``; raises HashingError on a bad cost."""
    hasher = CredentialHasher(
        time_cost=settings.hash_time_cost,
        memory_cost=settings.hash_memory_cost,
        parallelism=settings.hash_parallelism,
    )
    signer = ClaimSigner(
        settings.jwt_secret_key,
        previous_key=settings.jwt_previous_secret_key or None,
        grace=timedelta(seconds=settings.jwt_key_grace_seconds),
        algorithm=settings.jwt_algorithm,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
        refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
    )
    notifier = notifier or build_notifier(settings)
    audit = audit or build_audit_sink(settings)
    return ServiceContainer(
        settings=settings,
        hasher=hasher,
        signer=signer,
        rate_limiter=RateLimiter(
            settings.rate_limits,
            enabled=settings.rate_limit_enabled,
            trusted_proxies=settings.trusted_proxies,
        ),
        notifier=notifier,
        audit=audit,
        registration=RegistrationService(settings, hasher, notifier, audit),
        verification=VerificationService(settings, notifier, audit),
        login=LoginService(settings, hasher, signer, audit),
        reset=ResetService(settings, hasher, notifier, audit),
        sessions=SessionService(settings, signer, hasher, audit),
        approvals=ApprovalService(settings, notifier, audit),
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def client_context(request: Request) -> ClientContext:
    """Caller IP and user agent for audit events."""
    trusted = get_container(request).rate_limiter.trusted_proxies
    return ClientContext(ip=client_ip(request, trusted), user_agent=request.headers.get("user-agent"))


async def get_current_identity(
    request: Request,
    authorization: str | None = Header(None),
) -> dict:
    """
    Resolves ``Authorization: Bearer <access token>`` to the identity row.

    Raises:
        AuthenticationError: header missing or malformed, bad or expired token.
        RevokedTokenError: token_version no longer matches.
    """
    if not authorization:
        raise AuthenticationError("Authorization header is required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authorization header must start with 'Bearer'")
    return await get_container(request).sessions.authenticate_access(token.strip())
