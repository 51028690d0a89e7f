"""
realty_identity/services/registration_service.py — Account creation.

``create_agent()`` opens a pre-approved agent account for an administrator;
``ensure_admin()`` seeds the bootstrap admin at startup.

Flow of ``register()``:
    1. Hash the password (thread pool).
    2. Mint the email verification token and the 6-digit phone code.
    3. Initial status: user → pending_verification, agent → pending_approval.
    4. One store transaction: identity row (+ pending approval for agents).
    5. After commit: verification email and SMS, each under a deadline.
       Delivery failures are reported per channel, never rolled back.
    6. Audit ``user_registration`` and publish ``identity.user.registered``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from realty_identity.config import IdentitySettings
from realty_identity.db.repositories import approval_repo, identity_repo
from realty_identity.exceptions import DuplicateError, ValidationError
from realty_identity.models.audit import ClientContext
from realty_identity.models.common import utc_now
from realty_identity.models.enums import ApprovalType, IdentityStatus, Role
from realty_identity.models.policy import is_valid_phone, normalize_email, password_policy_violations
from realty_identity.models.user import (
    AgentCreateRequest,
    NotificationReport,
    RegisterRequest,
    UserRead,
)
from realty_identity.services.audit_logger import AuditSink, record_event
from realty_identity.services.notifier import (
    Notifier,
    agent_account_created_email,
    deliver,
    verification_email,
    verification_sms,
)
from realty_identity.services.password_hasher import CredentialHasher
from realty_identity.services.token_mint import numeric_code, random_token, temporary_password

logger = logging.getLogger(__name__)


@dataclass
class RegistrationResult:
    user: UserRead
    notifications: NotificationReport
    next_steps: list[str] = field(default_factory=list)


class RegistrationService:
    def __init__(
        self,
        settings: IdentitySettings,
        hasher: CredentialHasher,
        notifier: Notifier,
        audit: AuditSink,
    ):
        self.settings = settings
        self.hasher = hasher
        self.notifier = notifier
        self.audit = audit

    async def register(self, data: RegisterRequest, client: ClientContext | None = None) -> RegistrationResult:
        """
        Creates a user or agent identity and sends both verification messages.

        Raises:
            DuplicateError: email, phone or license number already registered.
        """
        password_hash = await self.hasher.hash_async(data.password)
        email_token = random_token()
        phone_code = numeric_code(6)
        is_agent = data.role == Role.AGENT.value

        candidate = {
            "name": data.name,
            "email": data.email,
            "phone": data.phone,
            "password_hash": password_hash,
            "role": data.role,
            "status": (
                IdentityStatus.PENDING_APPROVAL.value if is_agent
                else IdentityStatus.PENDING_VERIFICATION.value
            ),
            "email_verification_token": email_token,
            "phone_verification_code": phone_code,
        }
        if is_agent:
            candidate.update(data.agent_profile.model_dump())

        try:
            row = await identity_repo.insert_identity(
                candidate,
                approval_type=ApprovalType.AGENT_REGISTRATION.value if is_agent else None,
            )
        except DuplicateError as exc:
            await record_event(
                self.audit, "user_registration_failed", client=client,
                details={"reason": "duplicate", "field": exc.field, "role": data.role},
            )
            raise

        logger.info("Registered %s id=%s", row["role"], row["id"])
        notifications = await self._send_verifications(row, email_token, phone_code)

        await record_event(
            self.audit, "user_registration", user_id=row["id"], client=client,
            details={
                "role": row["role"],
                "email_sent": notifications.email.sent,
                "sms_sent": notifications.sms.sent,
            },
        )
        try:
            from realty_identity.events import emit_user_registered
            await emit_user_registered(user_id=row["id"], email=row["email"], role=row["role"])
        except Exception as exc:
            logger.warning("Failed to emit user.registered event: %s", exc)

        next_steps = ["verify_email", "verify_phone"]
        if is_agent:
            next_steps.append("await_approval")
        approval = {"status": "pending"} if is_agent else None
        return RegistrationResult(
            user=UserRead.from_row(row, approval),
            notifications=notifications,
            next_steps=next_steps,
        )

    async def _send_verifications(self, row: dict, email_token: str, phone_code: str) -> NotificationReport:
        sender = self.settings.notification_sender
        message = verification_email(sender, self.settings.public_base_url, row["name"], email_token)
        timeout = self.settings.notifier_timeout_seconds
        email_report, sms_report = await asyncio.gather(
            deliver("email", self.notifier.send_email(row["email"], message.subject, message.body), timeout),
            deliver("sms", self.notifier.send_sms(row["phone"], verification_sms(sender, phone_code)), timeout),
        )
        return NotificationReport(email=email_report, sms=sms_report)

    async def create_agent(
        self, data: AgentCreateRequest, admin_id: int, client: ClientContext | None = None,
    ) -> RegistrationResult:
        """
        Opens a pre-approved agent account on behalf of an administrator.

        The agent gets a temporary password by email together with the email
        verification link, and the phone code by SMS. The approval record is
        stored as already approved by ``admin_id``, so the account turns
        active as soon as both channels are verified.

        Raises:
            DuplicateError: email, phone or license number already registered.
        """
        temp_password = temporary_password()
        password_hash = await self.hasher.hash_async(temp_password)
        email_token = random_token()
        phone_code = numeric_code(6)
        candidate = {
            "name": data.name,
            "email": data.email,
            "phone": data.phone,
            "password_hash": password_hash,
            "role": Role.AGENT.value,
            "status": IdentityStatus.PENDING_VERIFICATION.value,
            "email_verification_token": email_token,
            "phone_verification_code": phone_code,
            **data.agent_profile.model_dump(),
        }
        try:
            row = await identity_repo.insert_identity(
                candidate, approval_type=ApprovalType.ADMIN_CREATED.value, approved_by=admin_id,
            )
        except DuplicateError as exc:
            await record_event(
                self.audit, "admin_agent_create_failed", user_id=admin_id, client=client,
                details={"reason": "duplicate", "field": exc.field},
            )
            raise

        logger.info("Agent id=%s created by admin id=%s", row["id"], admin_id)
        sender = self.settings.notification_sender
        message = agent_account_created_email(
            sender, self.settings.public_base_url, row["name"], row["email"], temp_password, email_token
        )
        timeout = self.settings.notifier_timeout_seconds
        email_report, sms_report = await asyncio.gather(
            deliver("email", self.notifier.send_email(row["email"], message.subject, message.body), timeout),
            deliver("sms", self.notifier.send_sms(row["phone"], verification_sms(sender, phone_code)), timeout),
        )
        notifications = NotificationReport(email=email_report, sms=sms_report)

        await record_event(
            self.audit, "admin_agent_create", user_id=admin_id, client=client,
            details={
                "identity_id": row["id"],
                "email_sent": email_report.sent,
                "sms_sent": sms_report.sent,
            },
        )
        try:
            from realty_identity.events import emit_user_registered
            await emit_user_registered(user_id=row["id"], email=row["email"], role=row["role"])
        except Exception as exc:
            logger.warning("Failed to emit user.registered event: %s", exc)

        return RegistrationResult(
            user=UserRead.from_row(row, await approval_repo.get_latest_approval(row["id"])),
            notifications=notifications,
            next_steps=["verify_email", "verify_phone"],
        )

    async def ensure_admin(self, name: str, email: str, phone: str, password: str) -> dict | None:
        """
        Creates the bootstrap admin if no identity holds ``email`` yet.

        Admins are created verified and active; returns the new row, or None
        when the account already exists.

        Raises:
            ValidationError: malformed phone or a password that fails the policy.
        """
        email = normalize_email(email)
        if not is_valid_phone(phone):
            raise ValidationError(
                "Bootstrap admin phone must be in E.164 format",
                details={"field": "phone"},
            )
        violations = password_policy_violations(password)
        if violations:
            raise ValidationError(
                "Bootstrap admin password does not meet the password policy",
                details={"field": "password", "violations": violations},
            )
        if await identity_repo.email_exists(email):
            return None
        now = utc_now()
        row = await identity_repo.insert_identity({
            "name": name,
            "email": email,
            "phone": phone,
            "password_hash": await self.hasher.hash_async(password),
            "role": Role.ADMIN.value,
            "status": IdentityStatus.ACTIVE.value,
            "email_verified_at": now,
            "phone_verified_at": now,
        }, now=now)
        logger.info("Bootstrap admin created: id=%s", row["id"])
        return row
