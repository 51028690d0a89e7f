"""
realty_identity/services/verification_service.py — Email token and phone code redemption.

A token or code is single-use: the store clears it in the same transaction
that sets ``*_verified_at``, so a spent secret no longer resolves to an
identity and every later redemption fails with ``TokenInvalidError``.
"""

from __future__ import annotations

import logging

from realty_identity.config import IdentitySettings
from realty_identity.db.repositories import approval_repo, identity_repo
from realty_identity.exceptions import (
    AlreadyVerifiedError,
    NotFoundError,
    TokenInvalidError,
    ValidationError,
)
from realty_identity.models.audit import ClientContext
from realty_identity.models.enums import VerificationOutcome
from realty_identity.models.user import DeliveryReport, NotificationReport, UserRead
from realty_identity.services.audit_logger import AuditSink, record_event
from realty_identity.services.notifier import (
    Notifier,
    deliver,
    verification_email,
    verification_sms,
)
from realty_identity.services.token_mint import numeric_code, random_token

logger = logging.getLogger(__name__)


class VerificationService:
    def __init__(self, settings: IdentitySettings, notifier: Notifier, audit: AuditSink):
        self.settings = settings
        self.notifier = notifier
        self.audit = audit

    # ── Redemption ───────────────────────────────────────────────────────

    async def verify_email(self, token: str, client: ClientContext | None = None) -> UserRead:
        row = await identity_repo.find_by_email_token(token)
        if row is None:
            raise TokenInvalidError()
        outcome = await identity_repo.mark_email_verified(row["id"], token)
        return await self._finish(row["id"], "email", outcome, client)

    async def verify_phone(self, phone: str, code: str, client: ClientContext | None = None) -> UserRead:
        row = await identity_repo.find_by_phone_and_code(phone, code)
        if row is None:
            raise TokenInvalidError("Invalid or expired verification code")
        outcome = await identity_repo.mark_phone_verified(row["id"], phone, code)
        return await self._finish(row["id"], "phone", outcome, client)

    async def _finish(
        self,
        identity_id: int,
        channel: str,
        outcome: VerificationOutcome,
        client: ClientContext | None,
    ) -> UserRead:
        if outcome == VerificationOutcome.ALREADY_VERIFIED:
            raise AlreadyVerifiedError(channel)
        if outcome == VerificationOutcome.TOKEN_INVALID:
            raise TokenInvalidError()

        row = await identity_repo.find_by_id(identity_id)
        await record_event(
            self.audit, f"{channel}_verified", user_id=identity_id, client=client,
            details={"status": row["status"]},
        )
        try:
            from realty_identity.events import emit_user_verified
            await emit_user_verified(user_id=identity_id, channel=channel, status=row["status"])
        except Exception as exc:
            logger.warning("Failed to emit user.verified event: %s", exc)
        return UserRead.from_row(row, await approval_repo.get_latest_approval(identity_id))

    # ── Resend ───────────────────────────────────────────────────────────

    async def resend_email_verification(self, email: str, client: ClientContext | None = None) -> DeliveryReport:
        """Replaces the pending email token and sends it again."""
        row = await identity_repo.find_by_email(email)
        if row is None:
            raise NotFoundError("Identity", email)
        return await self._send_email_token(row, client)

    async def resend_phone_verification(self, phone: str, client: ClientContext | None = None) -> DeliveryReport:
        """Replaces the pending phone code and sends it again."""
        row = await identity_repo.find_by_phone(phone)
        if row is None:
            raise NotFoundError("Identity", phone)
        return await self._send_phone_code(row, client)

    async def send_email_verification_for(
        self, identity_id: int, actor_id: int, client: ClientContext | None = None,
    ) -> DeliveryReport:
        """Admin-triggered resend of the email token."""
        return await self._send_email_token(await self._live_identity(identity_id), client, actor_id)

    async def send_phone_verification_for(
        self, identity_id: int, actor_id: int, client: ClientContext | None = None,
    ) -> DeliveryReport:
        """Admin-triggered resend of the phone code."""
        return await self._send_phone_code(await self._live_identity(identity_id), client, actor_id)

    async def _live_identity(self, identity_id: int) -> dict:
        row = await identity_repo.find_by_id(identity_id)
        if row is None or row["deleted_at"] is not None:
            raise NotFoundError("Identity", str(identity_id))
        return row

    async def _send_email_token(
        self, row: dict, client: ClientContext | None, actor_id: int | None = None,
    ) -> DeliveryReport:
        if row["email_verified_at"] is not None:
            raise AlreadyVerifiedError("email")
        token = random_token()
        if not await identity_repo.set_email_token(row["id"], token):
            raise AlreadyVerifiedError("email")
        report = await self._deliver_email_token(row, token)
        await self._audit_resend("email", row["id"], report, client, actor_id)
        return report

    async def _send_phone_code(
        self, row: dict, client: ClientContext | None, actor_id: int | None = None,
    ) -> DeliveryReport:
        if row["phone_verified_at"] is not None:
            raise AlreadyVerifiedError("phone")
        code = numeric_code(6)
        if not await identity_repo.set_phone_code(row["id"], code):
            raise AlreadyVerifiedError("phone")
        report = await self._deliver_phone_code(row, code)
        await self._audit_resend("phone", row["id"], report, client, actor_id)
        return report

    async def _deliver_email_token(self, row: dict, token: str) -> DeliveryReport:
        message = verification_email(
            self.settings.notification_sender, self.settings.public_base_url, row["name"], token
        )
        return await deliver(
            "email",
            self.notifier.send_email(row["email"], message.subject, message.body),
            self.settings.notifier_timeout_seconds,
        )

    async def _deliver_phone_code(self, row: dict, code: str) -> DeliveryReport:
        return await deliver(
            "sms",
            self.notifier.send_sms(row["phone"], verification_sms(self.settings.notification_sender, code)),
            self.settings.notifier_timeout_seconds,
        )

    async def _audit_resend(
        self,
        channel: str,
        identity_id: int,
        report: DeliveryReport,
        client: ClientContext | None,
        actor_id: int | None,
    ) -> None:
        details = {"sent": report.sent}
        if actor_id is not None:
            details["actor_id"] = actor_id
        await record_event(
            self.audit, f"{channel}_verification_resent", user_id=identity_id, client=client,
            details=details,
        )

    # ── Admin reset ──────────────────────────────────────────────────────

    async def reset_verification(
        self,
        identity_id: int,
        actor_id: int,
        reset_email: bool = True,
        reset_phone: bool = True,
        client: ClientContext | None = None,
    ) -> tuple[UserRead, NotificationReport]:
        """
        Marks the chosen channels unverified again and sends fresh secrets.

        The identity falls back out of ``active`` until it verifies again.

        Raises:
            ValidationError: neither channel selected.
            NotFoundError: unknown or deleted identity.
        """
        if not (reset_email or reset_phone):
            raise ValidationError("No verification reset options specified")
        token = random_token() if reset_email else None
        code = numeric_code(6) if reset_phone else None
        row = await identity_repo.reset_verification(identity_id, email_token=token, phone_code=code)

        notifications = NotificationReport()
        if token is not None:
            notifications.email = await self._deliver_email_token(row, token)
        if code is not None:
            notifications.sms = await self._deliver_phone_code(row, code)

        await record_event(
            self.audit, "admin_reset_verification", user_id=actor_id, client=client,
            details={
                "identity_id": identity_id,
                "reset_email": reset_email,
                "reset_phone": reset_phone,
                "status": row["status"],
            },
        )
        logger.info("Verification reset: id=%s email=%s phone=%s", identity_id, reset_email, reset_phone)
        return UserRead.from_row(row, await approval_repo.get_latest_approval(identity_id)), notifications
