"""
realty_identity/services/reset_service.py — Password reset.

``request_reset`` answers identically for registered and unknown emails:
the lookup, token issuance and email all run in a background task after
the response is decided. ``confirm_reset`` redeems the token; the store
bumps ``token_version`` in the same transaction, which revokes every
session minted before the reset.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from realty_identity.config import IdentitySettings
from realty_identity.db.repositories import identity_repo
from realty_identity.exceptions import (
    ResetTokenExpiredError,
    TokenInvalidError,
    ValidationError,
    WeakPasswordError,
)
from realty_identity.models.audit import ClientContext
from realty_identity.models.common import utc_now
from realty_identity.models.enums import IdentityStatus, RedeemOutcome
from realty_identity.models.policy import password_policy_violations
from realty_identity.services.audit_logger import AuditSink, record_event
from realty_identity.services.notifier import Notifier, deliver, password_reset_email
from realty_identity.services.password_hasher import CredentialHasher
from realty_identity.services.token_mint import random_token

logger = logging.getLogger(__name__)

RESET_REQUESTED_MESSAGE = "If an account with that email exists, a reset link has been sent."
MAX_RESET_TTL = timedelta(hours=1)


class ResetService:
    def __init__(
        self,
        settings: IdentitySettings,
        hasher: CredentialHasher,
        notifier: Notifier,
        audit: AuditSink,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.hasher = hasher
        self.notifier = notifier
        self.audit = audit
        self._clock = clock
        self._pending: set[asyncio.Task] = set()
        self.ttl = min(timedelta(minutes=settings.reset_token_ttl_minutes), MAX_RESET_TTL)

    # ── Request ──────────────────────────────────────────────────────────

    async def request_reset(self, email: str, client: ClientContext | None = None) -> str:
        """Schedules the reset and returns the fixed response message."""
        task = asyncio.create_task(self._issue(email, client))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return RESET_REQUESTED_MESSAGE

    async def _issue(self, email: str, client: ClientContext | None) -> None:
        try:
            row = await identity_repo.find_by_email(email)
            if row is None or row["status"] == IdentityStatus.DELETED.value:
                await record_event(
                    self.audit, "password_reset_request", client=client,
                    details={"known": False},
                )
                return

            now = self._clock()
            token = random_token()
            await identity_repo.issue_reset_token(row["id"], token, now + self.ttl, now=now)
            message = password_reset_email(
                self.settings.notification_sender,
                self.settings.public_base_url,
                row["name"],
                token,
                int(self.ttl.total_seconds() // 60),
            )
            report = await deliver(
                "email",
                self.notifier.send_email(row["email"], message.subject, message.body),
                self.settings.notifier_timeout_seconds,
            )
            await record_event(
                self.audit, "password_reset_request", user_id=row["id"], client=client,
                details={"known": True, "sent": report.sent},
            )
        except Exception:
            logger.exception("Password reset issuance failed")

    async def wait_for_pending(self) -> None:
        """Waits for scheduled reset issuances (shutdown, tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Confirm ──────────────────────────────────────────────────────────

    async def confirm_reset(
        self,
        token: str,
        new_password: str,
        confirm_password: str | None = None,
        client: ClientContext | None = None,
    ) -> None:
        """
        Sets a new password from a reset token.

        Raises:
            ValidationError: confirmation does not match.
            WeakPasswordError: password policy violated.
            TokenInvalidError: unknown or already used token.
            ResetTokenExpiredError: token past its expiry (strict ``>``).
        """
        if confirm_password is not None and confirm_password != new_password:
            raise ValidationError("Passwords do not match", details={"field": "confirmPassword"})
        violations = password_policy_violations(new_password)
        if violations:
            raise WeakPasswordError(violations)

        new_hash = await self.hasher.hash_async(new_password)
        outcome, row = await identity_repo.redeem_reset_token(token, new_hash, now=self._clock())
        if outcome == RedeemOutcome.NOT_FOUND:
            raise TokenInvalidError("Invalid or expired reset token")
        if outcome == RedeemOutcome.EXPIRED:
            raise ResetTokenExpiredError()

        await record_event(
            self.audit, "password_reset", user_id=row["id"], client=client,
            details={"token_version": row["token_version"]},
        )
