"""
realty_identity/services/login_service.py — Credential check and lockout state machine.

Order of checks for ``login(email, password)``:
    1. Unknown email       → dummy hash verification, generic AuthenticationError
    2. ``locked_until > now`` → AccountLockedError (423), password not checked
    3. suspended / deleted → generic AuthenticationError
    4. Wrong password      → bump failure counter (the store locks at the
                             threshold), generic AuthenticationError
    5. Match               → clear failures, stamp last_login_at, re-hash a
                             legacy/outdated hash, mint the token pair

Unknown email and wrong password produce the same response; only the audit
trail records which one happened. Steps 1–3 run a dummy verification so the
response time does not depend on whether the account exists.

Unverified accounts may log in by default and receive ``advisories``
(``verify_email``, ``verify_phone``, ``await_approval``); with
``require_verified_login`` they are refused until active.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from realty_identity.config import IdentitySettings
from realty_identity.db.repositories import approval_repo, identity_repo
from realty_identity.exceptions import AccountLockedError, AuthenticationError, InternalError
from realty_identity.models.audit import ClientContext
from realty_identity.models.common import utc_now
from realty_identity.models.enums import ApprovalStatus, IdentityStatus, Role
from realty_identity.models.tokens import TokenPair
from realty_identity.models.user import UserRead
from realty_identity.services.audit_logger import AuditSink, record_event
from realty_identity.services.claim_signer import ClaimSigner
from realty_identity.services.password_hasher import CredentialHasher

logger = logging.getLogger(__name__)

GENERIC_LOGIN_FAILURE = "Invalid email or password"


@dataclass
class LoginResult:
    user: UserRead
    tokens: TokenPair
    advisories: list[str] = field(default_factory=list)


def login_advisories(row: dict, approval: dict | None) -> list[str]:
    """Steps an identity still has to complete before it is active."""
    advisories = []
    if row.get("email_verified_at") is None:
        advisories.append("verify_email")
    if row.get("phone_verified_at") is None:
        advisories.append("verify_phone")
    if row["role"] == Role.AGENT.value and (approval or {}).get("status") != ApprovalStatus.APPROVED.value:
        advisories.append(
            "approval_rejected"
            if (approval or {}).get("status") == ApprovalStatus.REJECTED.value
            else "await_approval"
        )
    return advisories


class LoginService:
    def __init__(
        self,
        settings: IdentitySettings,
        hasher: CredentialHasher,
        signer: ClaimSigner,
        audit: AuditSink,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.hasher = hasher
        self.signer = signer
        self.audit = audit
        self._clock = clock

    async def _fail(self, reason: str, client: ClientContext | None, user_id: int | None = None, **details) -> None:
        await record_event(
            self.audit, "login_failed", user_id=user_id, client=client,
            details={"reason": reason, **details},
        )

    async def login(self, email: str, password: str, client: ClientContext | None = None) -> LoginResult:
        now = self._clock()
        row = await identity_repo.find_by_email(email)

        if row is None:
            await self.hasher.verify_async(password, None)
            await self._fail("unknown_email", client)
            raise AuthenticationError(GENERIC_LOGIN_FAILURE)

        locked_until = row.get("locked_until")
        if locked_until is not None and locked_until > now:
            await self.hasher.verify_async(password, None)
            await self._fail("locked", client, row["id"], locked_until=locked_until.isoformat())
            raise AccountLockedError(locked_until)

        if row["status"] in (IdentityStatus.SUSPENDED.value, IdentityStatus.DELETED.value):
            await self.hasher.verify_async(password, None)
            await self._fail(row["status"], client, row["id"])
            raise AuthenticationError(GENERIC_LOGIN_FAILURE)

        if not await self.hasher.verify_async(password, row["password_hash"]):
            attempts, new_lock = await identity_repo.bump_failed_logins(
                row["id"],
                threshold=self.settings.lockout_threshold,
                lock_for=timedelta(minutes=self.settings.lockout_minutes),
                now=now,
            )
            await self._fail("bad_password", client, row["id"], attempts=attempts)
            if new_lock is not None:
                logger.warning("Identity %s locked until %s", row["id"], new_lock.isoformat())
                await record_event(
                    self.audit, "login_lockout", user_id=row["id"], client=client,
                    details={"locked_until": new_lock.isoformat(), "attempts": attempts},
                )
            raise AuthenticationError(GENERIC_LOGIN_FAILURE)

        approval = None
        if row["role"] == Role.AGENT.value:
            approval = await approval_repo.get_latest_approval(row["id"])
        advisories = login_advisories(row, approval)
        if self.settings.require_verified_login and row["status"] != IdentityStatus.ACTIVE.value:
            await self._fail("not_active", client, row["id"], advisories=advisories)
            raise AuthenticationError("Account is not active yet: " + ", ".join(advisories))

        await identity_repo.reset_failed_logins(row["id"], now=now)
        await self._upgrade_hash_if_needed(row, password)

        try:
            tokens = self.signer.mint(row)
        except Exception as exc:
            logger.error("Token issuance failed for identity %s: %s", row["id"], exc)
            raise InternalError("Could not issue session tokens") from exc
        if self.settings.refresh_rotation == "single_use":
            await identity_repo.record_refresh_jti(tokens.refresh_jti, row["id"], tokens.refresh_expires_at)

        await record_event(
            self.audit, "login", user_id=row["id"], client=client,
            details={"role": row["role"], "advisories": advisories},
        )
        fresh = await identity_repo.find_by_id(row["id"])
        return LoginResult(user=UserRead.from_row(fresh, approval), tokens=tokens, advisories=advisories)

    async def _upgrade_hash_if_needed(self, row: dict, password: str) -> None:
        old_hash = row["password_hash"]
        if not self.hasher.needs_rehash(old_hash):
            return
        try:
            new_hash = await self.hasher.hash_async(password)
            if await identity_repo.upgrade_hash(row["id"], old_hash, new_hash):
                logger.info("Upgraded password hash of identity %s", row["id"])
        except Exception as exc:
            logger.warning("Password hash upgrade failed for identity %s: %s", row["id"], exc)
