"""
realty_identity/services/session_service.py — Token validation, refresh, logout.

Every signed token carries ``ver``; it is accepted only while it equals the
identity's current ``token_version``. Bumping the counter (password change,
reset, forced logout, suspension, deletion) revokes all outstanding tokens.

Refresh rotation (``refresh_rotation``):
    • reuse      — a refresh token stays valid until expiry or version bump
    • single_use — each refresh jti is recorded at mint and consumed once
"""

from __future__ import annotations

import logging

from realty_identity.config import IdentitySettings
from realty_identity.db.repositories import identity_repo
from realty_identity.exceptions import (
    AuthenticationError,
    RevokedTokenError,
    ValidationError,
    WeakPasswordError,
)
from realty_identity.models.audit import ClientContext
from realty_identity.models.enums import IdentityStatus, TokenType
from realty_identity.models.policy import password_policy_violations
from realty_identity.models.tokens import Claims, TokenPair
from realty_identity.services.audit_logger import AuditSink, record_event
from realty_identity.services.claim_signer import ClaimSigner
from realty_identity.services.password_hasher import CredentialHasher

logger = logging.getLogger(__name__)

_REVOKED_STATUSES = (IdentityStatus.SUSPENDED.value, IdentityStatus.DELETED.value)


class SessionService:
    def __init__(
        self,
        settings: IdentitySettings,
        signer: ClaimSigner,
        hasher: CredentialHasher,
        audit: AuditSink,
    ):
        self.settings = settings
        self.signer = signer
        self.hasher = hasher
        self.audit = audit

    @property
    def single_use(self) -> bool:
        return self.settings.refresh_rotation == "single_use"

    async def _load_current(self, claims: Claims) -> dict:
        row = await identity_repo.find_by_id(claims.sub)
        if row is None:
            raise AuthenticationError("Unknown token subject")
        if row["token_version"] != claims.ver or row["status"] in _REVOKED_STATUSES:
            raise RevokedTokenError()
        return row

    async def _mint(self, row: dict) -> TokenPair:
        tokens = self.signer.mint(row)
        if self.single_use:
            await identity_repo.record_refresh_jti(tokens.refresh_jti, row["id"], tokens.refresh_expires_at)
        return tokens

    async def authenticate_access(self, token: str) -> dict:
        """Bearer validation: returns the identity row of a current access token."""
        claims = self.signer.verify(token, TokenType.ACCESS)
        return await self._load_current(claims)

    async def refresh(self, refresh_token: str, client: ClientContext | None = None) -> TokenPair:
        claims = self.signer.verify(refresh_token, TokenType.REFRESH)
        row = await self._load_current(claims)
        if self.single_use:
            if not claims.jti or not await identity_repo.consume_refresh_jti(claims.jti, row["id"]):
                await record_event(
                    self.audit, "token_refresh_replay", user_id=row["id"], client=client,
                )
                raise RevokedTokenError("Refresh token has already been used")
        tokens = await self._mint(row)
        await record_event(self.audit, "token_refresh", user_id=row["id"], client=client)
        return tokens

    async def logout(self, identity: dict, client: ClientContext | None = None) -> None:
        """Clients discard their tokens; strict mode also revokes them server-side."""
        if self.settings.strict_logout:
            await identity_repo.bump_token_version(identity["id"])
        await record_event(
            self.audit, "logout", user_id=identity["id"], client=client,
            details={"strict": self.settings.strict_logout},
        )

    async def force_logout_all(
        self, identity_id: int, actor_id: int | None = None, client: ClientContext | None = None
    ) -> int:
        """Revokes every session of ``identity_id``; returns the new token_version."""
        version = await identity_repo.bump_token_version(identity_id)
        await record_event(
            self.audit, "forced_logout", user_id=actor_id, client=client,
            details={"identity_id": identity_id, "token_version": version},
        )
        return version

    async def change_password(
        self,
        identity: dict,
        current_password: str,
        new_password: str,
        client: ClientContext | None = None,
    ) -> TokenPair:
        """
        Replaces the password of an authenticated identity.

        Every other session is revoked; the returned pair is bound to the new
        token_version.
        """
        if not await self.hasher.verify_async(current_password, identity["password_hash"]):
            await record_event(
                self.audit, "password_change_failed", user_id=identity["id"], client=client,
            )
            raise AuthenticationError("Current password is incorrect")
        violations = password_policy_violations(new_password)
        if violations:
            raise WeakPasswordError(violations)
        if new_password == current_password:
            raise ValidationError(
                "New password must differ from the current password",
                details={"field": "newPassword"},
            )

        new_hash = await self.hasher.hash_async(new_password)
        await identity_repo.set_password(identity["id"], new_hash)
        row = await identity_repo.find_by_id(identity["id"])
        tokens = await self._mint(row)
        await record_event(
            self.audit, "password_change", user_id=row["id"], client=client,
            details={"token_version": row["token_version"]},
        )
        return tokens
