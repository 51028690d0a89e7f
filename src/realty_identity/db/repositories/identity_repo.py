"""
realty_identity/db/repositories/identity_repo.py — Identity repository (PostgreSQL).

Single owner of identity persistence. Every operation that touches an
invariant (uniqueness, single-use verification secrets, lockout counter,
reset token, token_version) runs inside one SERIALIZABLE transaction
(``realty_identity.database.serializable``).

Rows are returned as plain ``dict`` copies; callers never hold live records.
The in-memory implementation with the same surface lives in
``realty_identity.memory_store``.
"""

from __future__ import annotations

import hmac
from datetime import datetime, timedelta

import asyncpg

from realty_identity.database import get_connection, serializable
from realty_identity.exceptions import DuplicateError, NotFoundError
from realty_identity.models.common import utc_now
from realty_identity.models.enums import (
    ApprovalStatus,
    IdentityStatus,
    RedeemOutcome,
    Role,
    VerificationOutcome,
)

_UNIQUE_FIELDS = ("email", "phone", "license_number")

PREAPPROVED_NOTE = "Created by an administrator"


# ═══════════════════════════════════════════════════════════════════════════
# STATUS DERIVATION (activation rule)
# ═══════════════════════════════════════════════════════════════════════════


def derive_status(row: dict, approval_status: str | None) -> str:
    """
    Status an identity must hold given its verification and approval state.

    Users are active once email and phone are verified; agents additionally
    need an approved approval record. Suspended and deleted are sticky.
    """
    current = row["status"]
    if current in (IdentityStatus.SUSPENDED.value, IdentityStatus.DELETED.value):
        return current
    verified = row.get("email_verified_at") is not None and row.get("phone_verified_at") is not None
    role = row["role"]
    if role == Role.ADMIN.value:
        return IdentityStatus.ACTIVE.value
    if role == Role.AGENT.value and approval_status != ApprovalStatus.APPROVED.value:
        return IdentityStatus.PENDING_APPROVAL.value
    return IdentityStatus.ACTIVE.value if verified else IdentityStatus.PENDING_VERIFICATION.value


async def apply_activation(conn: asyncpg.Connection, identity_id: int, now: datetime) -> str:
    """Re-evaluates the status of ``identity_id`` inside the caller's transaction."""
    row = await conn.fetchrow("SELECT * FROM identities WHERE id = $1 FOR UPDATE", identity_id)
    approval_status = await conn.fetchval(
        """
        SELECT status FROM pending_approvals
        WHERE identity_id = $1 ORDER BY submitted_at DESC, id DESC LIMIT 1
        """,
        identity_id,
    )
    new_status = derive_status(dict(row), approval_status)
    if new_status != row["status"]:
        await conn.execute(
            "UPDATE identities SET status = $1, updated_at = $2 WHERE id = $3",
            new_status, now, identity_id,
        )
    return new_status


def _field_from_constraint(constraint: str | None) -> str:
    for field in _UNIQUE_FIELDS:
        if constraint and constraint.endswith(field):
            return field
    return "email"


# ═══════════════════════════════════════════════════════════════════════════
# CREATE
# ═══════════════════════════════════════════════════════════════════════════


async def insert_identity(
    candidate: dict,
    approval_type: str | None = None,
    now: datetime | None = None,
    approved_by: int | None = None,
) -> dict:
    """
    Checks the three uniqueness predicates and inserts the identity.

    When ``approval_type`` is given, the approval record is inserted in the
    same transaction: pending, or already approved by ``approved_by``.
    Raises ``DuplicateError(field)`` and rolls back on conflict.
    """
    now = now or utc_now()

    async def work(conn: asyncpg.Connection) -> dict:
        if await conn.fetchval(
            "SELECT 1 FROM identities WHERE email = $1 AND deleted_at IS NULL",
            candidate["email"],
        ):
            raise DuplicateError("email")
        if await conn.fetchval(
            "SELECT 1 FROM identities WHERE phone = $1 AND deleted_at IS NULL",
            candidate["phone"],
        ):
            raise DuplicateError("phone")
        if candidate.get("role") == Role.AGENT.value and await conn.fetchval(
            """
            SELECT 1 FROM identities
            WHERE license_number = $1 AND role = 'agent' AND deleted_at IS NULL
            """,
            candidate.get("license_number"),
        ):
            raise DuplicateError("license_number")

        row = await conn.fetchrow(
            """
            INSERT INTO identities (
                name, email, phone, password_hash, role, status,
                email_verification_token, phone_verification_code,
                email_verified_at, phone_verified_at,
                license_number, agency_name, experience_years,
                commission_rate, specialization, bio,
                created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                      $11, $12, $13, $14, $15, $16, $17, $17)
            RETURNING *
            """,
            candidate["name"], candidate["email"], candidate["phone"],
            candidate["password_hash"], candidate["role"], candidate["status"],
            candidate.get("email_verification_token"), candidate.get("phone_verification_code"),
            candidate.get("email_verified_at"), candidate.get("phone_verified_at"),
            candidate.get("license_number"), candidate.get("agency_name"),
            candidate.get("experience_years"), candidate.get("commission_rate"),
            candidate.get("specialization"), candidate.get("bio"),
            now,
        )
        if approval_type and approved_by is not None:
            await conn.execute(
                """
                INSERT INTO pending_approvals (
                    identity_id, approval_type, status, submitted_at,
                    reviewer_id, decided_at, notes
                ) VALUES ($1, $2, 'approved', $3, $4, $3, $5)
                """,
                row["id"], approval_type, now, approved_by, PREAPPROVED_NOTE,
            )
        elif approval_type:
            await conn.execute(
                """
                INSERT INTO pending_approvals (identity_id, approval_type, status, submitted_at)
                VALUES ($1, $2, 'pending', $3)
                """,
                row["id"], approval_type, now,
            )
        return dict(row)

    try:
        return await serializable(work)
    except asyncpg.exceptions.UniqueViolationError as exc:
        raise DuplicateError(_field_from_constraint(exc.constraint_name)) from exc


# ═══════════════════════════════════════════════════════════════════════════
# LOOKUPS
# ═══════════════════════════════════════════════════════════════════════════


async def _fetch_one(query: str, *args) -> dict | None:
    async with get_connection() as conn:
        row = await conn.fetchrow(query, *args)
        return dict(row) if row else None


async def find_by_id(identity_id: int) -> dict | None:
    """Identity by id (deleted identities included, they keep their id)."""
    return await _fetch_one("SELECT * FROM identities WHERE id = $1", identity_id)


async def find_by_email(email: str) -> dict | None:
    return await _fetch_one(
        "SELECT * FROM identities WHERE email = $1 AND deleted_at IS NULL", email
    )


async def find_by_phone(phone: str) -> dict | None:
    return await _fetch_one(
        "SELECT * FROM identities WHERE phone = $1 AND deleted_at IS NULL", phone
    )


async def find_by_email_token(token: str) -> dict | None:
    """Unverified identity holding ``token``."""
    return await _fetch_one(
        """
        SELECT * FROM identities
        WHERE email_verification_token = $1
          AND email_verified_at IS NULL AND deleted_at IS NULL
        """,
        token,
    )


async def find_by_phone_and_code(phone: str, code: str) -> dict | None:
    """Unverified identity with ``phone`` whose pending code equals ``code``."""
    return await _fetch_one(
        """
        SELECT * FROM identities
        WHERE phone = $1 AND phone_verification_code = $2
          AND phone_verified_at IS NULL AND deleted_at IS NULL
        """,
        phone, code,
    )


async def email_exists(email: str) -> bool:
    async with get_connection() as conn:
        found = await conn.fetchval(
            "SELECT 1 FROM identities WHERE email = $1 AND deleted_at IS NULL", email
        )
        return bool(found)


# ═══════════════════════════════════════════════════════════════════════════
# VERIFICATION (single-use compare-and-clear)
# ═══════════════════════════════════════════════════════════════════════════


async def mark_email_verified(
    identity_id: int, token: str, now: datetime | None = None
) -> VerificationOutcome:
    """Sets ``email_verified_at`` and clears the token atomically."""
    now = now or utc_now()

    async def work(conn: asyncpg.Connection) -> VerificationOutcome:
        row = await conn.fetchrow(
            """
            SELECT email_verified_at, email_verification_token FROM identities
            WHERE id = $1 AND deleted_at IS NULL FOR UPDATE
            """,
            identity_id,
        )
        if row is None:
            return VerificationOutcome.TOKEN_INVALID
        if row["email_verified_at"] is not None:
            return VerificationOutcome.ALREADY_VERIFIED
        stored = row["email_verification_token"]
        if not stored or not hmac.compare_digest(stored, token):
            return VerificationOutcome.TOKEN_INVALID
        await conn.execute(
            """
            UPDATE identities
            SET email_verified_at = $1, email_verification_token = NULL, updated_at = $1
            WHERE id = $2
            """,
            now, identity_id,
        )
        await apply_activation(conn, identity_id, now)
        return VerificationOutcome.VERIFIED

    return await serializable(work)


async def mark_phone_verified(
    identity_id: int, phone: str, code: str, now: datetime | None = None
) -> VerificationOutcome:
    """Sets ``phone_verified_at`` and clears the code atomically."""
    now = now or utc_now()

    async def work(conn: asyncpg.Connection) -> VerificationOutcome:
        row = await conn.fetchrow(
            """
            SELECT phone, phone_verified_at, phone_verification_code FROM identities
            WHERE id = $1 AND deleted_at IS NULL FOR UPDATE
            """,
            identity_id,
        )
        if row is None or row["phone"] != phone:
            return VerificationOutcome.TOKEN_INVALID
        if row["phone_verified_at"] is not None:
            return VerificationOutcome.ALREADY_VERIFIED
        stored = row["phone_verification_code"]
        if not stored or not hmac.compare_digest(stored, code):
            return VerificationOutcome.TOKEN_INVALID
        await conn.execute(
            """
            UPDATE identities
            SET phone_verified_at = $1, phone_verification_code = NULL, updated_at = $1
            WHERE id = $2
            """,
            now, identity_id,
        )
        await apply_activation(conn, identity_id, now)
        return VerificationOutcome.VERIFIED

    return await serializable(work)


async def set_email_token(identity_id: int, token: str) -> bool:
    """Overwrites the pending email token; False when already verified."""
    async with get_connection() as conn:
        updated = await conn.fetchval(
            """
            UPDATE identities SET email_verification_token = $1, updated_at = NOW()
            WHERE id = $2 AND email_verified_at IS NULL AND deleted_at IS NULL
            RETURNING id
            """,
            token, identity_id,
        )
        return updated is not None


async def set_phone_code(identity_id: int, code: str) -> bool:
    """Overwrites the pending phone code; False when already verified."""
    async with get_connection() as conn:
        updated = await conn.fetchval(
            """
            UPDATE identities SET phone_verification_code = $1, updated_at = NOW()
            WHERE id = $2 AND phone_verified_at IS NULL AND deleted_at IS NULL
            RETURNING id
            """,
            code, identity_id,
        )
        return updated is not None


async def reset_verification(
    identity_id: int,
    email_token: str | None = None,
    phone_code: str | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Clears ``*_verified_at`` of the channels given a fresh secret and stores
    that secret; the status is re-derived in the same transaction.
    """
    now = now or utc_now()

    async def work(conn: asyncpg.Connection) -> dict:
        updated = await conn.fetchval(
            """
            UPDATE identities
            SET email_verified_at = CASE WHEN $1::text IS NULL THEN email_verified_at END,
                email_verification_token = COALESCE($1, email_verification_token),
                phone_verified_at = CASE WHEN $2::text IS NULL THEN phone_verified_at END,
                phone_verification_code = COALESCE($2, phone_verification_code),
                updated_at = $3
            WHERE id = $4 AND deleted_at IS NULL
            RETURNING id
            """,
            email_token, phone_code, now, identity_id,
        )
        if updated is None:
            raise NotFoundError("Identity", str(identity_id))
        await apply_activation(conn, identity_id, now)
        row = await conn.fetchrow("SELECT * FROM identities WHERE id = $1", identity_id)
        return dict(row)

    return await serializable(work)


# ═══════════════════════════════════════════════════════════════════════════
# LOGIN STATE
# ═══════════════════════════════════════════════════════════════════════════


async def bump_failed_logins(
    identity_id: int,
    threshold: int,
    lock_for: timedelta,
    now: datetime | None = None,
) -> tuple[int, datetime | None]:
    """
    Increments the failed-login counter.

    Reaching ``threshold`` sets ``locked_until = now + lock_for`` and resets
    the stored counter in the same transaction. Returns the attempt count
    that was reached and the new ``locked_until`` (None if not locked).
    """
    now = now or utc_now()

    async def work(conn: asyncpg.Connection) -> tuple[int, datetime | None]:
        current = await conn.fetchval(
            "SELECT failed_login_attempts FROM identities WHERE id = $1 FOR UPDATE",
            identity_id,
        )
        if current is None:
            raise NotFoundError("Identity", str(identity_id))
        attempts = current + 1
        locked_until = None
        stored = attempts
        if attempts >= threshold:
            locked_until = now + lock_for
            stored = 0
        await conn.execute(
            """
            UPDATE identities
            SET failed_login_attempts = $1,
                locked_until = COALESCE($2, locked_until),
                updated_at = $3
            WHERE id = $4
            """,
            stored, locked_until, now, identity_id,
        )
        return attempts, locked_until

    return await serializable(work)


async def reset_failed_logins(
    identity_id: int, now: datetime | None = None, touch_login: bool = True
) -> None:
    """Clears failure state; on the login path also stamps ``last_login_at``."""
    now = now or utc_now()
    async with get_connection() as conn:
        await conn.execute(
            """
            UPDATE identities
            SET failed_login_attempts = 0, locked_until = NULL,
                last_login_at = CASE WHEN $2 THEN $1 ELSE last_login_at END,
                updated_at = $1
            WHERE id = $3
            """,
            now, touch_login, identity_id,
        )


# ═══════════════════════════════════════════════════════════════════════════
# CREDENTIALS & SESSIONS
# ═══════════════════════════════════════════════════════════════════════════


_SET_PASSWORD_SQL = """
    UPDATE identities
    SET password_hash = $1,
        token_version = token_version + 1,
        password_reset_token = NULL,
        password_reset_expires = NULL,
        failed_login_attempts = 0,
        locked_until = NULL,
        updated_at = $2
    WHERE id = $3
    RETURNING *
"""


async def set_password(identity_id: int, new_hash: str, now: datetime | None = None) -> int:
    """Stores a new hash, bumps ``token_version`` and clears reset/lockout state."""
    now = now or utc_now()

    async def work(conn: asyncpg.Connection) -> int:
        row = await conn.fetchrow(_SET_PASSWORD_SQL, new_hash, now, identity_id)
        if row is None:
            raise NotFoundError("Identity", str(identity_id))
        return row["token_version"]

    return await serializable(work)


async def upgrade_hash(identity_id: int, old_hash: str, new_hash: str) -> bool:
    """Replaces a legacy hash without touching sessions; no-op if the hash changed meanwhile."""
    async with get_connection() as conn:
        updated = await conn.fetchval(
            """
            UPDATE identities SET password_hash = $1
            WHERE id = $2 AND password_hash = $3
            RETURNING id
            """,
            new_hash, identity_id, old_hash,
        )
        return updated is not None


async def issue_reset_token(
    identity_id: int, token: str, expires: datetime, now: datetime | None = None
) -> None:
    """Stores a reset token, replacing any outstanding one."""
    now = now or utc_now()

    async def work(conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            UPDATE identities
            SET password_reset_token = $1, password_reset_expires = $2, updated_at = $3
            WHERE id = $4
            """,
            token, expires, now, identity_id,
        )

    await serializable(work)


async def redeem_reset_token(
    token: str, new_hash: str, now: datetime | None = None
) -> tuple[RedeemOutcome, dict | None]:
    """
    Redeems a reset token: requires ``password_reset_expires > now``, then
    applies ``set_password`` semantics and clears the reset fields.
    """
    now = now or utc_now()

    async def work(conn: asyncpg.Connection) -> tuple[RedeemOutcome, dict | None]:
        row = await conn.fetchrow(
            """
            SELECT id, password_reset_expires FROM identities
            WHERE password_reset_token = $1 AND deleted_at IS NULL FOR UPDATE
            """,
            token,
        )
        if row is None:
            return RedeemOutcome.NOT_FOUND, None
        expires = row["password_reset_expires"]
        if expires is None or not expires > now:
            return RedeemOutcome.EXPIRED, None
        updated = await conn.fetchrow(_SET_PASSWORD_SQL, new_hash, now, row["id"])
        return RedeemOutcome.REDEEMED, dict(updated)

    return await serializable(work)


async def bump_token_version(identity_id: int) -> int:
    """Invalidates every outstanding access and refresh token of the identity."""

    async def work(conn: asyncpg.Connection) -> int:
        version = await conn.fetchval(
            """
            UPDATE identities SET token_version = token_version + 1, updated_at = NOW()
            WHERE id = $1 RETURNING token_version
            """,
            identity_id,
        )
        if version is None:
            raise NotFoundError("Identity", str(identity_id))
        return version

    return await serializable(work)


async def record_refresh_jti(jti: str, identity_id: int, expires_at: datetime) -> None:
    """Registers a minted refresh token (single-use rotation mode)."""
    async with get_connection() as conn:
        await conn.execute(
            "INSERT INTO refresh_tokens (jti, identity_id, expires_at) VALUES ($1, $2, $3)",
            jti, identity_id, expires_at,
        )


async def consume_refresh_jti(jti: str, identity_id: int, now: datetime | None = None) -> bool:
    """Marks a refresh token as used; False if unknown, expired or already used."""
    now = now or utc_now()

    async def work(conn: asyncpg.Connection) -> bool:
        consumed = await conn.fetchval(
            """
            UPDATE refresh_tokens SET consumed_at = $1
            WHERE jti = $2 AND identity_id = $3
              AND consumed_at IS NULL AND expires_at > $1
            RETURNING jti
            """,
            now, jti, identity_id,
        )
        return consumed is not None

    return await serializable(work)


# ═══════════════════════════════════════════════════════════════════════════
# ADMINISTRATIVE STATUS
# ═══════════════════════════════════════════════════════════════════════════


async def set_status(identity_id: int, status: str, now: datetime | None = None) -> dict:
    """Sets an explicit status (suspension). Suspension also bumps token_version."""
    now = now or utc_now()

    async def work(conn: asyncpg.Connection) -> dict:
        row = await conn.fetchrow(
            """
            UPDATE identities
            SET status = $1,
                token_version = token_version + CASE WHEN $1 = 'suspended' THEN 1 ELSE 0 END,
                updated_at = $2
            WHERE id = $3 AND deleted_at IS NULL
            RETURNING *
            """,
            status, now, identity_id,
        )
        if row is None:
            raise NotFoundError("Identity", str(identity_id))
        return dict(row)

    return await serializable(work)


async def reinstate(identity_id: int, now: datetime | None = None) -> dict:
    """Lifts a suspension; the status is re-derived from verification/approval state."""
    now = now or utc_now()

    async def work(conn: asyncpg.Connection) -> dict:
        updated = await conn.fetchval(
            """
            UPDATE identities SET status = 'pending_verification', updated_at = $1
            WHERE id = $2 AND deleted_at IS NULL AND status = 'suspended'
            RETURNING id
            """,
            now, identity_id,
        )
        if updated is None:
            raise NotFoundError("Suspended identity", str(identity_id))
        await apply_activation(conn, identity_id, now)
        row = await conn.fetchrow("SELECT * FROM identities WHERE id = $1", identity_id)
        return dict(row)

    return await serializable(work)


async def soft_delete(identity_id: int, now: datetime | None = None) -> None:
    """Terminal state: keeps the id, frees the unique keys, revokes every session."""
    now = now or utc_now()

    async def work(conn: asyncpg.Connection) -> None:
        updated = await conn.fetchval(
            """
            UPDATE identities
            SET status = 'deleted', deleted_at = $1,
                token_version = token_version + 1,
                email_verification_token = NULL, phone_verification_code = NULL,
                password_reset_token = NULL, password_reset_expires = NULL,
                updated_at = $1
            WHERE id = $2 AND deleted_at IS NULL
            RETURNING id
            """,
            now, identity_id,
        )
        if updated is None:
            raise NotFoundError("Identity", str(identity_id))

    await serializable(work)
