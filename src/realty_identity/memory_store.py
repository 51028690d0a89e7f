"""
═══════════════════════════════════════════════════════════════════════════════
Identity — In-memory store (replaces the identity DB in development and tests)
═══════════════════════════════════════════════════════════════════════════════

In-memory implementations of ``identity_repo`` and ``approval_repo`` plus
``activate_identity_memory_store()`` which swaps them in.

No function awaits between its read and its write, so every operation is
atomic on the event loop; that gives the same single-transaction guarantees
as the SERIALIZABLE PostgreSQL implementation within one process.
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta
from itertools import count

from realty_identity.db.repositories.identity_repo import PREAPPROVED_NOTE, derive_status
from realty_identity.exceptions import ConflictError, DuplicateError, NotFoundError
from realty_identity.models.common import utc_now
from realty_identity.models.enums import (
    ApprovalDecision,
    ApprovalStatus,
    IdentityStatus,
    RedeemOutcome,
    Role,
    VerificationOutcome,
)

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════════════
# Data of the identity domain
# ═══════════════════════════════════════════════════════════════════════════════
_identities: dict[int, dict] = {}
_approvals: dict[int, dict] = {}
_refresh_tokens: dict[str, dict] = {}
_identity_ids = count(1)
_approval_ids = count(1)


def reset_identity_memory_store() -> None:
    """Drops all in-memory data (test isolation)."""
    global _identity_ids, _approval_ids
    _identities.clear()
    _approvals.clear()
    _refresh_tokens.clear()
    _identity_ids = count(1)
    _approval_ids = count(1)


def _live() -> list[dict]:
    return [i for i in _identities.values() if i["deleted_at"] is None]


def _copy(row: dict | None) -> dict | None:
    return dict(row) if row is not None else None


def _get_live(identity_id: int) -> dict:
    row = _identities.get(identity_id)
    if row is None or row["deleted_at"] is not None:
        raise NotFoundError("Identity", str(identity_id))
    return row


def _latest_approval(identity_id: int) -> dict | None:
    mine = [a for a in _approvals.values() if a["identity_id"] == identity_id]
    if not mine:
        return None
    return max(mine, key=lambda a: (a["submitted_at"], a["id"]))


def _apply_activation(identity_id: int, now: datetime) -> str:
    row = _identities[identity_id]
    approval = _latest_approval(identity_id)
    new_status = derive_status(row, approval["status"] if approval else None)
    if new_status != row["status"]:
        row["status"] = new_status
        row["updated_at"] = now
    return new_status


def _new_approval(
    identity_id: int, approval_type: str, now: datetime, approved_by: int | None = None,
) -> dict:
    approval = {
        "id": next(_approval_ids), "identity_id": identity_id,
        "approval_type": approval_type, "status": ApprovalStatus.PENDING.value,
        "submitted_at": now, "reviewer_id": None, "decided_at": None, "notes": None,
    }
    if approved_by is not None:
        approval.update(
            status=ApprovalStatus.APPROVED.value, reviewer_id=approved_by,
            decided_at=now, notes=PREAPPROVED_NOTE,
        )
    _approvals[approval["id"]] = approval
    return approval


# ═══════════════════════════════════════════════════════════════════════════════
# identity_repo in-memory
# ═══════════════════════════════════════════════════════════════════════════════

async def insert_identity(
    candidate: dict,
    approval_type: str | None = None,
    now: datetime | None = None,
    approved_by: int | None = None,
) -> dict:
    """Creates an identity in memory after the uniqueness checks."""
    now = now or utc_now()
    live = _live()
    if any(i["email"] == candidate["email"] for i in live):
        raise DuplicateError("email")
    if any(i["phone"] == candidate["phone"] for i in live):
        raise DuplicateError("phone")
    if candidate.get("role") == Role.AGENT.value and any(
        i["role"] == Role.AGENT.value and i["license_number"] == candidate.get("license_number")
        for i in live
    ):
        raise DuplicateError("license_number")

    identity_id = next(_identity_ids)
    row = {
        "id": identity_id,
        "name": candidate["name"], "email": candidate["email"], "phone": candidate["phone"],
        "password_hash": candidate["password_hash"],
        "role": candidate["role"], "status": candidate["status"],
        "email_verified_at": candidate.get("email_verified_at"),
        "phone_verified_at": candidate.get("phone_verified_at"),
        "email_verification_token": candidate.get("email_verification_token"),
        "phone_verification_code": candidate.get("phone_verification_code"),
        "password_reset_token": None, "password_reset_expires": None,
        "failed_login_attempts": 0, "locked_until": None, "token_version": 1,
        "license_number": candidate.get("license_number"),
        "agency_name": candidate.get("agency_name"),
        "experience_years": candidate.get("experience_years"),
        "commission_rate": candidate.get("commission_rate"),
        "specialization": candidate.get("specialization"),
        "bio": candidate.get("bio"),
        "created_at": now, "updated_at": now, "last_login_at": None, "deleted_at": None,
    }
    _identities[identity_id] = row
    if approval_type:
        _new_approval(identity_id, approval_type, now, approved_by)
    logger.info("Identity memory store: created %s <%s>", row["role"], row["email"])
    return _copy(row)


async def find_by_id(identity_id: int) -> dict | None:
    return _copy(_identities.get(identity_id))


async def find_by_email(email: str) -> dict | None:
    return _copy(next((i for i in _live() if i["email"] == email), None))


async def find_by_phone(phone: str) -> dict | None:
    return _copy(next((i for i in _live() if i["phone"] == phone), None))


async def find_by_email_token(token: str) -> dict | None:
    return _copy(next(
        (i for i in _live()
         if i["email_verification_token"] == token and i["email_verified_at"] is None),
        None,
    ))


async def find_by_phone_and_code(phone: str, code: str) -> dict | None:
    return _copy(next(
        (i for i in _live()
         if i["phone"] == phone and i["phone_verification_code"] == code
         and i["phone_verified_at"] is None),
        None,
    ))


async def email_exists(email: str) -> bool:
    return any(i["email"] == email for i in _live())


async def mark_email_verified(
    identity_id: int, token: str, now: datetime | None = None,
) -> VerificationOutcome:
    now = now or utc_now()
    row = _identities.get(identity_id)
    if row is None or row["deleted_at"] is not None:
        return VerificationOutcome.TOKEN_INVALID
    if row["email_verified_at"] is not None:
        return VerificationOutcome.ALREADY_VERIFIED
    stored = row["email_verification_token"]
    if not stored or not hmac.compare_digest(stored, token):
        return VerificationOutcome.TOKEN_INVALID
    row["email_verified_at"] = now
    row["email_verification_token"] = None
    row["updated_at"] = now
    _apply_activation(identity_id, now)
    return VerificationOutcome.VERIFIED


async def mark_phone_verified(
    identity_id: int, phone: str, code: str, now: datetime | None = None,
) -> VerificationOutcome:
    now = now or utc_now()
    row = _identities.get(identity_id)
    if row is None or row["deleted_at"] is not None or row["phone"] != phone:
        return VerificationOutcome.TOKEN_INVALID
    if row["phone_verified_at"] is not None:
        return VerificationOutcome.ALREADY_VERIFIED
    stored = row["phone_verification_code"]
    if not stored or not hmac.compare_digest(stored, code):
        return VerificationOutcome.TOKEN_INVALID
    row["phone_verified_at"] = now
    row["phone_verification_code"] = None
    row["updated_at"] = now
    _apply_activation(identity_id, now)
    return VerificationOutcome.VERIFIED


async def set_email_token(identity_id: int, token: str) -> bool:
    row = _identities.get(identity_id)
    if row is None or row["deleted_at"] is not None or row["email_verified_at"] is not None:
        return False
    row["email_verification_token"] = token
    row["updated_at"] = utc_now()
    return True


async def set_phone_code(identity_id: int, code: str) -> bool:
    row = _identities.get(identity_id)
    if row is None or row["deleted_at"] is not None or row["phone_verified_at"] is not None:
        return False
    row["phone_verification_code"] = code
    row["updated_at"] = utc_now()
    return True


async def reset_verification(
    identity_id: int,
    email_token: str | None = None,
    phone_code: str | None = None,
    now: datetime | None = None,
) -> dict:
    now = now or utc_now()
    row = _get_live(identity_id)
    if email_token is not None:
        row["email_verified_at"] = None
        row["email_verification_token"] = email_token
    if phone_code is not None:
        row["phone_verified_at"] = None
        row["phone_verification_code"] = phone_code
    row["updated_at"] = now
    _apply_activation(identity_id, now)
    return _copy(row)


async def bump_failed_logins(
    identity_id: int, threshold: int, lock_for: timedelta, now: datetime | None = None,
) -> tuple[int, datetime | None]:
    now = now or utc_now()
    row = _identities.get(identity_id)
    if row is None:
        raise NotFoundError("Identity", str(identity_id))
    attempts = row["failed_login_attempts"] + 1
    locked_until = None
    if attempts >= threshold:
        locked_until = now + lock_for
        row["locked_until"] = locked_until
        row["failed_login_attempts"] = 0
    else:
        row["failed_login_attempts"] = attempts
    row["updated_at"] = now
    return attempts, locked_until


async def reset_failed_logins(
    identity_id: int, now: datetime | None = None, touch_login: bool = True,
) -> None:
    now = now or utc_now()
    row = _identities.get(identity_id)
    if row is None:
        return
    row["failed_login_attempts"] = 0
    row["locked_until"] = None
    if touch_login:
        row["last_login_at"] = now
    row["updated_at"] = now


def _apply_password(row: dict, new_hash: str, now: datetime) -> None:
    row["password_hash"] = new_hash
    row["token_version"] += 1
    row["password_reset_token"] = None
    row["password_reset_expires"] = None
    row["failed_login_attempts"] = 0
    row["locked_until"] = None
    row["updated_at"] = now


async def set_password(identity_id: int, new_hash: str, now: datetime | None = None) -> int:
    now = now or utc_now()
    row = _identities.get(identity_id)
    if row is None:
        raise NotFoundError("Identity", str(identity_id))
    _apply_password(row, new_hash, now)
    return row["token_version"]


async def upgrade_hash(identity_id: int, old_hash: str, new_hash: str) -> bool:
    row = _identities.get(identity_id)
    if row is None or row["password_hash"] != old_hash:
        return False
    row["password_hash"] = new_hash
    return True


async def issue_reset_token(
    identity_id: int, token: str, expires: datetime, now: datetime | None = None,
) -> None:
    row = _identities.get(identity_id)
    if row is None:
        return
    row["password_reset_token"] = token
    row["password_reset_expires"] = expires
    row["updated_at"] = now or utc_now()


async def redeem_reset_token(
    token: str, new_hash: str, now: datetime | None = None,
) -> tuple[RedeemOutcome, dict | None]:
    now = now or utc_now()
    row = next((i for i in _live() if i["password_reset_token"] == token), None)
    if row is None:
        return RedeemOutcome.NOT_FOUND, None
    expires = row["password_reset_expires"]
    if expires is None or not expires > now:
        return RedeemOutcome.EXPIRED, None
    _apply_password(row, new_hash, now)
    return RedeemOutcome.REDEEMED, _copy(row)


async def bump_token_version(identity_id: int) -> int:
    row = _identities.get(identity_id)
    if row is None:
        raise NotFoundError("Identity", str(identity_id))
    row["token_version"] += 1
    row["updated_at"] = utc_now()
    return row["token_version"]


async def record_refresh_jti(jti: str, identity_id: int, expires_at: datetime) -> None:
    _refresh_tokens[jti] = {
        "jti": jti, "identity_id": identity_id, "expires_at": expires_at, "consumed_at": None,
    }


async def consume_refresh_jti(jti: str, identity_id: int, now: datetime | None = None) -> bool:
    now = now or utc_now()
    entry = _refresh_tokens.get(jti)
    if (
        entry is None
        or entry["identity_id"] != identity_id
        or entry["consumed_at"] is not None
        or not entry["expires_at"] > now
    ):
        return False
    entry["consumed_at"] = now
    return True


async def set_status(identity_id: int, status: str, now: datetime | None = None) -> dict:
    now = now or utc_now()
    row = _get_live(identity_id)
    row["status"] = status
    if status == IdentityStatus.SUSPENDED.value:
        row["token_version"] += 1
    row["updated_at"] = now
    return _copy(row)


async def reinstate(identity_id: int, now: datetime | None = None) -> dict:
    now = now or utc_now()
    row = _identities.get(identity_id)
    if row is None or row["deleted_at"] is not None or row["status"] != IdentityStatus.SUSPENDED.value:
        raise NotFoundError("Suspended identity", str(identity_id))
    row["status"] = IdentityStatus.PENDING_VERIFICATION.value
    _apply_activation(identity_id, now)
    row["updated_at"] = now
    return _copy(row)


async def soft_delete(identity_id: int, now: datetime | None = None) -> None:
    now = now or utc_now()
    row = _get_live(identity_id)
    row.update({
        "status": IdentityStatus.DELETED.value, "deleted_at": now,
        "token_version": row["token_version"] + 1,
        "email_verification_token": None, "phone_verification_code": None,
        "password_reset_token": None, "password_reset_expires": None,
        "updated_at": now,
    })


# ═══════════════════════════════════════════════════════════════════════════════
# approval_repo in-memory
# ═══════════════════════════════════════════════════════════════════════════════

async def get_latest_approval(identity_id: int) -> dict | None:
    return _copy(_latest_approval(identity_id))


async def list_pending_approvals(limit: int = 20, offset: int = 0) -> list[dict]:
    pending = sorted(
        (a for a in _approvals.values() if a["status"] == ApprovalStatus.PENDING.value),
        key=lambda a: (a["submitted_at"], a["id"]),
    )
    return [dict(a) for a in pending[offset:offset + limit]]


async def decide_approval(
    approval_id: int,
    decision: ApprovalDecision,
    reviewer_id: int,
    notes: str | None = None,
    now: datetime | None = None,
) -> dict:
    now = now or utc_now()
    approval = _approvals.get(approval_id)
    if approval is None:
        raise NotFoundError("Approval", str(approval_id))
    if approval["status"] != ApprovalStatus.PENDING.value:
        raise ConflictError(
            "Approval has already been decided",
            details={"approval_id": approval_id, "status": approval["status"]},
        )
    approval["status"] = (
        ApprovalStatus.APPROVED.value if decision == ApprovalDecision.APPROVE
        else ApprovalStatus.REJECTED.value
    )
    approval["reviewer_id"] = reviewer_id
    approval["decided_at"] = now
    approval["notes"] = notes
    _apply_activation(approval["identity_id"], now)
    return _copy(approval)


# ═══════════════════════════════════════════════════════════════════════════════
# Activation of the in-memory store (monkey-patching)
# ═══════════════════════════════════════════════════════════════════════════════

_IDENTITY_REPO_FUNCTIONS = (
    "insert_identity", "find_by_id", "find_by_email", "find_by_phone",
    "find_by_email_token", "find_by_phone_and_code",
    "email_exists", "mark_email_verified", "mark_phone_verified",
    "set_email_token", "set_phone_code", "reset_verification",
    "bump_failed_logins", "reset_failed_logins",
    "set_password", "upgrade_hash", "issue_reset_token", "redeem_reset_token",
    "bump_token_version", "record_refresh_jti", "consume_refresh_jti",
    "set_status", "reinstate", "soft_delete",
)

_APPROVAL_REPO_FUNCTIONS = (
    "get_latest_approval",
    "list_pending_approvals", "decide_approval",
)


def activate_identity_memory_store() -> None:
    """
    Replaces the functions of ``realty_identity.db.repositories.*`` with the
    in-memory implementations.

    Called from ``realty_identity.main.lifespan`` when ``identity_store=memory``
    or when the identity DB is unreachable.
    """
    from realty_identity.db.repositories import approval_repo, identity_repo

    module = globals()
    for name in _IDENTITY_REPO_FUNCTIONS:
        setattr(identity_repo, name, module[name])
    for name in _APPROVAL_REPO_FUNCTIONS:
        setattr(approval_repo, name, module[name])

    logger.warning(
        "Identity memory store ACTIVATED: all data is in-memory (lost on restart)."
    )
