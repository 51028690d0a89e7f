"""
Tests for the identity store contract (in-memory implementation).

Uniqueness, single-use verification secrets, lockout counter, reset token
expiry, token_version bumps, activation and soft delete.
"""
import asyncio
from datetime import timedelta

import pytest

from realty_identity.db.repositories import approval_repo, identity_repo
from realty_identity.exceptions import ConflictError, DuplicateError, NotFoundError
from realty_identity.models.common import utc_now
from realty_identity.models.enums import (
    ApprovalDecision,
    RedeemOutcome,
    VerificationOutcome,
)


def candidate(**overrides) -> dict:
    data = {
        "name": "Anjali Menon",
        "email": "a@x.io",
        "phone": "+911234567890",
        "password_hash": "$argon2id$placeholder",
        "role": "user",
        "status": "pending_verification",
        "email_verification_token": "email-token-" + "x" * 40,
        "phone_verification_code": "123456",
    }
    data.update(overrides)
    return data


def agent_candidate(**overrides) -> dict:
    data = candidate(
        email="agent@x.io", phone="+919812345678", role="agent", status="pending_approval",
        email_verification_token="agent-token-" + "y" * 40, phone_verification_code="654321",
        license_number="LIC-00001", agency_name="Coastal Homes", experience_years=5,
    )
    data.update(overrides)
    return data


class TestUniqueness:
    async def test_concurrent_registrations_with_same_email(self):
        results = await asyncio.gather(
            *[identity_repo.insert_identity(candidate(phone=f"+9112345678{i:02d}")) for i in range(5)],
            return_exceptions=True,
        )

        created = [r for r in results if isinstance(r, dict)]
        duplicates = [r for r in results if isinstance(r, DuplicateError)]
        assert len(created) == 1
        assert len(duplicates) == 4
        assert all(d.field == "email" for d in duplicates)

    async def test_duplicate_phone(self):
        await identity_repo.insert_identity(candidate())

        with pytest.raises(DuplicateError) as exc_info:
            await identity_repo.insert_identity(candidate(email="b@x.io"))
        assert exc_info.value.field == "phone"

    async def test_duplicate_license_for_agents_only(self):
        await identity_repo.insert_identity(agent_candidate(), approval_type="agent_registration")

        with pytest.raises(DuplicateError) as exc_info:
            await identity_repo.insert_identity(
                agent_candidate(email="other@x.io", phone="+919800000000")
            )
        assert exc_info.value.field == "license_number"

    async def test_agent_insert_creates_pending_approval(self):
        row = await identity_repo.insert_identity(agent_candidate(), approval_type="agent_registration")

        approval = await approval_repo.get_latest_approval(row["id"])
        assert approval["status"] == "pending"
        assert approval["approval_type"] == "agent_registration"

    async def test_soft_delete_frees_unique_keys(self):
        row = await identity_repo.insert_identity(candidate())
        await identity_repo.soft_delete(row["id"])

        again = await identity_repo.insert_identity(candidate())

        assert again["id"] != row["id"]
        deleted = await identity_repo.find_by_id(row["id"])
        assert deleted["status"] == "deleted"
        assert deleted["token_version"] == row["token_version"] + 1
        assert await identity_repo.find_by_email("a@x.io") == again


class TestVerification:
    async def test_email_token_is_single_use(self):
        row = await identity_repo.insert_identity(candidate())
        token = row["email_verification_token"]

        first = await identity_repo.mark_email_verified(row["id"], token)
        second = await identity_repo.mark_email_verified(row["id"], token)

        assert first == VerificationOutcome.VERIFIED
        assert second == VerificationOutcome.ALREADY_VERIFIED
        assert await identity_repo.find_by_email_token(token) is None
        stored = await identity_repo.find_by_id(row["id"])
        assert stored["email_verification_token"] is None
        assert stored["email_verified_at"] is not None

    async def test_wrong_token_does_not_verify(self):
        row = await identity_repo.insert_identity(candidate())

        outcome = await identity_repo.mark_email_verified(row["id"], "wrong")

        assert outcome == VerificationOutcome.TOKEN_INVALID

    async def test_phone_code_requires_matching_phone(self):
        row = await identity_repo.insert_identity(candidate())

        assert await identity_repo.mark_phone_verified(row["id"], "+910000000000", "123456") == (
            VerificationOutcome.TOKEN_INVALID
        )
        assert await identity_repo.mark_phone_verified(row["id"], row["phone"], "123456") == (
            VerificationOutcome.VERIFIED
        )
        assert await identity_repo.find_by_phone_and_code(row["phone"], "123456") is None

    async def test_user_becomes_active_after_both_channels(self):
        row = await identity_repo.insert_identity(candidate())

        await identity_repo.mark_email_verified(row["id"], row["email_verification_token"])
        assert (await identity_repo.find_by_id(row["id"]))["status"] == "pending_verification"

        await identity_repo.mark_phone_verified(row["id"], row["phone"], "123456")
        assert (await identity_repo.find_by_id(row["id"]))["status"] == "active"

    async def test_agent_needs_approval_to_become_active(self):
        row = await identity_repo.insert_identity(agent_candidate(), approval_type="agent_registration")
        await identity_repo.mark_email_verified(row["id"], row["email_verification_token"])
        await identity_repo.mark_phone_verified(row["id"], row["phone"], "654321")
        assert (await identity_repo.find_by_id(row["id"]))["status"] == "pending_approval"

        approval = await approval_repo.get_latest_approval(row["id"])
        await approval_repo.decide_approval(approval["id"], ApprovalDecision.APPROVE, reviewer_id=99)

        assert (await identity_repo.find_by_id(row["id"]))["status"] == "active"

    async def test_resend_overwrites_pending_token(self):
        row = await identity_repo.insert_identity(candidate())

        assert await identity_repo.set_email_token(row["id"], "fresh-token") is True
        assert await identity_repo.find_by_email_token(row["email_verification_token"]) is None
        assert (await identity_repo.find_by_email_token("fresh-token"))["id"] == row["id"]

        await identity_repo.mark_email_verified(row["id"], "fresh-token")
        assert await identity_repo.set_email_token(row["id"], "later") is False


class TestLockout:
    async def test_counter_locks_at_threshold_and_resets(self):
        row = await identity_repo.insert_identity(candidate())
        now = utc_now()

        results = [
            await identity_repo.bump_failed_logins(row["id"], 5, timedelta(minutes=30), now)
            for _ in range(5)
        ]

        assert [r[0] for r in results] == [1, 2, 3, 4, 5]
        assert all(r[1] is None for r in results[:4])
        assert results[4][1] == now + timedelta(minutes=30)
        stored = await identity_repo.find_by_id(row["id"])
        assert stored["failed_login_attempts"] == 0
        assert stored["locked_until"] == now + timedelta(minutes=30)

    async def test_reset_failed_logins_stamps_last_login(self):
        row = await identity_repo.insert_identity(candidate())
        await identity_repo.bump_failed_logins(row["id"], 5, timedelta(minutes=30))

        await identity_repo.reset_failed_logins(row["id"])

        stored = await identity_repo.find_by_id(row["id"])
        assert stored["failed_login_attempts"] == 0
        assert stored["last_login_at"] is not None


class TestPasswordReset:
    async def test_new_reset_token_replaces_previous(self):
        row = await identity_repo.insert_identity(candidate())
        now = utc_now()
        await identity_repo.issue_reset_token(row["id"], "first", now + timedelta(hours=1), now)
        await identity_repo.issue_reset_token(row["id"], "second", now + timedelta(hours=1), now)

        outcome, _ = await identity_repo.redeem_reset_token("first", "new-hash", now)

        assert outcome == RedeemOutcome.NOT_FOUND

    async def test_redeem_sets_password_and_bumps_version(self):
        row = await identity_repo.insert_identity(candidate())
        now = utc_now()
        await identity_repo.issue_reset_token(row["id"], "tok", now + timedelta(hours=1), now)

        outcome, updated = await identity_repo.redeem_reset_token("tok", "new-hash", now)

        assert outcome == RedeemOutcome.REDEEMED
        assert updated["password_hash"] == "new-hash"
        assert updated["token_version"] == row["token_version"] + 1
        assert updated["password_reset_token"] is None
        assert (await identity_repo.redeem_reset_token("tok", "again", now))[0] == RedeemOutcome.NOT_FOUND

    async def test_expiry_instant_is_rejected(self):
        row = await identity_repo.insert_identity(candidate())
        now = utc_now()
        expires = now + timedelta(hours=1)
        await identity_repo.issue_reset_token(row["id"], "tok", expires, now)

        outcome, _ = await identity_repo.redeem_reset_token("tok", "new-hash", expires)

        assert outcome == RedeemOutcome.EXPIRED

    async def test_set_password_clears_lockout(self):
        row = await identity_repo.insert_identity(candidate())
        for _ in range(5):
            await identity_repo.bump_failed_logins(row["id"], 5, timedelta(minutes=30))

        version = await identity_repo.set_password(row["id"], "h2")

        stored = await identity_repo.find_by_id(row["id"])
        assert version == row["token_version"] + 1
        assert stored["locked_until"] is None


class TestSessionsAndAdmin:
    async def test_refresh_jti_consumed_once(self):
        row = await identity_repo.insert_identity(candidate())
        await identity_repo.record_refresh_jti("jti-1", row["id"], utc_now() + timedelta(days=1))

        assert await identity_repo.consume_refresh_jti("jti-1", row["id"]) is True
        assert await identity_repo.consume_refresh_jti("jti-1", row["id"]) is False
        assert await identity_repo.consume_refresh_jti("unknown", row["id"]) is False

    async def test_suspend_bumps_version_and_reinstate_rederives_status(self):
        row = await identity_repo.insert_identity(candidate())

        suspended = await identity_repo.set_status(row["id"], "suspended")
        assert suspended["token_version"] == row["token_version"] + 1

        reinstated = await identity_repo.reinstate(row["id"])
        assert reinstated["status"] == "pending_verification"

    async def test_decide_twice_conflicts(self):
        row = await identity_repo.insert_identity(agent_candidate(), approval_type="agent_registration")
        approval = await approval_repo.get_latest_approval(row["id"])
        await approval_repo.decide_approval(approval["id"], ApprovalDecision.REJECT, reviewer_id=1)

        with pytest.raises(ConflictError):
            await approval_repo.decide_approval(approval["id"], ApprovalDecision.APPROVE, reviewer_id=1)
        with pytest.raises(NotFoundError):
            await approval_repo.decide_approval(999, ApprovalDecision.APPROVE, reviewer_id=1)
