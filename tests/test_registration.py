"""Tests for RegistrationService and VerificationService."""
import pytest
from pydantic import ValidationError as PydanticValidationError

from conftest import agent_request, user_request
from realty_identity.db.repositories import approval_repo, identity_repo
from realty_identity.exceptions import (
    AlreadyVerifiedError,
    DuplicateError,
    NotFoundError,
    TokenInvalidError,
    ValidationError,
)


class TestRegister:
    async def test_user_registration_sends_both_verifications(self, container, notifier, audit):
        result = await container.registration.register(user_request())

        assert result.user.status == "pending_verification"
        assert result.user.email_verified is False
        assert result.notifications.email.sent is True
        assert result.notifications.sms.sent is True
        assert result.next_steps == ["verify_email", "verify_phone"]
        assert notifier.emails[0]["to"] == "a@x.io"
        assert notifier.sms[0]["to"] == "+911234567890"
        assert len(audit.of_type("user_registration")) == 1

    async def test_password_is_stored_hashed(self, container):
        result = await container.registration.register(user_request())

        row = await identity_repo.find_by_id(result.user.id)
        assert row["password_hash"].startswith("$argon2id$")
        assert "Abcdef1!" not in row["password_hash"]

    async def test_agent_registration_awaits_approval(self, container):
        result = await container.registration.register(agent_request())

        assert result.user.status == "pending_approval"
        assert result.user.approval_status == "pending"
        assert result.user.license_number == "LIC-00001"
        assert result.next_steps[-1] == "await_approval"
        approval = await approval_repo.get_latest_approval(result.user.id)
        assert approval["status"] == "pending"

    async def test_email_is_normalized(self, container):
        result = await container.registration.register(user_request(email="  Anjali@X.IO "))

        assert result.user.email == "anjali@x.io"

    async def test_duplicate_email_is_audited(self, container, audit):
        await container.registration.register(user_request())

        with pytest.raises(DuplicateError) as exc_info:
            await container.registration.register(user_request(phone="+911111111111"))

        assert exc_info.value.field == "email"
        failed = audit.of_type("user_registration_failed")
        assert failed[0].details == {"reason": "duplicate", "field": "email", "role": "user"}

    async def test_duplicate_license_number(self, container):
        await container.registration.register(agent_request())

        with pytest.raises(DuplicateError) as exc_info:
            await container.registration.register(
                agent_request(email="second@x.io", phone="+919800000001")
            )
        assert exc_info.value.field == "license_number"

    async def test_notifier_failure_does_not_roll_back(self, container, notifier):
        notifier.fail_email = True

        result = await container.registration.register(user_request())

        assert result.notifications.email.sent is False
        assert result.notifications.email.error
        assert result.notifications.sms.sent is True
        assert await identity_repo.find_by_id(result.user.id) is not None

    @pytest.mark.parametrize(
        "overrides",
        [
            {"name": "A"},
            {"phone": "0123"},
            {"password": "abcdefgh"},
            {"email": "not-an-email"},
            {"role": "admin"},
        ],
    )
    def test_invalid_requests_rejected(self, overrides):
        with pytest.raises(PydanticValidationError):
            user_request(**overrides)

    def test_agent_without_profile_rejected(self):
        with pytest.raises(PydanticValidationError):
            user_request(role="agent")

    @pytest.mark.parametrize(
        "password, accepted",
        [
            ("Zz9@" + "a" * 124, True),
            ("Zz9@" + "a" * 125, False),
        ],
    )
    def test_password_length_bounds(self, password, accepted):
        if accepted:
            assert user_request(password=password).password == password
        else:
            with pytest.raises(PydanticValidationError):
                user_request(password=password)

    @pytest.mark.parametrize(
        "field, value, accepted",
        [
            ("license_number", "L" * 4, False),
            ("license_number", "L" * 5, True),
            ("license_number", "L" * 100, True),
            ("license_number", "L" * 101, False),
            ("experience_years", 50, True),
            ("experience_years", 51, False),
            ("commission_rate", "99.99", True),
            ("commission_rate", "100", False),
            ("agency_name", "C", False),
            ("agency_name", "Co", True),
        ],
    )
    def test_agent_profile_bounds(self, field, value, accepted):
        profile = {
            "license_number": "LIC-00001",
            "agency_name": "Coastal Homes",
            "experience_years": 7,
            "commission_rate": "2.50",
            field: value,
        }
        if accepted:
            request = agent_request(agent_profile=profile)
            assert str(getattr(request.agent_profile, field)) == str(value)
        else:
            with pytest.raises(PydanticValidationError):
                agent_request(agent_profile=profile)

    async def test_bootstrap_admin_is_active_and_idempotent(self, container):
        row = await container.registration.ensure_admin("Root", "Root@X.io", "+910000000001", "Adm1n!pass")

        assert row["role"] == "admin"
        assert row["status"] == "active"
        assert row["email"] == "root@x.io"
        assert await container.registration.ensure_admin("Root", "root@x.io", "+910000000001", "Adm1n!pass") is None

    @pytest.mark.parametrize(
        "phone, password, field",
        [
            ("", "Adm1n!pass", "phone"),
            ("0123", "Adm1n!pass", "phone"),
            ("+910000000001", "", "password"),
            ("+910000000001", "adminpass", "password"),
        ],
    )
    async def test_bootstrap_admin_settings_validated(self, container, phone, password, field):
        with pytest.raises(ValidationError) as exc_info:
            await container.registration.ensure_admin("Root", "root@x.io", phone, password)

        assert exc_info.value.details["field"] == field
        assert not await identity_repo.email_exists("root@x.io")


class TestVerify:
    async def test_user_active_after_email_and_phone(self, container, notifier, audit):
        await container.registration.register(user_request())

        after_email = await container.verification.verify_email(notifier.last_email_token("a@x.io"))
        assert after_email.email_verified is True
        assert after_email.status == "pending_verification"

        after_phone = await container.verification.verify_phone(
            "+911234567890", notifier.last_sms_code("+911234567890")
        )
        assert after_phone.status == "active"
        assert [e.event_type for e in audit.events[-2:]] == ["email_verified", "phone_verified"]

    async def test_email_token_is_single_use(self, container, notifier):
        await container.registration.register(user_request())
        token = notifier.last_email_token("a@x.io")
        await container.verification.verify_email(token)

        with pytest.raises(TokenInvalidError):
            await container.verification.verify_email(token)

    async def test_unknown_token_and_wrong_code(self, container):
        await container.registration.register(user_request())

        with pytest.raises(TokenInvalidError):
            await container.verification.verify_email("x" * 43)
        with pytest.raises(TokenInvalidError):
            await container.verification.verify_phone("+911234567890", "000000")

    async def test_agent_stays_pending_approval_after_verification(self, container, notifier):
        await container.registration.register(agent_request())

        await container.verification.verify_email(notifier.last_email_token("agent@x.io"))
        user = await container.verification.verify_phone(
            "+919812345678", notifier.last_sms_code("+919812345678")
        )

        assert user.status == "pending_approval"

    async def test_resend_replaces_token(self, container, notifier):
        await container.registration.register(user_request())
        first = notifier.last_email_token("a@x.io")

        report = await container.verification.resend_email_verification("a@x.io")

        second = notifier.last_email_token("a@x.io")
        assert report.sent is True
        assert first != second
        with pytest.raises(TokenInvalidError):
            await container.verification.verify_email(first)
        await container.verification.verify_email(second)

    async def test_resend_after_verification_is_rejected(self, container, notifier):
        await container.registration.register(user_request())
        await container.verification.verify_phone("+911234567890", notifier.last_sms_code("+911234567890"))

        with pytest.raises(AlreadyVerifiedError):
            await container.verification.resend_phone_verification("+911234567890")

    async def test_resend_for_unknown_email(self, container):
        with pytest.raises(NotFoundError):
            await container.verification.resend_email_verification("ghost@x.io")
