"""Unit tests for the password policy and the email/phone format rules."""
import pytest

from realty_identity.models.policy import (
    is_valid_phone,
    normalize_email,
    password_policy_violations,
)


class TestPasswordPolicy:
    @pytest.mark.parametrize("password", ["Abcdef1!", "Zz9@" + "a" * 124])
    def test_boundary_lengths_accepted(self, password):
        assert password_policy_violations(password) == []

    def test_too_short_and_too_long(self):
        assert "must be at least 8 characters" in password_policy_violations("Abcde1!")
        assert "must be at most 128 characters" in password_policy_violations("Zz9@" + "a" * 125)

    @pytest.mark.parametrize(
        "password, violation",
        [
            ("ABCDEF1!", "must contain a lowercase letter"),
            ("abcdef1!", "must contain an uppercase letter"),
            ("Abcdefg!", "must contain a digit"),
            ("Abcdefg1", "must contain one of @$!%*?&"),
        ],
    )
    def test_each_character_class_required(self, password, violation):
        assert violation in password_policy_violations(password)

    def test_common_passwords_denied(self):
        assert "is too common" in password_policy_violations("Password1!")


class TestFormats:
    def test_email_normalization(self):
        assert normalize_email("  Anjali@Example.COM ") == "anjali@example.com"

    @pytest.mark.parametrize(
        "phone, valid",
        [
            ("+911234567890", True),
            ("+" + "1" * 15, True),
            ("1" * 15, True),
            ("+" + "1" * 16, False),
            ("+0123456", False),
            ("+1", False),
        ],
    )
    def test_phone_pattern(self, phone, valid):
        assert is_valid_phone(phone) is valid
