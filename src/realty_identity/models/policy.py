"""
realty_identity/models/policy.py — Input format rules shared by DTOs and services.

Password policy: 8–128 characters with at least one lowercase letter, one
uppercase letter, one digit and one character from ``@$!%*?&``, and not on the
common-password deny-list.
"""

from __future__ import annotations

import re

PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
PASSWORD_SPECIALS = "@$!%*?&"

_PASSWORD_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"[a-z]"), "must contain a lowercase letter"),
    (re.compile(r"[A-Z]"), "must contain an uppercase letter"),
    (re.compile(r"\d"), "must contain a digit"),
    (re.compile(f"[{re.escape(PASSWORD_SPECIALS)}]"), f"must contain one of {PASSWORD_SPECIALS}"),
]

COMMON_PASSWORDS = frozenset(
    p.lower()
    for p in (
        "Password1!",
        "Password@1",
        "Password@123",
        "Passw0rd!",
        "P@ssw0rd",
        "P@ssword1",
        "Welcome@1",
        "Welcome1!",
        "Qwerty@123",
        "Admin@123",
        "Abc@1234",
        "India@123",
        "Test@1234",
    )
)


def password_policy_violations(password: str) -> list[str]:
    """Returns the list of broken rules; empty when the password is acceptable."""
    violations: list[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        violations.append(f"must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(password) > PASSWORD_MAX_LENGTH:
        violations.append(f"must be at most {PASSWORD_MAX_LENGTH} characters")
    for pattern, message in _PASSWORD_RULES:
        if not pattern.search(password):
            violations.append(message)
    if password.lower() in COMMON_PASSWORDS:
        violations.append("is too common")
    return violations


def normalize_email(email: str) -> str:
    """Trimmed, lower-cased email address."""
    return email.strip().lower()


def is_valid_phone(phone: str) -> bool:
    return bool(PHONE_PATTERN.match(phone))
