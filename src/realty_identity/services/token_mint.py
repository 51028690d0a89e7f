"""
realty_identity/services/token_mint.py — Opaque random tokens, numeric codes and
temporary passwords.

All draw from ``secrets`` (the OS CSPRNG). ``secrets.randbelow`` rejects
out-of-range samples instead of reducing modulo, so codes are uniform.
"""

from __future__ import annotations

import secrets
import string

from realty_identity.models.policy import PASSWORD_MIN_LENGTH, PASSWORD_SPECIALS

MIN_TOKEN_BYTES = 32


def random_token(n_bytes: int = MIN_TOKEN_BYTES) -> str:
    """URL-safe token with at least 256 bits of entropy."""
    return secrets.token_urlsafe(max(n_bytes, MIN_TOKEN_BYTES))


def numeric_code(n_digits: int = 6) -> str:
    """Zero-padded code uniformly distributed over ``[0, 10**n_digits)``."""
    if n_digits < 1:
        raise ValueError("n_digits must be positive")
    return f"{secrets.randbelow(10 ** n_digits):0{n_digits}d}"


def temporary_password(length: int = 12) -> str:
    """Random password that satisfies the password policy (one of each class)."""
    if length < PASSWORD_MIN_LENGTH:
        raise ValueError(f"length must be at least {PASSWORD_MIN_LENGTH}")
    pools = [string.ascii_lowercase, string.ascii_uppercase, string.digits, PASSWORD_SPECIALS]
    chars = [secrets.choice(pool) for pool in pools]
    alphabet = "".join(pools)
    chars += [secrets.choice(alphabet) for _ in range(length - len(pools))]
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)
