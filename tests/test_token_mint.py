"""Unit tests for random tokens, numeric codes and temporary passwords."""
import base64
from collections import Counter

import pytest

from realty_identity.models.policy import PASSWORD_SPECIALS, password_policy_violations
from realty_identity.services import token_mint
from realty_identity.services.token_mint import numeric_code, random_token, temporary_password


class TestRandomToken:
    def test_has_at_least_256_bits(self):
        token = random_token()
        raw = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))

        assert len(raw) >= 32

    def test_smaller_requests_are_raised_to_minimum(self):
        assert len(random_token(8)) == len(random_token(32))

    def test_is_url_safe(self):
        assert set(random_token()) <= set(
            "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
        )

    def test_tokens_are_unique(self):
        assert len({random_token() for _ in range(200)}) == 200


class TestNumericCode:
    def test_six_digits_zero_padded(self, monkeypatch):
        monkeypatch.setattr(token_mint.secrets, "randbelow", lambda n: 42)

        assert numeric_code(6) == "000042"

    def test_upper_bound_is_exclusive(self, monkeypatch):
        seen = []
        monkeypatch.setattr(token_mint.secrets, "randbelow", lambda n: seen.append(n) or n - 1)

        assert numeric_code(6) == "999999"
        assert seen == [10 ** 6]

    def test_codes_cover_all_leading_digits(self):
        codes = [numeric_code(6) for _ in range(2000)]

        assert all(len(c) == 6 and c.isdigit() for c in codes)
        assert len(Counter(c[0] for c in codes)) == 10

    def test_rejects_non_positive_length(self):
        with pytest.raises(ValueError):
            numeric_code(0)


class TestTemporaryPassword:
    def test_satisfies_password_policy(self):
        for _ in range(200):
            assert password_policy_violations(temporary_password()) == []

    def test_length_and_alphabet(self):
        password = temporary_password(16)

        assert len(password) == 16
        assert any(c in PASSWORD_SPECIALS for c in password)

    def test_rejects_lengths_below_policy_minimum(self):
        with pytest.raises(ValueError):
            temporary_password(7)
