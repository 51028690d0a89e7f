"""
realty_identity/services/password_hasher.py — One-way credential hashing.

New hashes use Argon2id (memory-hard, per-hash salt). The encoded string
``$argon2id$v=19$m=…,t=…,p=…$salt$digest`` embeds algorithm, cost, salt and
digest, so outdated parameters are detected on login (``needs_rehash``).
Legacy bcrypt hashes (``$2a$``/``$2b$``/``$2y$``) still verify and are always
flagged for rehash.

Hashing is CPU/memory heavy: async callers use ``hash_async`` /
``verify_async`` which run in the thread pool.
"""

from __future__ import annotations

import logging
import secrets

import bcrypt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from fastapi.concurrency import run_in_threadpool

from realty_identity.exceptions import HashingError

logger = logging.getLogger(__name__)

TIME_COST_RANGE = (1, 10)
MEMORY_COST_RANGE = (8, 1024 * 1024)  # KiB
PARALLELISM_RANGE = (1, 16)

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


def _check_range(name: str, value: int, bounds: tuple[int, int]) -> None:
    low, high = bounds
    if not low <= value <= high:
        raise HashingError(f"{name}={value} outside accepted range [{low}, {high}]")


class CredentialHasher:
    """
    Argon2id hashing with constant-time verification.

    Raises ``HashingError`` at construction when a cost parameter is out of
    range. The default cost (t=2, m=64 MiB) takes on the order of 100 ms.
    """

    def __init__(self, time_cost: int = 2, memory_cost: int = 65536, parallelism: int = 1):
        _check_range("time_cost", time_cost, TIME_COST_RANGE)
        _check_range("memory_cost", memory_cost, MEMORY_COST_RANGE)
        _check_range("parallelism", parallelism, PARALLELISM_RANGE)
        if memory_cost < 8 * parallelism:
            raise HashingError("memory_cost must be at least 8 * parallelism KiB")
        self._argon2 = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
        )
        self._dummy_hash: str | None = None

    def hash(self, plaintext: str) -> str:
        """Returns the encoded Argon2id hash of ``plaintext``."""
        return self._argon2.hash(plaintext)

    def verify(self, plaintext: str, opaque: str) -> bool:
        """True when ``plaintext`` matches ``opaque``. Never raises on foreign input."""
        if not opaque:
            return False
        if opaque.startswith(_BCRYPT_PREFIXES):
            try:
                return bcrypt.checkpw(plaintext.encode("utf-8"), opaque.encode("utf-8"))
            except ValueError:
                return False
        try:
            return self._argon2.verify(opaque, plaintext)
        except VerifyMismatchError:
            return False
        except (VerificationError, InvalidHashError):
            logger.warning("Unrecognised credential hash format")
            return False

    def needs_rehash(self, opaque: str) -> bool:
        """True for legacy algorithms and for Argon2 hashes with other parameters."""
        if opaque.startswith(_BCRYPT_PREFIXES):
            return True
        try:
            return self._argon2.check_needs_rehash(opaque)
        except (InvalidHashError, ValueError):
            return True

    def dummy_verify(self, plaintext: str) -> bool:
        """
        Spends the same work as a real verification against a throwaway hash.

        Used on login when no identity matches, so response time does not
        reveal whether the email is registered. Always returns False.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self.hash(secrets.token_urlsafe(16))
        self.verify(plaintext, self._dummy_hash)
        return False

    async def hash_async(self, plaintext: str) -> str:
        return await run_in_threadpool(self.hash, plaintext)

    async def verify_async(self, plaintext: str, opaque: str | None) -> bool:
        """Verifies in the thread pool; ``opaque=None`` runs the dummy verification."""
        if opaque is None:
            return await run_in_threadpool(self.dummy_verify, plaintext)
        return await run_in_threadpool(self.verify, plaintext, opaque)
