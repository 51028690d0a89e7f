"""
realty_identity/services/claim_signer.py — Signed access and refresh tokens.

Claims: ``{sub, role, ver, typ, iat, exp}`` plus a random ``jti`` on refresh
tokens. ``ver`` binds the token to the identity's ``token_version``: callers
compare it with the stored value and reject a mismatch as revoked, so bumping
the counter invalidates every outstanding token without a blacklist.

Key rotation: ``rotate()`` installs a new signing key and keeps the previous
one acceptable for a grace window. The key ring is replaced as a whole, so a
concurrent verification sees either the old or the new ring.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError
from pydantic import ValidationError as PydanticValidationError

from realty_identity.exceptions import (
    BadSignatureError,
    MalformedTokenError,
    TokenExpiredError,
    WrongTokenTypeError,
)
from realty_identity.models.common import utc_now
from realty_identity.models.enums import TokenType
from realty_identity.models.tokens import Claims, TokenPair
from realty_identity.services.token_mint import random_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _KeyRing:
    current: str
    previous: str | None = None
    previous_valid_until: datetime | None = None

    def accepted(self, now: datetime) -> list[str]:
        keys = [self.current]
        if self.previous and self.previous_valid_until and now < self.previous_valid_until:
            keys.append(self.previous)
        return keys


class ClaimSigner:
    """Mints and verifies token pairs bound to an identity's token_version."""

    def __init__(
        self,
        secret_key: str,
        *,
        previous_key: str | None = None,
        grace: timedelta = timedelta(hours=1),
        algorithm: str = "HS256",
        issuer: str = "realty-identity",
        audience: str = "realty-portal",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=14),
        clock: Callable[[], datetime] = utc_now,
    ):
        self._clock = clock
        self._ring = _KeyRing(
            current=secret_key,
            previous=previous_key or None,
            previous_valid_until=(clock() + grace) if previous_key else None,
        )
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    # ── Key rotation ─────────────────────────────────────────────────────

    def rotate(self, new_key: str, grace: timedelta) -> None:
        """Makes ``new_key`` the signing key; the old one stays valid for ``grace``."""
        if new_key == self._ring.current:
            return
        self._ring = _KeyRing(
            current=new_key,
            previous=self._ring.current,
            previous_valid_until=self._clock() + grace,
        )
        logger.info("Signing key rotated; previous key accepted for %s", grace)

    # ── Minting ──────────────────────────────────────────────────────────

    def _encode(self, claims: dict) -> str:
        return jwt.encode(claims, self._ring.current, algorithm=self.algorithm)

    def mint(self, identity: dict) -> TokenPair:
        """Issues an access + refresh pair for ``identity`` (a store row)."""
        now = self._clock()
        iat = int(now.timestamp())
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        base = {
            "sub": str(identity["id"]),
            "role": identity["role"],
            "ver": identity["token_version"],
            "iat": iat,
            "iss": self.issuer,
            "aud": self.audience,
        }
        jti = random_token(16)
        access = self._encode({**base, "typ": TokenType.ACCESS.value, "exp": int(access_exp.timestamp())})
        refresh = self._encode(
            {**base, "typ": TokenType.REFRESH.value, "exp": int(refresh_exp.timestamp()), "jti": jti}
        )
        return TokenPair(
            access=access,
            refresh=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
            refresh_jti=jti,
        )

    # ── Verification ─────────────────────────────────────────────────────

    def verify(self, token: str, expected_typ: TokenType) -> Claims:
        """
        Checks signature, expiry, issuer/audience and type.

        Raises ``MalformedTokenError``, ``BadSignatureError``,
        ``TokenExpiredError`` or ``WrongTokenTypeError``. The caller still has
        to compare ``claims.ver`` with the stored token_version.
        """
        try:
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise MalformedTokenError() from exc

        payload: dict | None = None
        for key in self._ring.accepted(self._clock()):
            try:
                payload = jwt.decode(
                    token,
                    key,
                    algorithms=[self.algorithm],
                    audience=self.audience,
                    issuer=self.issuer,
                )
                break
            except ExpiredSignatureError as exc:
                raise TokenExpiredError() from exc
            except JWTClaimsError as exc:
                raise MalformedTokenError(f"Token claims rejected: {exc}") from exc
            except JWTError:
                continue
        if payload is None:
            raise BadSignatureError()

        try:
            claims = Claims.model_validate(payload)
        except PydanticValidationError as exc:
            raise MalformedTokenError("Token is missing required claims") from exc
        if claims.typ != expected_typ:
            raise WrongTokenTypeError(expected_typ.value)
        return claims
