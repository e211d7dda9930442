"""
auth/tokens.py -- Password hashing and the signed-token service.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry a "typ" tag (access, refresh,
       recovery), the subject user id, optional projectId / aclId, iat and
       exp. verify() returns False on any failure; decode() raises
       InvalidTokenError so callers cannot proceed with unusable claims.

  Secrets: access, refresh and recovery tokens are signed with distinct
       secrets (enforced in core.config) so a refresh token is never accepted
       where an access token is expected. The "typ" tag is checked as well.

  Expiry: checked here against the injectable clock rather than inside
       jose.jwt.decode(), so tests can move time without sleeping.

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH enables timing
       equalization when the user does not exist [C1].

Layer rule: imports from core/ only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

import bcrypt
from jose import JWTError, jwt

from core.errors import InvalidTokenError, SigningError

logger = logging.getLogger("idprovider.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only reads the first 72 bytes; recent bcrypt releases raise
    ValueError for longer input instead of truncating.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first failed lookup is not measurably faster than later ones.
_DUMMY_HASH: str = hash_password("idprovider_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison against the dummy hash and discard the result."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Claims -- tagged variant, one dataclass per token class
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    project_id: Optional[str] = None
    acl_id: Optional[str] = None


@dataclass(frozen=True)
class RefreshClaims:
    sub: str
    project_id: Optional[str] = None
    acl_id: Optional[str] = None


@dataclass(frozen=True)
class RecoveryClaims:
    sub: str


Claims = Union[AccessClaims, RefreshClaims, RecoveryClaims]

_TYPE_TAGS: dict[type, str] = {
    AccessClaims: "access",
    RefreshClaims: "refresh",
    RecoveryClaims: "recovery",
}
_TAG_TYPES: dict[str, type] = {tag: cls for cls, tag in _TYPE_TAGS.items()}


def _to_payload(claims: Claims) -> dict:
    tag = _TYPE_TAGS.get(type(claims))
    if tag is None:
        raise SigningError(f"Unsupported claims type: {type(claims).__name__}")
    if not isinstance(claims.sub, str) or not claims.sub:
        raise SigningError("Claims subject must be a non-empty string")
    payload: dict = {"typ": tag, "sub": claims.sub}
    if isinstance(claims, (AccessClaims, RefreshClaims)):
        if claims.project_id is not None:
            payload["projectId"] = claims.project_id
        if claims.acl_id is not None:
            payload["aclId"] = claims.acl_id
    return payload


def _from_payload(payload: dict) -> Claims:
    cls = _TAG_TYPES.get(payload.get("typ"))
    sub = payload.get("sub")
    if cls is None or not isinstance(sub, str) or not sub:
        raise InvalidTokenError("Token claims are malformed")
    if cls is RecoveryClaims:
        return RecoveryClaims(sub=sub)
    return cls(sub=sub, project_id=payload.get("projectId"), acl_id=payload.get("aclId"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Issue, verify and decode signed, time-bound tokens.

    clock returns the current aware datetime. It is used both for iat/exp at
    issue time and as "now" when checking expiry.

    Usage:
        tokens = TokenService()
        raw = tokens.issue(AccessClaims(sub=user_id, project_id=pid), secret, 600)
        claims = tokens.decode(raw, secret, expected=AccessClaims)
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utcnow

    def issue(self, claims: Claims, secret: str, ttl_seconds: int) -> str:
        """Sign claims with an expiry ttl_seconds from now.

        Raises SigningError on a blank secret, non-positive ttl or malformed
        claims. Not expected in normal operation.
        """
        if not secret:
            raise SigningError("Signing secret is blank")
        if not isinstance(ttl_seconds, int) or ttl_seconds <= 0:
            raise SigningError("Token ttl must be a positive number of seconds")
        payload = _to_payload(claims)
        now = self._clock()
        payload["iat"] = int(now.timestamp())
        payload["exp"] = int((now + timedelta(seconds=ttl_seconds)).timestamp())
        try:
            return jwt.encode(payload, secret, algorithm=_ALGORITHM)
        except JWTError as e:
            raise SigningError("Token could not be signed") from e

    def decode(self, token: str, secret: str, expected: Optional[type] = None) -> Claims:
        """Validate signature, expiry and shape; return the typed claims.

        expected, when given, is one of AccessClaims / RefreshClaims /
        RecoveryClaims and the token's tag must match it.

        Raises InvalidTokenError on any failure.
        """
        if not token or not secret:
            raise InvalidTokenError("Token is missing")
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTError as e:
            raise InvalidTokenError("Token is invalid") from e
        exp = payload.get("exp")
        if not isinstance(exp, int):
            raise InvalidTokenError("Token has no expiry")
        if exp <= int(self._clock().timestamp()):
            raise InvalidTokenError("Token has expired")
        claims = _from_payload(payload)
        if expected is not None and not isinstance(claims, expected):
            raise InvalidTokenError("Token is of the wrong type")
        return claims

    def verify(self, token: str, secret: str, expected: Optional[type] = None) -> bool:
        """Return True if decode() would succeed. Never raises."""
        try:
            self.decode(token, secret, expected)
        except InvalidTokenError:
            return False
        return True
