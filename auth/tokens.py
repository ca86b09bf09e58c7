"""
auth/tokens.py -- Session token codec and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry the
       principal id, email, primary role name, the effective permission names
       frozen at issuance, iat, exp and a random jti. The jti makes every
       issued token byte-unique, so the revocation ledger can key entries by
       the exact token string.

       verify() distinguishes two failure kinds: TokenExpiredError (signature
       fine, exp passed) and TokenInvalidError (malformed, bad signature,
       missing claims). The gate maps them to TOKEN_EXPIRED / TOKEN_INVALID.

  TokenCodec is an immutable value built once at startup from Settings. The
       secret is read-only after construction, so concurrent requests share
       the codec without synchronization.

  Passwords: bcrypt used directly (no passlib wrapper) with the configured
       work factor. The _DUMMY_HASH constant enables timing equalization at
       login so response time does not reveal whether an email exists.

Layer rule: no imports from api/ or audit/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.models import TokenClaims

if TYPE_CHECKING:
    from auth.models import User
    from core.config import Settings

logger = logging.getLogger("admingate.auth")

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("sub", "permissions", "iat", "exp", "jti")

# bcrypt only reads the first 72 bytes of its input.
MAX_PASSWORD_BYTES = 72


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TokenError(Exception):
    """Base class for token verification failures."""

    code = "TOKEN_INVALID"


class TokenExpiredError(TokenError):
    code = "TOKEN_EXPIRED"


class TokenInvalidError(TokenError):
    code = "TOKEN_INVALID"


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for passwords over MAX_PASSWORD_BYTES encoded bytes, the
    same on every bcrypt release (older ones truncated silently). The API
    layer rejects such passwords with a 422 before they get here.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password cannot be longer than {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        # hash_password never accepts such input, so nothing stored can match.
        return False
    try:
        return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash: treat as a mismatch, never as a match.
        return False


# Computed once at module load with a low cost factor; only used to burn
# comparable time when the email does not exist.
_DUMMY_HASH: str = hash_password("admingate_timing_dummy", rounds=10)


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison against a dummy hash. Result is discarded."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Token codec
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenCodec:
    """Signs and verifies stateless bearer tokens.

    Usage:
        codec = TokenCodec.from_settings(get_settings())
        token = codec.issue(user, "editor", {"content:read"})
        claims = codec.verify(token)   # raises TokenExpiredError / TokenInvalidError
    """

    secret_key: str
    expire_seconds: int = 7 * 24 * 3600

    def __post_init__(self) -> None:
        if not self.secret_key:
            raise ValueError("TokenCodec requires a non-empty secret key.")

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenCodec:
        return cls(secret_key=settings.secret_key, expire_seconds=settings.token_expire_seconds)

    def issue(
        self,
        user: User,
        role_name: str,
        permissions: Iterable[str],
        now: datetime | None = None,
    ) -> str:
        """Encode a signed JWT carrying identity and a frozen permission snapshot."""
        issued_at = now or datetime.now(timezone.utc)
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "role": role_name,
            "permissions": sorted(set(permissions)),
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + timedelta(seconds=self.expire_seconds)).timestamp()),
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(payload, self.secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str) -> TokenClaims:
        """Check signature and expiry; return the claims.

        Signature is checked before expiry, so an expired token with a forged
        signature is reported as invalid, not expired.
        """
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenExpiredError("Token expired") from exc
        except JWTError as exc:
            raise TokenInvalidError("Invalid token") from exc

        if any(claim not in payload for claim in _REQUIRED_CLAIMS) or not isinstance(payload["permissions"], list):
            raise TokenInvalidError("Invalid token")
        try:
            user_id = int(payload["sub"])
            permissions = frozenset(str(p) for p in payload["permissions"])
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError) as exc:
            raise TokenInvalidError("Invalid token") from exc

        return TokenClaims(
            user_id=user_id,
            email=payload.get("email", ""),
            role=payload.get("role", ""),
            permissions=permissions,
            issued_at=issued_at,
            expires_at=expires_at,
            jti=str(payload["jti"]),
        )
