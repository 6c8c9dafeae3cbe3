"""JWT minting/verification and password hashing.

Provides the security primitives used by the authentication service.
Access and refresh tokens share one signing key; refresh tokens carry
``isRefreshToken: true`` and every token carries a random ``jti`` so two
tokens minted in the same second never collide in the blacklist.

Uses bcrypt directly (not passlib) for Python 3.13 compatibility.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import bcrypt
from jose import JWTError, jwt

from src.scope.config import Settings, get_settings

logger = logging.getLogger(__name__)

REFRESH_CLAIM = "isRefreshToken"

# ── Password Hashing ──────────────────────────────────────────────────────────


def hash_password(password: str) -> str:
    """Hash a plaintext password using bcrypt."""
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a plaintext password against its bcrypt hash (constant time)."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


@lru_cache
def dummy_password_hash() -> str:
    """Hash compared against when the email is unknown, so timing matches a real check."""
    return hash_password(secrets.token_hex(16))


# ── JWT Token Creation ────────────────────────────────────────────────────────


def generate_jti() -> str:
    """32 hex chars from the OS CSPRNG."""
    return secrets.token_hex(16)


def _encode(claims: dict[str, Any], lifetime: timedelta, settings: Settings) -> str:
    now = datetime.now(timezone.utc)
    to_encode = dict(claims)
    to_encode.update({
        "jti": generate_jti(),
        "iat": now,
        "exp": now + lifetime,
    })
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def create_access_token(user_id: str, email: str, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    return _encode(
        {"sub": str(user_id), "email": email},
        timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
        settings,
    )


def create_refresh_token(user_id: str, email: str, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    return _encode(
        {"sub": str(user_id), "email": email, REFRESH_CLAIM: True},
        timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS),
        settings,
    )


# ── JWT Token Verification ────────────────────────────────────────────────────


def decode_token(token: str, settings: Settings | None = None) -> dict[str, Any]:
    """Verify signature and expiry and return the claims.

    Raises:
        JWTError: If the token is malformed, tampered with, or expired.
    """
    settings = settings or get_settings()
    payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    if not payload.get("sub"):
        raise JWTError("Token has no subject")
    return payload


def peek_claims(token: str) -> dict[str, Any] | None:
    """Read claims without verifying them. None when the token cannot be parsed."""
    try:
        return jwt.get_unverified_claims(token)
    except JWTError:
        return None


def is_refresh_token(claims: dict[str, Any]) -> bool:
    return claims.get(REFRESH_CLAIM) is True
