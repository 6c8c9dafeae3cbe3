"""Authentication service: credentials, token issuance, rotation, and revocation.

Token lifecycle: issued -> (valid | blacklisted) -> expired. A token
becomes blacklisted through logout or, for refresh tokens, through
rotation. Every authenticated request checks both the embedded expiry
(signature verification) and blacklist membership; either failing
rejects the request.

bcrypt runs in a worker thread via asyncio.to_thread so hashing never
blocks the event loop.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

import structlog
from jose import JWTError

from src.scope.config import Settings, get_settings
from src.scope.core.security import (
    create_access_token,
    create_refresh_token,
    decode_token,
    dummy_password_hash,
    hash_password,
    is_refresh_token,
    peek_claims,
    verify_password,
)
from src.scope.exceptions import (
    Conflict,
    InvalidCredentials,
    InvalidRefreshToken,
    NotAuthenticated,
    TokenRevoked,
    TokenStoreUnavailable,
)
from src.scope.models.user import User

logger = structlog.get_logger(__name__)

LOGOUT_REASON = "user_logout"
ROTATION_REASON = "token_refresh"


class UserStore(Protocol):
    async def get(self, user_id: Any) -> User | None: ...

    async def find_by_email(self, email: str) -> User | None: ...

    async def create(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        is_superuser: bool = False,
    ) -> User: ...


class RevocationStore(Protocol):
    async def blacklist(self, token: str, user_id: str, expires_at: datetime, reason: str | None = None) -> Any: ...

    async def consume(self, token: str, user_id: str, expires_at: datetime, reason: str | None = None) -> bool: ...

    async def is_blacklisted(self, token: str) -> bool: ...


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"
    user: User | None = None


def _expiry(claims: dict[str, Any]) -> datetime | None:
    exp = claims.get("exp")
    if exp is None:
        return None
    try:
        return datetime.fromtimestamp(float(exp), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


class AuthService:
    """Validates credentials and manages the access/refresh token lifecycle.

    Args:
        users: Repository of user accounts.
        token_store: Blacklist of revoked tokens.
        settings: JWT and revocation settings (defaults to get_settings()).
    """

    def __init__(
        self,
        users: UserStore,
        token_store: RevocationStore,
        settings: Settings | None = None,
    ) -> None:
        self._users = users
        self._token_store = token_store
        self._settings = settings or get_settings()

    # ── Credentials ────────────────────────────────────────────────────────

    async def validate_user(self, email: str, password: str) -> User | None:
        """Look up and compare. No side effects; None when the pair does not match."""
        user = await self._users.find_by_email(email)
        if user is None:
            # Same bcrypt cost as a real comparison
            await asyncio.to_thread(verify_password, password, dummy_password_hash())
            return None
        if not await asyncio.to_thread(verify_password, password, user.password):
            return None
        if not user.is_active:
            return None
        return user

    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        is_superuser: bool = False,
    ) -> User:
        if await self._users.find_by_email(email) is not None:
            raise Conflict("A user with this email already exists")
        password_hash = await asyncio.to_thread(hash_password, password)
        user = await self._users.create(
            email=email,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            is_superuser=is_superuser,
        )
        logger.info("auth.registered", user_id=str(user.id))
        return user

    # ── Token issuance ─────────────────────────────────────────────────────

    def _issue(self, user: User) -> IssuedTokens:
        return IssuedTokens(
            access_token=create_access_token(str(user.id), user.email, self._settings),
            refresh_token=create_refresh_token(str(user.id), user.email, self._settings),
            expires_in=self._settings.access_token_ttl_seconds,
            user=user,
        )

    async def login(self, email: str, password: str) -> IssuedTokens:
        user = await self.validate_user(email, password)
        if user is None:
            logger.info("auth.login_failed")
            raise InvalidCredentials()
        logger.info("auth.login_succeeded", user_id=str(user.id))
        return self._issue(user)

    async def logout(self, token: str, user_id: str) -> None:
        """Blacklist a token until its natural expiry.

        The signature is not verified, only ``sub`` and ``exp`` are read. A
        token that cannot be decoded, has no expiry, or belongs to another
        user is ignored, so logout is idempotent and never fails the caller.
        """
        claims = peek_claims(token)
        expires_at = _expiry(claims) if claims else None
        if expires_at is None:
            logger.info("auth.logout_ignored", user_id=str(user_id))
            return
        if str(claims.get("sub")) != str(user_id):
            logger.warning("auth.logout_foreign_token", user_id=str(user_id))
            return
        await self._token_store.blacklist(token, str(user_id), expires_at, reason=LOGOUT_REASON)
        logger.info("auth.logout", user_id=str(user_id))

    async def refresh_token(self, refresh_token: str) -> IssuedTokens:
        """Rotate a refresh token.

        The presented token is consumed (blacklisted) before new tokens are
        minted. Consumption is an atomic insert, so of two concurrent
        refreshes with the same token exactly one succeeds.
        """
        try:
            claims = decode_token(refresh_token, self._settings)
        except JWTError as exc:
            raise InvalidRefreshToken() from exc
        if not is_refresh_token(claims):
            raise InvalidRefreshToken("Token is not a refresh token")

        user = await self._users.get(claims["sub"])
        if user is None or not user.is_active:
            raise InvalidRefreshToken("User no longer exists")

        expires_at = _expiry(claims)
        if expires_at is None:
            raise InvalidRefreshToken()
        consumed = await self._token_store.consume(
            refresh_token, str(user.id), expires_at, reason=ROTATION_REASON
        )
        if not consumed:
            logger.warning("auth.refresh_reuse", user_id=str(user.id))
            raise InvalidRefreshToken("Refresh token has already been used")

        logger.info("auth.refreshed", user_id=str(user.id))
        return self._issue(user)

    # ── Request authentication ─────────────────────────────────────────────

    async def authenticate(self, token: str) -> User:
        """Resolve an access token to an active user.

        Raises:
            NotAuthenticated: Invalid, expired, or refresh token; unknown or inactive user.
            TokenRevoked: The token is blacklisted.
            TokenStoreUnavailable: The blacklist could not be consulted (fail closed).
        """
        try:
            claims = decode_token(token, self._settings)
        except JWTError as exc:
            raise NotAuthenticated("Invalid or expired token") from exc
        if is_refresh_token(claims):
            raise NotAuthenticated("Refresh tokens cannot be used for authentication")

        try:
            revoked = await self._token_store.is_blacklisted(token)
        except TokenStoreUnavailable:
            if not self._settings.TOKEN_REVOCATION_FAIL_OPEN:
                raise
            logger.warning("auth.revocation_check_skipped", user_id=claims.get("sub"))
            revoked = False
        if revoked:
            raise TokenRevoked()

        user = await self._users.get(claims["sub"])
        if user is None or not user.is_active:
            raise NotAuthenticated("User not found or inactive")
        return user
