"""FastAPI dependency injection for services, the isolation guard, and authentication.

Services are built once at startup and stored on ``app.state``; these
dependencies hand them to endpoints. Tests replace them by assigning
in-memory implementations to the same attributes.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import Depends, Request

from src.scope.api.middleware.tenant import extract_bearer_token
from src.scope.core.isolation import TenantGuard
from src.scope.exceptions import Forbidden, NotAuthenticated
from src.scope.models.tenant import TenantRole, TenantUser
from src.scope.models.user import User
from src.scope.services.auth import AuthService
from src.scope.services.feature_flags import FeatureFlagService
from src.scope.services.tenants import TenantRepository
from src.scope.services.token_store import TokenStore


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_tenant_repository(request: Request) -> TenantRepository:
    return request.app.state.tenant_repository


def get_token_store(request: Request) -> TokenStore:
    return request.app.state.token_store


def get_guard(request: Request) -> TenantGuard:
    """Tenant-scoped data access for the current request."""
    return request.app.state.tenant_guard


def get_feature_flag_service(guard: TenantGuard = Depends(get_guard)) -> FeatureFlagService:
    return FeatureFlagService(guard)


async def get_current_user(
    request: Request,
    auth: AuthService = Depends(get_auth_service),
) -> User:
    """Authenticated user for the request.

    Reuses the user the tenant middleware already authenticated; otherwise
    validates the bearer token (expiry, signature, and blacklist).

    Raises:
        NotAuthenticated: No token, or the token is invalid or expired.
        TokenRevoked: The token has been blacklisted.
    """
    user = getattr(request.state, "user", None)
    if user is not None:
        return user

    token = extract_bearer_token(request)
    if not token:
        raise NotAuthenticated()
    user = await auth.authenticate(token)
    request.state.user = user
    request.state.user_id = str(user.id)
    request.state.access_token = token
    return user


async def require_superuser(user: User = Depends(get_current_user)) -> User:
    if not user.is_superuser:
        raise Forbidden("Administrator access required")
    return user


def require_tenant_role(*roles: TenantRole) -> Callable[..., Awaitable[TenantUser | None]]:
    """Require one of ``roles`` in the tenant bound by the middleware.

    Superusers pass with no membership.
    """

    async def checker(request: Request, user: User = Depends(get_current_user)) -> TenantUser | None:
        if user.is_superuser:
            return None
        membership = getattr(request.state, "membership", None)
        if membership is None or membership.role not in roles:
            raise Forbidden("Insufficient role for this tenant")
        return membership

    return checker
