"""Tenant access middleware.

For every request outside the exempt paths:

1. Resolve the tenant id. First match wins: ``x-tenant-id`` header,
   ``tenantId`` query parameter, ``tenantId`` cookie, then the first label
   of the host when it has at least three labels.
2. Load the tenant (Redis cache in front of the database).
3. Authenticate the bearer token (or ``access_token`` cookie).
4. Confirm an active membership, unless the user is a superuser.
5. Bind the tenant with tenant_scope() around the downstream call and echo
   ``x-tenant-id`` / ``x-tenant-name`` / ``x-tenant-type`` on the response.

A failing step short-circuits before any handler runs. API requests
(``/api/...``) get the JSON error envelope; browser navigations are
redirected to the tenant selection or unauthorized page.
"""

from __future__ import annotations

import ipaddress
import json
from typing import Any
from urllib.parse import urlencode

import structlog
from fastapi import Request, Response
from fastapi.responses import RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.scope.api.errors import error_response
from src.scope.config import Settings, get_settings
from src.scope.core.monitoring import tenant_access_denied_total
from src.scope.core.tenant import TenantContext, tenant_scope
from src.scope.exceptions import (
    Forbidden,
    MissingTenant,
    NotAuthenticated,
    ScopeError,
    TenantNotFound,
    TokenRevoked,
)

logger = structlog.get_logger(__name__)

TENANT_HEADER = "x-tenant-id"
TENANT_QUERY_PARAM = "tenantId"
TENANT_COOKIE = "tenantId"
ACCESS_TOKEN_COOKIE = "access_token"
TENANT_CACHE_PREFIX = "tenant:lookup:"

SKIP_TENANT_PATHS = (
    "/health",
    "/metrics",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/api/v1/auth",
    "/api/v1/tenants",
    "/api/v1/admin",
)

SELECTION_ERRORS = (MissingTenant, TenantNotFound)
UNAUTHORIZED_ERRORS = (NotAuthenticated, TokenRevoked, Forbidden)


# ── Resolution helpers ──────────────────────────────────────────────────────


def is_api_request(request: Request) -> bool:
    return request.url.path.startswith("/api/")


def _subdomain(host: str | None) -> str | None:
    if not host:
        return None
    hostname = host.rsplit(":", 1)[0] if not host.startswith("[") else host
    try:
        ipaddress.ip_address(hostname.strip("[]"))
        return None
    except ValueError:
        pass
    labels = hostname.split(".")
    if len(labels) >= 3 and labels[0]:
        return labels[0]
    return None


def resolve_tenant_id(request: Request) -> str | None:
    """Tenant id from header, query, cookie, or subdomain (first match wins)."""
    return (
        request.headers.get(TENANT_HEADER)
        or request.query_params.get(TENANT_QUERY_PARAM)
        or request.cookies.get(TENANT_COOKIE)
        or _subdomain(request.headers.get("host"))
    )


def extract_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get(ACCESS_TOKEN_COOKIE)


def _set_header(request: Request, name: str, value: str) -> None:
    """Replace a request header in the ASGI scope so downstream reads see one value."""
    raw = name.lower().encode("latin-1")
    headers = [(key, val) for key, val in request.scope["headers"] if key.lower() != raw]
    headers.append((raw, value.encode("latin-1")))
    request.scope["headers"] = headers


def tenant_cache_key(tenant_id: str) -> str:
    return f"{TENANT_CACHE_PREFIX}{tenant_id}"


# ── Middleware ──────────────────────────────────────────────────────────────


class TenantAccessMiddleware(BaseHTTPMiddleware):
    """Resolves, authorizes, and binds the tenant for each request.

    Collaborators are read from ``request.app.state``: ``auth_service``,
    ``tenant_repository`` and, optionally, ``redis``.
    """

    def __init__(self, app: Any, settings: Settings | None = None):
        super().__init__(app)
        self._settings = settings or get_settings()

    def _is_exempt(self, path: str) -> bool:
        if path == "/":
            return True
        exempt = SKIP_TENANT_PATHS + (self._settings.TENANT_SELECTION_PATH, self._settings.UNAUTHORIZED_PATH)
        return any(path == skip or path.startswith(skip.rstrip("/") + "/") for skip in exempt)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if self._is_exempt(request.url.path):
            return await call_next(request)

        try:
            tenant, user, membership = await self._authorize(request)
        except ScopeError as exc:
            return self._reject(request, exc)

        _set_header(request, TENANT_HEADER, tenant.tenant_id)
        request.state.tenant = tenant
        request.state.tenant_id = tenant.tenant_id
        request.state.user = user
        request.state.user_id = str(user.id)
        request.state.membership = membership

        with tenant_scope(tenant):
            response = await call_next(request)

        response.headers["x-tenant-id"] = tenant.tenant_id
        if tenant.tenant_name:
            response.headers["x-tenant-name"] = tenant.tenant_name
        if tenant.tenant_type:
            response.headers["x-tenant-type"] = tenant.tenant_type
        return response

    async def _authorize(self, request: Request) -> tuple[TenantContext, Any, Any]:
        tenant_id = resolve_tenant_id(request)
        if not tenant_id:
            raise MissingTenant()

        tenant = await self._load_tenant(request, tenant_id)
        if tenant is None:
            raise TenantNotFound()

        token = extract_bearer_token(request)
        if not token:
            raise NotAuthenticated()
        user = await request.app.state.auth_service.authenticate(token)
        request.state.access_token = token

        membership = None
        if not user.is_superuser:
            membership = await request.app.state.tenant_repository.get_membership(user.id, tenant.tenant_id)
            if membership is None:
                logger.warning("tenant.access_forbidden", tenant_id=tenant.tenant_id, user_id=str(user.id))
                raise Forbidden()
        return tenant, user, membership

    async def _load_tenant(self, request: Request, tenant_id: str) -> TenantContext | None:
        """Resolve tenant by id, using Redis cache when available."""
        redis = getattr(request.app.state, "redis", None)
        key = tenant_cache_key(tenant_id)

        if redis is not None:
            try:
                cached = await redis.get(key)
                if cached:
                    data = json.loads(cached)
                    return TenantContext(
                        tenant_id=data["tenant_id"],
                        tenant_name=data.get("tenant_name"),
                        tenant_type=data.get("tenant_type"),
                    )
            except Exception:
                logger.warning("tenant.cache_read_failed", tenant_id=tenant_id, exc_info=True)

        row = await request.app.state.tenant_repository.get(tenant_id)
        if row is None:
            return None
        tenant_type = row.type.value if hasattr(row.type, "value") else row.type
        ctx = TenantContext(tenant_id=str(row.id), tenant_name=row.name, tenant_type=tenant_type)

        if redis is not None:
            try:
                await redis.set(
                    key,
                    json.dumps({
                        "tenant_id": ctx.tenant_id,
                        "tenant_name": ctx.tenant_name,
                        "tenant_type": ctx.tenant_type,
                    }),
                    ex=self._settings.TENANT_CACHE_TTL_SECONDS,
                )
            except Exception:
                logger.warning("tenant.cache_write_failed", tenant_id=tenant_id, exc_info=True)
        return ctx

    def _reject(self, request: Request, exc: ScopeError) -> Response:
        tenant_access_denied_total.labels(reason=exc.code.lower()).inc()
        logger.info("tenant.access_denied", code=exc.code, path=request.url.path)
        if exc.status_code >= 500:
            logger.error("tenant.access_check_failed", code=exc.code, error=exc.message, path=request.url.path)
        if is_api_request(request) or exc.status_code >= 500:
            return error_response(exc)

        return_to = urlencode({"returnUrl": request.url.path})
        if isinstance(exc, SELECTION_ERRORS):
            return RedirectResponse(url=f"{self._settings.TENANT_SELECTION_PATH}?{return_to}")
        if isinstance(exc, UNAUTHORIZED_ERRORS):
            return RedirectResponse(url=f"{self._settings.UNAUTHORIZED_PATH}?{return_to}")
        return error_response(exc)
