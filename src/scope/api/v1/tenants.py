"""Tenant directory endpoints.

Authenticated but not tenant-bound: the tenant is named in the path, and
access is decided here from the caller's membership in that tenant.
Superusers see and manage every tenant.
"""

from __future__ import annotations

import math
import uuid
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response, status

from src.scope.api.deps import get_current_user, get_tenant_repository
from src.scope.api.middleware.tenant import tenant_cache_key
from src.scope.exceptions import Forbidden, NotFound
from src.scope.models.tenant import MANAGER_ROLES, TenantRole
from src.scope.models.user import User
from src.scope.schemas.common import PageMeta, SuccessResponse
from src.scope.schemas.tenant import (
    MemberCreate,
    MembershipResponse,
    TenantCreate,
    TenantListParams,
    TenantResponse,
    TenantUpdate,
)
from src.scope.services.tenants import TenantRepository

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/tenants", tags=["tenants"])


async def _require_role(
    repo: TenantRepository,
    tenant_id: uuid.UUID,
    user: User,
    roles: frozenset[TenantRole],
) -> None:
    if user.is_superuser:
        return
    membership = await repo.get_membership(user.id, tenant_id)
    if membership is None:
        raise NotFound("Tenant not found")
    if membership.role not in roles:
        raise Forbidden("Insufficient role for this tenant")


async def _invalidate_cache(request: Request, tenant_id: uuid.UUID) -> None:
    redis = getattr(request.app.state, "redis", None)
    if redis is None:
        return
    try:
        await redis.delete(tenant_cache_key(str(tenant_id)))
    except Exception:
        logger.warning("tenant.cache_invalidate_failed", tenant_id=str(tenant_id), exc_info=True)


@router.get("", response_model=SuccessResponse[list[TenantResponse]])
async def list_tenants(
    params: Annotated[TenantListParams, Query()],
    user: User = Depends(get_current_user),
    repo: TenantRepository = Depends(get_tenant_repository),
):
    """Tenants the caller belongs to (all tenants for superusers), paginated."""
    items, total = await repo.list_for_user(
        user,
        page=params.page,
        limit=params.limit,
        sort_by=params.sortBy,
        sort_order=params.sortOrder,
    )
    return SuccessResponse(
        data=[TenantResponse.model_validate(item) for item in items],
        meta=PageMeta(
            page=params.page,
            limit=params.limit,
            total=total,
            totalPages=math.ceil(total / params.limit),
        ).model_dump(),
    )


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse[TenantResponse])
async def create_tenant(
    body: TenantCreate,
    user: User = Depends(get_current_user),
    repo: TenantRepository = Depends(get_tenant_repository),
):
    """Create a tenant. The creator becomes its OWNER."""
    tenant = await repo.create(body.model_dump(), created_by=user.id)
    return SuccessResponse(data=TenantResponse.model_validate(tenant))


@router.get("/{tenant_id}", response_model=SuccessResponse[TenantResponse])
async def get_tenant(
    tenant_id: uuid.UUID,
    user: User = Depends(get_current_user),
    repo: TenantRepository = Depends(get_tenant_repository),
):
    tenant = await repo.get_for_user(tenant_id, user)
    if tenant is None:
        raise NotFound("Tenant not found")
    return SuccessResponse(data=TenantResponse.model_validate(tenant))


@router.patch("/{tenant_id}", response_model=SuccessResponse[TenantResponse])
async def update_tenant(
    tenant_id: uuid.UUID,
    body: TenantUpdate,
    request: Request,
    user: User = Depends(get_current_user),
    repo: TenantRepository = Depends(get_tenant_repository),
):
    """Update a tenant. Requires ADMIN or OWNER."""
    await _require_role(repo, tenant_id, user, MANAGER_ROLES)
    tenant = await repo.update(tenant_id, body.model_dump(exclude_unset=True), updated_by=user.id)
    if tenant is None:
        raise NotFound("Tenant not found")
    await _invalidate_cache(request, tenant_id)
    return SuccessResponse(data=TenantResponse.model_validate(tenant))


@router.delete("/{tenant_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tenant(
    tenant_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
    repo: TenantRepository = Depends(get_tenant_repository),
):
    """Delete a tenant. Requires OWNER; refused while other members are active."""
    await _require_role(repo, tenant_id, user, frozenset({TenantRole.OWNER}))
    if not await repo.delete(tenant_id, requested_by=user.id):
        raise NotFound("Tenant not found")
    await _invalidate_cache(request, tenant_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{tenant_id}/members",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessResponse[MembershipResponse],
)
async def add_member(
    tenant_id: uuid.UUID,
    body: MemberCreate,
    user: User = Depends(get_current_user),
    repo: TenantRepository = Depends(get_tenant_repository),
):
    """Add a user to a tenant. Requires ADMIN or OWNER."""
    await _require_role(repo, tenant_id, user, MANAGER_ROLES)
    if await repo.get(tenant_id) is None:
        raise NotFound("Tenant not found")
    membership = await repo.add_member(tenant_id, body.user_id, body.role, created_by=user.id)
    return SuccessResponse(data=MembershipResponse.model_validate(membership))
