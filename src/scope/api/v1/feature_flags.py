"""Feature flag endpoints (tenant-bound).

The tenant middleware has already resolved, authorized, and bound the
tenant; every data call below is scoped by the isolation guard.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Response, status

from src.scope.api.deps import get_current_user, get_feature_flag_service, require_tenant_role
from src.scope.models.tenant import TenantRole
from src.scope.schemas.common import SuccessResponse
from src.scope.schemas.feature_flag import FeatureFlagCreate, FeatureFlagResponse, FeatureFlagUpdate
from src.scope.services.feature_flags import FeatureFlagService

router = APIRouter(prefix="/api/v1/feature-flags", tags=["feature-flags"])

require_manager = require_tenant_role(TenantRole.OWNER, TenantRole.ADMIN)


@router.get("", response_model=SuccessResponse[list[FeatureFlagResponse]], dependencies=[Depends(get_current_user)])
async def list_flags(
    enabled: bool | None = None,
    service: FeatureFlagService = Depends(get_feature_flag_service),
):
    flags = await service.list_flags(enabled=enabled)
    return SuccessResponse(data=[FeatureFlagResponse.model_validate(flag) for flag in flags])


@router.get("/{flag_id}", response_model=SuccessResponse[FeatureFlagResponse], dependencies=[Depends(get_current_user)])
async def get_flag(flag_id: uuid.UUID, service: FeatureFlagService = Depends(get_feature_flag_service)):
    flag = await service.get(flag_id)
    return SuccessResponse(data=FeatureFlagResponse.model_validate(flag))


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessResponse[FeatureFlagResponse],
    dependencies=[Depends(require_manager)],
)
async def create_flag(body: FeatureFlagCreate, service: FeatureFlagService = Depends(get_feature_flag_service)):
    flag = await service.create(body.key, description=body.description, enabled=body.enabled)
    return SuccessResponse(data=FeatureFlagResponse.model_validate(flag))


@router.patch(
    "/{flag_id}",
    response_model=SuccessResponse[FeatureFlagResponse],
    dependencies=[Depends(require_manager)],
)
async def update_flag(
    flag_id: uuid.UUID,
    body: FeatureFlagUpdate,
    service: FeatureFlagService = Depends(get_feature_flag_service),
):
    flag = await service.update(flag_id, body.model_dump(exclude_unset=True))
    return SuccessResponse(data=FeatureFlagResponse.model_validate(flag))


@router.delete("/{flag_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=[Depends(require_manager)])
async def delete_flag(flag_id: uuid.UUID, service: FeatureFlagService = Depends(get_feature_flag_service)):
    await service.delete(flag_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
