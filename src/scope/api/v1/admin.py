"""Global administrator endpoints.

Cross-tenant reads go through the privileged guard, which the storage
policy admits via the bypass setting. Every call is logged as
``isolation.privileged_access``.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from src.scope.api.deps import get_feature_flag_service, require_superuser
from src.scope.schemas.common import SuccessResponse
from src.scope.schemas.feature_flag import FeatureFlagResponse
from src.scope.services.feature_flags import FeatureFlagService

router = APIRouter(prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(require_superuser)])


@router.get("/feature-flags", response_model=SuccessResponse[list[FeatureFlagResponse]])
async def list_all_feature_flags(service: FeatureFlagService = Depends(get_feature_flag_service)):
    flags = await service.list_all_tenants()
    return SuccessResponse(data=[FeatureFlagResponse.model_validate(flag) for flag in flags])
