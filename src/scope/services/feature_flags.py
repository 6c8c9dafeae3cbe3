"""Per-tenant feature flags on top of the isolation guard.

All reads and writes go through TenantGuard, so this service never names a
tenant: the bound tenant scopes every call.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.exc import IntegrityError

from src.scope.core.isolation import TenantGuard
from src.scope.exceptions import Conflict, NotFound
from src.scope.models.feature_flag import FeatureFlag
from src.scope.services.users import parse_uuid

logger = structlog.get_logger(__name__)

IS_ENABLED_SQL = "SELECT enabled FROM feature_flags WHERE key = :key"


class FeatureFlagService:
    def __init__(self, guard: TenantGuard) -> None:
        self._guard = guard

    async def list_flags(self, enabled: bool | None = None) -> list[FeatureFlag]:
        filters: dict[str, Any] = {}
        if enabled is not None:
            filters["enabled"] = enabled
        return await self._guard.find_many(FeatureFlag, order_by="key", **filters)

    async def get(self, flag_id: Any) -> FeatureFlag:
        parsed = parse_uuid(flag_id)
        flag = await self._guard.find_one(FeatureFlag, id=parsed) if parsed else None
        if flag is None:
            raise NotFound("Feature flag not found")
        return flag

    async def create(self, key: str, description: str | None = None, enabled: bool = False) -> FeatureFlag:
        if await self._guard.find_one(FeatureFlag, key=key) is not None:
            raise Conflict(f"Feature flag '{key}' already exists")
        try:
            flag = await self._guard.create(FeatureFlag, key=key, description=description, enabled=enabled)
        except IntegrityError as exc:
            raise Conflict(f"Feature flag '{key}' already exists") from exc
        logger.info("feature_flags.created", flag_id=str(flag.id), key=key)
        return flag

    async def update(self, flag_id: Any, values: dict[str, Any]) -> FeatureFlag:
        parsed = parse_uuid(flag_id)
        if parsed is None:
            raise NotFound("Feature flag not found")
        if not values:
            return await self.get(parsed)
        rows = await self._guard.update(FeatureFlag, {"id": parsed}, values)
        if not rows:
            raise NotFound("Feature flag not found")
        logger.info("feature_flags.updated", flag_id=str(parsed), fields=sorted(values))
        return rows[0]

    async def delete(self, flag_id: Any) -> None:
        parsed = parse_uuid(flag_id)
        deleted = await self._guard.delete(FeatureFlag, id=parsed) if parsed else 0
        if not deleted:
            raise NotFound("Feature flag not found")
        logger.info("feature_flags.deleted", flag_id=str(parsed))

    async def is_enabled(self, key: str) -> bool:
        """Raw lookup scoped by the storage policy alone."""
        rows = await self._guard.raw(IS_ENABLED_SQL, {"key": key})
        return bool(rows and rows[0]["enabled"])

    async def list_all_tenants(self) -> list[FeatureFlag]:
        """Cross-tenant listing for global administrators."""
        return await self._guard.privileged().find_many(FeatureFlag, order_by="key")
