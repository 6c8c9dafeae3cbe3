"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.scope.api.v1 import admin, auth, feature_flags, health, tenants

router = APIRouter()

router.include_router(health.router)
router.include_router(auth.router)
router.include_router(tenants.router)
router.include_router(feature_flags.router)
router.include_router(admin.router)
