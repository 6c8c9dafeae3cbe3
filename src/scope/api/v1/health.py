"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness also
verifies that every tenant-scoped table still has its row security policy
enabled, forced, and installed.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.scope.config import get_settings
from src.scope.core.database import Base, get_engine
from src.scope.core.rls import check_rls_policies, policies_healthy

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database, Redis, and storage policies. Returns check results dict."""
    checks: dict = {"database": "ok", "redis": "ok", "rls": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            report = await check_rls_policies(conn, Base.metadata)
        if not policies_healthy(report):
            checks["rls"] = "error"
            checks["rls_tables"] = report
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)
        checks["rls"] = "unknown"

    redis = getattr(request.app.state, "redis", None)
    if redis is None:
        checks["redis"] = "disabled"
    else:
        try:
            if not await redis.ping():
                checks["redis"] = "error"
                checks["redis_error"] = "PING did not return PONG"
        except Exception as e:
            checks["redis"] = "error"
            checks["redis_error"] = str(e)

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 if all pass, 503 if any dependency fails."""
    checks = await _check_dependencies(request)
    all_healthy = (
        checks.get("database") == "ok"
        and checks.get("rls") == "ok"
        and checks.get("redis") in ("ok", "disabled")
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
