"""FastAPI application factory.

Creates the app with tenant access middleware, logging middleware, metrics
middleware, CORS, Sentry, lifespan events for database initialization and
service wiring, the daily token purge, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.scope.api.errors import register_exception_handlers
from src.scope.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.scope.api.middleware.tenant import TenantAccessMiddleware
from src.scope.api.v1.router import router as v1_router
from src.scope.config import get_settings
from src.scope.core.database import close_db, get_session_factory, init_db
from src.scope.core.isolation import TenantGuard
from src.scope.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.scope.core.persistence import SqlAlchemyPersistence
from src.scope.core.redis import close_redis, get_redis_pool
from src.scope.services.auth import AuthService
from src.scope.services.tenants import TenantRepository
from src.scope.services.token_cleanup import TokenCleanupScheduler
from src.scope.services.token_store import TokenStore
from src.scope.services.users import UserRepository


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, wire services, start the purge scheduler."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    app.state.redis = get_redis_pool()

    session_factory = get_session_factory()
    app.state.token_store = TokenStore(session_factory)
    app.state.user_repository = UserRepository(session_factory)
    app.state.tenant_repository = TenantRepository(session_factory)
    app.state.tenant_guard = TenantGuard(SqlAlchemyPersistence(session_factory))
    app.state.auth_service = AuthService(app.state.user_repository, app.state.token_store, settings)
    log.info("startup.services_initialized")

    app.state.token_cleanup = None
    if settings.TOKEN_PURGE_ENABLED:
        cleanup = TokenCleanupScheduler(app.state.token_store, hour=settings.TOKEN_PURGE_HOUR_UTC)
        try:
            cleanup.start()
            app.state.token_cleanup = cleanup
        except Exception:
            log.warning("startup.token_cleanup_failed", exc_info=True)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    if app.state.token_cleanup is not None:
        app.state.token_cleanup.stop()

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Scope Platform API",
        version="0.1.0",
        description="Multi-tenant backend with JWT authentication and row-level tenant isolation",
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    # Middleware is added in reverse order (last added = outermost)

    # Tenant access middleware (inner -- resolves, authorizes, and binds the tenant)
    app.add_middleware(TenantAccessMiddleware, settings=settings)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-tenant-id", "x-tenant-name", "x-tenant-type", "X-Request-ID"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
