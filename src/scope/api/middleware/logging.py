"""Request logging and structlog setup.

One ``request_completed`` event per request carrying method, path, status,
latency, and the tenant/user ids the tenant middleware left on
``request.state``. The request id is bound into structlog's contextvars for
the lifetime of the request, so every event logged by services downstream
carries it too, and it is echoed back as X-Request-ID.
"""

from __future__ import annotations

import logging
import re
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.scope.config import Environment, get_settings

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{8,64}$")


def configure_structlog() -> None:
    """JSON lines in production, coloured console output elsewhere."""
    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format="%(message)s")

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.ENVIRONMENT == Environment.production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def request_id_for(request: Request) -> str:
    """Reuse a well-formed inbound X-Request-ID, otherwise mint one."""
    inbound = request.headers.get(REQUEST_ID_HEADER)
    if inbound and _REQUEST_ID_RE.match(inbound):
        return inbound
    return str(uuid.uuid4())


def _level_for(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code >= 400:
        return "warning"
    return "info"


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request_id_for(request)
        request.state.request_id = request_id
        started = time.monotonic()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            try:
                response = await call_next(request)
            except Exception:
                self._log(request, "error", "request_error", 500, started)
                raise

            response.headers[REQUEST_ID_HEADER] = request_id
            self._log(
                request, _level_for(response.status_code), "request_completed", response.status_code, started
            )
        return response

    @staticmethod
    def _log(request: Request, level: str, event: str, status_code: int, started: float) -> None:
        state = request.state
        getattr(logger, level)(
            event,
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            tenant_id=getattr(state, "tenant_id", None),
            user_id=getattr(state, "user_id", None),
        )
