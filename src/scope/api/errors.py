"""Exception handlers rendering every failure in the error envelope.

``{"success": false, "error": {"code": ..., "message": ..., "details"?: ...}}``

Client errors (4xx) carry their own code and message. Server errors (5xx)
are logged with full detail here and reach the caller only as a generic
INTERNAL_ERROR, so infrastructure details never leak.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.scope.exceptions import InternalError, MissingTenantContext, ScopeError, ValidationFailed

logger = structlog.get_logger(__name__)

HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "TOO_MANY_REQUESTS",
}


def envelope(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"success": False, "error": error}


def error_response(exc: ScopeError, headers: dict[str, str] | None = None) -> JSONResponse:
    """Render a ScopeError. 5xx errors are replaced by the generic internal error."""
    if exc.status_code >= 500:
        generic = InternalError()
        content = envelope(generic.code, generic.message)
    else:
        content = {"success": False, "error": exc.to_dict()}
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer", **(headers or {})}
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


async def scope_exception_handler(request: Request, exc: ScopeError) -> JSONResponse:
    if isinstance(exc, MissingTenantContext):
        # Already counted by the guard; alarm with the request attached
        logger.error("isolation.missing_tenant_context", path=request.url.path, method=request.method)
    elif exc.status_code >= 500:
        logger.error(
            "request.internal_error",
            code=exc.code,
            error=exc.message,
            retryable=exc.retryable,
            path=request.url.path,
            exc_info=exc,
        )
    else:
        logger.info("request.rejected", code=exc.code, path=request.url.path)
    return error_response(exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.info("request.validation_failed", path=request.url.path, errors=errors)
    return error_response(ValidationFailed(details={"fields": errors}))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = HTTP_ERROR_CODES.get(exc.status_code, "INTERNAL_ERROR" if exc.status_code >= 500 else "ERROR")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=envelope(code, message),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("request.unhandled_exception", path=request.url.path, exc_info=exc)
    generic = InternalError()
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=envelope(generic.code, generic.message),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ScopeError, scope_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
