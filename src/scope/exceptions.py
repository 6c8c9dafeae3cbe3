"""Error taxonomy shared by services, middleware, and API handlers.

Every error carries a stable machine-readable ``code`` and the HTTP status
it maps to. The API layer renders them in the
``{"success": false, "error": {"code", "message"}}`` envelope.
"""

from __future__ import annotations

from typing import Any


class ScopeError(Exception):
    """Base exception for all platform errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"
    retryable: bool = False

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        self.message = message or self.message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to the error part of the response envelope."""
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error


# ── Authentication ───────────────────────────────────────────────────────────


class InvalidCredentials(ScopeError):
    code = "INVALID_CREDENTIALS"
    status_code = 401
    message = "Invalid email or password"


class NotAuthenticated(ScopeError):
    """Missing, malformed, or expired access token."""

    code = "UNAUTHORIZED"
    status_code = 401
    message = "Not authenticated"


class InvalidRefreshToken(ScopeError):
    """Expired, malformed, wrong-type, reused, or unknown-user refresh token."""

    code = "INVALID_REFRESH_TOKEN"
    status_code = 401
    message = "Invalid refresh token"


class TokenRevoked(ScopeError):
    code = "TOKEN_REVOKED"
    status_code = 401
    message = "Token has been revoked"


# ── Tenancy ──────────────────────────────────────────────────────────────────


class MissingTenant(ScopeError):
    code = "MISSING_TENANT"
    status_code = 400
    message = "Tenant ID is required"


class TenantNotFound(ScopeError):
    code = "TENANT_NOT_FOUND"
    status_code = 404
    message = "Tenant not found"


class Forbidden(ScopeError):
    code = "FORBIDDEN"
    status_code = 403
    message = "You do not have access to this tenant"


class MissingTenantContext(ScopeError):
    """A guarded data operation ran with no tenant bound.

    Always a programming error at the call site. The operation is refused
    before anything reaches the database.
    """

    code = "MISSING_TENANT_CONTEXT"
    status_code = 500
    message = "No tenant context bound for a tenant-scoped operation"


# ── Generic ──────────────────────────────────────────────────────────────────


class NotFound(ScopeError):
    code = "NOT_FOUND"
    status_code = 404
    message = "Resource not found"


class Conflict(ScopeError):
    code = "CONFLICT"
    status_code = 409
    message = "Resource already exists"


class ValidationFailed(ScopeError):
    code = "VALIDATION_ERROR"
    status_code = 400
    message = "Request validation failed"


class InternalError(ScopeError):
    code = "INTERNAL_ERROR"
    status_code = 500


class TokenStoreUnavailable(InternalError):
    """The revocation store could not be reached after retries."""

    retryable = True
    message = "Token revocation store unavailable"
