"""API middleware package."""

from src.scope.api.middleware.logging import LoggingMiddleware
from src.scope.api.middleware.tenant import TenantAccessMiddleware

__all__ = ["LoggingMiddleware", "TenantAccessMiddleware"]
