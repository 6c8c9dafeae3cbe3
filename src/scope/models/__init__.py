"""Persistence models. Importing this package registers every table on Base.metadata."""

from src.scope.models.feature_flag import FeatureFlag
from src.scope.models.tenant import MANAGER_ROLES, Tenant, TenantRole, TenantType, TenantUser
from src.scope.models.token import BlacklistedToken
from src.scope.models.user import User

__all__ = [
    "MANAGER_ROLES",
    "BlacklistedToken",
    "FeatureFlag",
    "Tenant",
    "TenantRole",
    "TenantType",
    "TenantUser",
    "User",
]
