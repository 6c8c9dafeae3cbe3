"""Tenant context propagation via Python contextvars.

This module is the foundation of multi-tenant isolation. The tenant is bound
by the tenant middleware at the start of each request and is readable
anywhere in the call stack via get_context() / get_current_tenant(). The
isolation guard reads it on every data operation.

Each asyncio task runs with its own copy of the context, so concurrent
requests never observe each other's binding. Tasks spawned inside a request
inherit the request's tenant; rebinding inside a child task does not leak
back to the parent.
"""

from __future__ import annotations

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from src.scope.exceptions import MissingTenantContext

# ── Tenant Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantContext:
    """Immutable tenant binding for the current unit of work."""

    tenant_id: str
    tenant_name: str | None = None
    tenant_type: str | None = None


_tenant_context: contextvars.ContextVar[TenantContext | None] = contextvars.ContextVar(
    "tenant_context", default=None
)


def _coerce(tenant: TenantContext | str | None) -> TenantContext | None:
    if tenant is None or isinstance(tenant, TenantContext):
        return tenant
    return TenantContext(tenant_id=str(tenant))


def set_context(tenant: TenantContext | str | None) -> contextvars.Token[TenantContext | None]:
    """Bind a tenant (or None) for the current context. Returns a token for reset."""
    return _tenant_context.set(_coerce(tenant))


def get_context() -> str | None:
    """Return the bound tenant id, or None when nothing is bound."""
    ctx = _tenant_context.get()
    return ctx.tenant_id if ctx else None


def get_current_tenant() -> TenantContext:
    """Get the tenant context for the current unit of work.

    Raises MissingTenantContext if nothing is bound.
    """
    ctx = _tenant_context.get()
    if ctx is None:
        raise MissingTenantContext()
    return ctx


def require_tenant_id() -> str:
    return get_current_tenant().tenant_id


def clear_context(token: contextvars.Token[TenantContext | None] | None = None) -> None:
    """Unbind the tenant.

    With a token from set_context(), restores whatever was bound before;
    without one, binds None.
    """
    if token is not None:
        _tenant_context.reset(token)
    else:
        _tenant_context.set(None)


@contextmanager
def tenant_scope(tenant: TenantContext | str | None) -> Iterator[TenantContext | None]:
    """Bind a tenant for the duration of a block.

    Used by the tenant middleware around each request and by administrative
    jobs that act on behalf of one tenant. The previous binding is restored
    on exit, including when the block raises.
    """
    token = set_context(tenant)
    try:
        yield _tenant_context.get()
    finally:
        _tenant_context.reset(token)
