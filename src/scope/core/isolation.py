"""Row-level isolation guard.

TenantGuard wraps the narrow Persistence interface and is the only way
application code touches tenant-scoped tables. Two layers apply to every
guarded operation:

1. Application filter: reads, updates, and deletes get a
   ``tenant_id == <bound tenant>`` predicate; creates are stamped with the
   bound tenant; a caller-supplied tenant_id that differs is refused.
2. Storage policy: the bound tenant travels to the database as a
   transaction-local session setting, and the table's RLS policy
   re-checks every row.

No bound tenant means no query: the guard raises MissingTenantContext
before anything reaches the database. Tables without a ``tenant_id``
column and the tenant-defining tables in EXEMPT_TABLES pass straight
through.
"""

from __future__ import annotations

import uuid
from typing import Any, TypeVar

import structlog
from sqlalchemy import TextClause

from src.scope.core.monitoring import tenant_isolation_violations_total
from src.scope.core.persistence import Persistence
from src.scope.core.rls import EXEMPT_TABLES, SessionSettings
from src.scope.core.tenant import get_context
from src.scope.exceptions import Forbidden, MissingTenantContext

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT")

TENANT_COLUMN = "tenant_id"


def is_tenant_scoped(model: type[Any]) -> bool:
    table = model.__table__
    return table.name not in EXEMPT_TABLES and TENANT_COLUMN in table.c


def _column_value(model: type[Any], tenant_id: str) -> Any:
    """Convert the bound tenant id to the python type of the model's column."""
    column_type = model.__table__.c[TENANT_COLUMN].type
    try:
        python_type = column_type.python_type
    except NotImplementedError:
        return tenant_id
    if python_type is uuid.UUID:
        return uuid.UUID(tenant_id)
    return tenant_id


class TenantGuard:
    """Tenant-scoped facade over a Persistence implementation."""

    def __init__(self, persistence: Persistence, privileged: bool = False) -> None:
        self._persistence = persistence
        self._privileged = privileged

    @property
    def is_privileged(self) -> bool:
        return self._privileged

    def privileged(self) -> TenantGuard:
        """Guard for administrative code paths.

        Skips the application filter and asks the storage policy to admit
        every row. Each use is logged as ``isolation.privileged_access``.
        """
        return TenantGuard(self._persistence, privileged=True)

    # ── Scoping ────────────────────────────────────────────────────────────

    def _require_tenant(self, operation: str, target: str) -> str:
        tenant_id = get_context()
        if tenant_id is None:
            tenant_isolation_violations_total.labels(operation=operation).inc()
            logger.error("isolation.missing_tenant_context", operation=operation, target=target)
            raise MissingTenantContext()
        return tenant_id

    def _check_supplied(self, supplied: Any, tenant_id: str, operation: str, target: str) -> None:
        if supplied is not None and str(supplied) != tenant_id:
            logger.warning(
                "isolation.cross_tenant_attempt",
                operation=operation,
                target=target,
                bound_tenant=tenant_id,
                requested_tenant=str(supplied),
            )
            raise Forbidden("Operation targets a different tenant")

    def _scope(
        self, model: type[Any], operation: str, columns: dict[str, Any]
    ) -> tuple[dict[str, Any], SessionSettings]:
        """Apply the tenant predicate (or stamp) and build session settings."""
        target = model.__tablename__
        if self._privileged:
            logger.info("isolation.privileged_access", operation=operation, target=target)
            return dict(columns), SessionSettings(tenant_id=get_context(), bypass=True)
        if not is_tenant_scoped(model):
            return dict(columns), SessionSettings()

        tenant_id = self._require_tenant(operation, target)
        self._check_supplied(columns.get(TENANT_COLUMN), tenant_id, operation, target)
        scoped = dict(columns)
        scoped[TENANT_COLUMN] = _column_value(model, tenant_id)
        return scoped, SessionSettings(tenant_id=tenant_id)

    # ── Operations ─────────────────────────────────────────────────────────

    async def find_many(
        self,
        model: type[ModelT],
        order_by: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
        **filters: Any,
    ) -> list[ModelT]:
        scoped, settings = self._scope(model, "find", filters)
        return await self._persistence.find(
            model, scoped, settings, order_by=order_by, limit=limit, offset=offset
        )

    async def find_one(self, model: type[ModelT], **filters: Any) -> ModelT | None:
        rows = await self.find_many(model, limit=1, **filters)
        return rows[0] if rows else None

    async def create(self, model: type[ModelT], **values: Any) -> ModelT:
        scoped, settings = self._scope(model, "create", values)
        return await self._persistence.create(model, scoped, settings)

    async def update(
        self, model: type[ModelT], filters: dict[str, Any], values: dict[str, Any]
    ) -> list[ModelT]:
        scoped, settings = self._scope(model, "update", filters)
        values = dict(values)
        if not self._privileged and is_tenant_scoped(model):
            self._check_supplied(values.pop(TENANT_COLUMN, None), settings.tenant_id, "update", model.__tablename__)
        return await self._persistence.update(model, scoped, values, settings)

    async def delete(self, model: type[Any], **filters: Any) -> int:
        scoped, settings = self._scope(model, "delete", filters)
        return await self._persistence.delete(model, scoped, settings)

    async def raw(self, statement: str | TextClause, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Run raw SQL under the storage policy alone.

        The application filter cannot rewrite raw SQL, so a bound tenant is
        always required outside privileged mode.
        """
        if self._privileged:
            logger.info("isolation.privileged_access", operation="raw", target="sql")
            settings = SessionSettings(tenant_id=get_context(), bypass=True)
        else:
            settings = SessionSettings(tenant_id=self._require_tenant("raw", "sql"))
        return await self._persistence.execute(statement, params, settings)
