"""Tenant directory: tenants and memberships.

Tenants and tenant_users are exempt from tenant isolation (they define the
partitions), so this repository works on plain sessions. Access control is
explicit here instead: non-superusers only ever see tenants they hold an
active membership in.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.scope.exceptions import Conflict
from src.scope.models.tenant import Tenant, TenantRole, TenantUser
from src.scope.models.user import User
from src.scope.services.users import parse_uuid

logger = structlog.get_logger(__name__)

SORT_COLUMNS = {
    "name": Tenant.name,
    "type": Tenant.type,
    "createdAt": Tenant.created_at,
    "updatedAt": Tenant.updated_at,
}

UPDATABLE_FIELDS = frozenset(
    {"name", "type", "description", "website", "logo_url", "contact_email", "contact_phone"}
)


class TenantRepository:
    """Async CRUD for tenants and their memberships.

    Args:
        session_factory: async_sessionmaker producing AsyncSession instances.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ── Tenants ────────────────────────────────────────────────────────────

    async def create(self, data: dict[str, Any], created_by: Any) -> Tenant:
        """Create a tenant and the creator's OWNER membership in one transaction."""
        creator = parse_uuid(created_by)
        values = {key: value for key, value in data.items() if key in UPDATABLE_FIELDS}
        tenant = Tenant(**values, created_by=creator, updated_by=creator)
        async with self._session_factory() as session, session.begin():
            session.add(tenant)
            await session.flush()
            session.add(
                TenantUser(
                    user_id=creator,
                    tenant_id=tenant.id,
                    role=TenantRole.OWNER,
                    is_active=True,
                    created_by=creator,
                    updated_by=creator,
                )
            )
            await session.flush()
            await session.refresh(tenant)
        logger.info("tenants.created", tenant_id=str(tenant.id), created_by=str(creator))
        return tenant

    async def get(self, tenant_id: Any) -> Tenant | None:
        parsed = parse_uuid(tenant_id)
        if parsed is None:
            return None
        async with self._session_factory() as session:
            return await session.get(Tenant, parsed)

    def _visible_to(self, user: User) -> Any:
        stmt = select(Tenant)
        if not user.is_superuser:
            stmt = stmt.join(TenantUser, TenantUser.tenant_id == Tenant.id).where(
                TenantUser.user_id == user.id,
                TenantUser.is_active.is_(True),
            )
        return stmt

    async def get_for_user(self, tenant_id: Any, user: User) -> Tenant | None:
        parsed = parse_uuid(tenant_id)
        if parsed is None:
            return None
        async with self._session_factory() as session:
            result = await session.execute(self._visible_to(user).where(Tenant.id == parsed))
            return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user: User,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> tuple[list[Tenant], int]:
        column = SORT_COLUMNS.get(sort_by, Tenant.created_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        stmt = self._visible_to(user)
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
            result = await session.execute(stmt.order_by(ordering).offset((page - 1) * limit).limit(limit))
            return list(result.scalars().all()), int(total or 0)

    async def update(self, tenant_id: Any, values: dict[str, Any], updated_by: Any) -> Tenant | None:
        parsed = parse_uuid(tenant_id)
        if parsed is None:
            return None
        changes = {key: value for key, value in values.items() if key in UPDATABLE_FIELDS}
        changes["updated_by"] = parse_uuid(updated_by)
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(Tenant).where(Tenant.id == parsed).values(**changes).returning(Tenant)
            )
            tenant = result.scalar_one_or_none()
        if tenant is not None:
            logger.info("tenants.updated", tenant_id=str(parsed), fields=sorted(changes))
        return tenant

    async def delete(self, tenant_id: Any, requested_by: Any) -> bool:
        """Delete a tenant. Conflict while members other than the requester are active."""
        parsed = parse_uuid(tenant_id)
        if parsed is None:
            return False
        requester = parse_uuid(requested_by)
        async with self._session_factory() as session, session.begin():
            others = await session.scalar(
                select(func.count(TenantUser.id)).where(
                    TenantUser.tenant_id == parsed,
                    TenantUser.is_active.is_(True),
                    TenantUser.user_id != requester,
                )
            )
            if others:
                raise Conflict(
                    "Cannot delete tenant with active users",
                    details={"activeUsers": int(others)},
                )
            result = await session.execute(delete(Tenant).where(Tenant.id == parsed))
            deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.info("tenants.deleted", tenant_id=str(parsed), requested_by=str(requester))
        return deleted

    # ── Memberships ────────────────────────────────────────────────────────

    async def get_membership(self, user_id: Any, tenant_id: Any) -> TenantUser | None:
        """Active membership of a user in a tenant, or None."""
        user_uuid, tenant_uuid = parse_uuid(user_id), parse_uuid(tenant_id)
        if user_uuid is None or tenant_uuid is None:
            return None
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantUser).where(
                    TenantUser.user_id == user_uuid,
                    TenantUser.tenant_id == tenant_uuid,
                    TenantUser.is_active.is_(True),
                )
            )
            return result.scalar_one_or_none()

    async def user_count(self, tenant_id: Any) -> int:
        parsed = parse_uuid(tenant_id)
        if parsed is None:
            return 0
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count(TenantUser.id)).where(
                    TenantUser.tenant_id == parsed,
                    TenantUser.is_active.is_(True),
                )
            )
            return int(count or 0)

    async def add_member(self, tenant_id: Any, user_id: Any, role: TenantRole, created_by: Any) -> TenantUser:
        creator = parse_uuid(created_by)
        membership = TenantUser(
            tenant_id=parse_uuid(tenant_id),
            user_id=parse_uuid(user_id),
            role=role,
            is_active=True,
            created_by=creator,
            updated_by=creator,
        )
        try:
            async with self._session_factory() as session, session.begin():
                session.add(membership)
                await session.flush()
                await session.refresh(membership)
        except IntegrityError as exc:
            raise Conflict("User is already a member of this tenant") from exc
        logger.info(
            "tenants.member_added",
            tenant_id=str(tenant_id),
            user_id=str(user_id),
            role=role.value,
        )
        return membership
