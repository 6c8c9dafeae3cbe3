"""Test fixtures and in-memory test doubles.

Provides:
- InMemoryUserRepository / InMemoryTokenStore / InMemoryTenantRepository
- InMemoryPersistence: rows per table behind a small connection pool whose
  connections carry transaction-local session settings, with the storage
  row security policy applied to every read and write
- RecordingSession: AsyncSession stand-in for the SQLAlchemy-backed stores
- FastAPI test app with collaborators placed on app.state (no lifespan, no
  database) and an httpx AsyncClient bound to it
"""

from __future__ import annotations

import asyncio
import re
import uuid
from collections import defaultdict
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import TextClause

from src.scope.config import get_settings
from src.scope.core.isolation import TenantGuard
from src.scope.core.rls import EXEMPT_TABLES, SessionSettings
from src.scope.core.security import create_access_token, hash_password
from src.scope.exceptions import Conflict, TokenStoreUnavailable
from src.scope.models import Tenant, TenantRole, TenantType, TenantUser, User
from src.scope.services.auth import AuthService
from src.scope.services.users import parse_uuid

TEST_PASSWORD = "correct-horse-42"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _same(left: Any, right: Any) -> bool:
    return left == right or str(left) == str(right)


# ── In-Memory Test Doubles ───────────────────────────────────────────────────


class InMemoryUserRepository:
    """In-memory UserRepository for testing without database."""

    def __init__(self) -> None:
        self.users: dict[uuid.UUID, User] = {}

    async def get(self, user_id: Any) -> User | None:
        parsed = parse_uuid(user_id)
        return self.users.get(parsed) if parsed else None

    async def find_by_email(self, email: str) -> User | None:
        for user in self.users.values():
            if user.email.lower() == email.lower():
                return user
        return None

    async def create(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        is_superuser: bool = False,
    ) -> User:
        if await self.find_by_email(email) is not None:
            raise Conflict("A user with this email already exists")
        user = User(
            id=uuid.uuid4(),
            email=email.lower(),
            password=password_hash,
            first_name=first_name,
            last_name=last_name,
            is_active=True,
            is_superuser=is_superuser,
            created_at=_now(),
        )
        self.users[user.id] = user
        return user


class InMemoryTokenStore:
    """In-memory TokenStore. Set ``fail = True`` to simulate an outage."""

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise TokenStoreUnavailable()

    async def blacklist(self, token: str, user_id: str, expires_at: datetime, reason: str | None = None) -> dict:
        self._check()
        return self.records.setdefault(
            token,
            {"token": token, "user_id": user_id, "expires_at": expires_at, "reason": reason},
        )

    async def consume(self, token: str, user_id: str, expires_at: datetime, reason: str | None = None) -> bool:
        self._check()
        if token in self.records:
            return False
        self.records[token] = {"token": token, "user_id": user_id, "expires_at": expires_at, "reason": reason}
        return True

    async def is_blacklisted(self, token: str) -> bool:
        self._check()
        return token in self.records

    async def purge_expired(self, now: datetime | None = None) -> int:
        self._check()
        now = now or _now()
        expired = [token for token, record in self.records.items() if record["expires_at"] < now]
        for token in expired:
            del self.records[token]
        return len(expired)

    async def remove(self, token: str) -> None:
        self.records.pop(token, None)


class InMemoryTenantRepository:
    """In-memory TenantRepository for testing without database."""

    def __init__(self) -> None:
        self.tenants: dict[uuid.UUID, Tenant] = {}
        self.memberships: list[TenantUser] = []

    async def create(self, data: dict[str, Any], created_by: Any) -> Tenant:
        creator = parse_uuid(created_by)
        tenant = Tenant(
            id=uuid.uuid4(),
            name=data["name"],
            type=data.get("type") or TenantType.SCHOOL,
            description=data.get("description"),
            website=data.get("website"),
            logo_url=data.get("logo_url"),
            contact_email=data.get("contact_email"),
            contact_phone=data.get("contact_phone"),
            created_by=creator,
            updated_by=creator,
            created_at=_now(),
        )
        self.tenants[tenant.id] = tenant
        if creator is not None:
            await self.add_member(tenant.id, creator, TenantRole.OWNER, creator)
        return tenant

    async def get(self, tenant_id: Any) -> Tenant | None:
        parsed = parse_uuid(tenant_id)
        return self.tenants.get(parsed) if parsed else None

    async def get_for_user(self, tenant_id: Any, user: User) -> Tenant | None:
        tenant = await self.get(tenant_id)
        if tenant is None:
            return None
        if user.is_superuser or await self.get_membership(user.id, tenant.id):
            return tenant
        return None

    async def list_for_user(
        self,
        user: User,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> tuple[list[Tenant], int]:
        visible = [
            tenant
            for tenant in self.tenants.values()
            if user.is_superuser or any(
                m.tenant_id == tenant.id and m.user_id == user.id and m.is_active for m in self.memberships
            )
        ]
        attr = {"name": "name", "type": "type", "createdAt": "created_at", "updatedAt": "updated_at"}[sort_by]
        visible.sort(key=lambda t: str(getattr(t, attr) or ""), reverse=sort_order == "desc")
        start = (page - 1) * limit
        return visible[start:start + limit], len(visible)

    async def update(self, tenant_id: Any, values: dict[str, Any], updated_by: Any) -> Tenant | None:
        tenant = await self.get(tenant_id)
        if tenant is None:
            return None
        for key, value in values.items():
            setattr(tenant, key, value)
        tenant.updated_by = parse_uuid(updated_by)
        tenant.updated_at = _now()
        return tenant

    async def delete(self, tenant_id: Any, requested_by: Any) -> bool:
        tenant = await self.get(tenant_id)
        if tenant is None:
            return False
        requester = parse_uuid(requested_by)
        others = [
            m for m in self.memberships
            if m.tenant_id == tenant.id and m.is_active and m.user_id != requester
        ]
        if others:
            raise Conflict("Cannot delete tenant with active users", details={"activeUsers": len(others)})
        del self.tenants[tenant.id]
        self.memberships = [m for m in self.memberships if m.tenant_id != tenant.id]
        return True

    async def get_membership(self, user_id: Any, tenant_id: Any) -> TenantUser | None:
        for membership in self.memberships:
            if (
                _same(membership.user_id, user_id)
                and _same(membership.tenant_id, tenant_id)
                and membership.is_active
            ):
                return membership
        return None

    async def user_count(self, tenant_id: Any) -> int:
        return sum(1 for m in self.memberships if _same(m.tenant_id, tenant_id) and m.is_active)

    async def add_member(self, tenant_id: Any, user_id: Any, role: TenantRole, created_by: Any) -> TenantUser:
        if any(_same(m.user_id, user_id) and _same(m.tenant_id, tenant_id) for m in self.memberships):
            raise Conflict("User is already a member of this tenant")
        membership = TenantUser(
            id=uuid.uuid4(),
            tenant_id=parse_uuid(tenant_id),
            user_id=parse_uuid(user_id),
            role=role,
            is_active=True,
            created_by=parse_uuid(created_by),
            created_at=_now(),
        )
        self.memberships.append(membership)
        return membership


class RowSecurityViolation(Exception):
    """New row violates the table's row security policy."""


class InMemoryPersistence:
    """Persistence double that enforces the storage row security policy.

    Statements borrow a connection from a small pool. The session settings
    are written onto that connection for the duration of one transaction,
    the task yields to the event loop (so concurrent tasks interleave on the
    shared pool), and only then is the statement evaluated against the
    settings the connection holds at that moment. Settings are cleared when
    the connection returns to the pool, as transaction-local settings are.
    """

    def __init__(self, pool_size: int = 2) -> None:
        self.tables: dict[str, list[Any]] = defaultdict(list)
        self.calls: list[tuple[str, SessionSettings]] = []
        self._pool: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        for index in range(pool_size):
            self._pool.put_nowait({"id": index, "settings": None})

    @asynccontextmanager
    async def _transaction(self, operation: str, settings: SessionSettings) -> AsyncIterator[dict[str, Any]]:
        conn = await self._pool.get()
        try:
            conn["settings"] = settings
            self.calls.append((operation, settings))
            await asyncio.sleep(0)
            yield conn
        finally:
            conn["settings"] = None
            self._pool.put_nowait(conn)

    @staticmethod
    def _admits(conn: dict[str, Any], table: str, row: Any) -> bool:
        if table in EXEMPT_TABLES or not hasattr(row, "tenant_id"):
            return True
        settings: SessionSettings | None = conn["settings"]
        if settings is None:
            return False
        if settings.bypass:
            return True
        return bool(settings.tenant_id) and str(row.tenant_id) == settings.tenant_id

    def _matching(self, conn: dict[str, Any], model: type[Any], filters: dict[str, Any]) -> list[Any]:
        table = model.__tablename__
        return [
            row
            for row in self.tables[table]
            if self._admits(conn, table, row)
            and all(_same(getattr(row, key), value) for key, value in filters.items())
        ]

    def seed(self, instance: Any) -> Any:
        """Insert a row directly, bypassing every check."""
        if getattr(instance, "id", None) is None:
            instance.id = uuid.uuid4()
        if getattr(instance, "created_at", None) is None:
            instance.created_at = _now()
        self.tables[instance.__tablename__].append(instance)
        return instance

    async def find(
        self,
        model: type[Any],
        filters: dict[str, Any],
        settings: SessionSettings,
        order_by: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Any]:
        async with self._transaction("find", settings) as conn:
            rows = self._matching(conn, model, filters)
        if order_by:
            rows.sort(key=lambda row: str(getattr(row, order_by.lstrip("-"))), reverse=order_by.startswith("-"))
        rows = rows[offset or 0:]
        return rows[:limit] if limit is not None else rows

    async def create(self, model: type[Any], values: dict[str, Any], settings: SessionSettings) -> Any:
        async with self._transaction("create", settings) as conn:
            instance = model(**values)
            if not self._admits(conn, model.__tablename__, instance):
                raise RowSecurityViolation(model.__tablename__)
            return self.seed(instance)

    async def update(
        self,
        model: type[Any],
        filters: dict[str, Any],
        values: dict[str, Any],
        settings: SessionSettings,
    ) -> list[Any]:
        async with self._transaction("update", settings) as conn:
            rows = self._matching(conn, model, filters)
            for row in rows:
                for key, value in values.items():
                    setattr(row, key, value)
                if not self._admits(conn, model.__tablename__, row):
                    raise RowSecurityViolation(model.__tablename__)
            return rows

    async def delete(self, model: type[Any], filters: dict[str, Any], settings: SessionSettings) -> int:
        async with self._transaction("delete", settings) as conn:
            rows = self._matching(conn, model, filters)
            table = self.tables[model.__tablename__]
            for row in rows:
                table.remove(row)
            return len(rows)

    async def execute(
        self,
        statement: str | TextClause,
        params: dict[str, Any] | None,
        settings: SessionSettings,
    ) -> list[dict[str, Any]]:
        sql = statement.text if isinstance(statement, TextClause) else statement
        match = re.search(r"SELECT\s+(.+?)\s+FROM\s+(\w+)", sql, re.IGNORECASE | re.DOTALL)
        assert match, f"unsupported statement: {sql}"
        columns, table = match.group(1), match.group(2)
        async with self._transaction("execute", settings) as conn:
            rows = [
                row
                for row in self.tables[table]
                if self._admits(conn, table, row)
                and all(_same(getattr(row, key), value) for key, value in (params or {}).items())
            ]
        names = (
            [column.key for column in rows[0].__table__.columns] if rows and columns.strip() == "*"
            else [name.strip() for name in columns.split(",")]
        )
        return [{name: getattr(row, name) for name in names} for row in rows]


class _RecordingTransaction:
    def __init__(self, session: RecordingSession) -> None:
        self.session = session

    async def __aenter__(self) -> RecordingSession:
        return self.session

    async def __aexit__(self, *exc_info: Any) -> bool:
        return False


class RecordingSession:
    """Stand-in for AsyncSession: records statements, replays queued results.

    Each ``execute`` pops the next entry from ``results``; an exception
    entry is raised instead of returned. Usable as ``async with factory()``
    and ``session.begin()``.
    """

    def __init__(self, results: list[Any] | None = None) -> None:
        self.results = list(results or [])
        self.statements: list[tuple[Any, Any]] = []
        self.added: list[Any] = []
        self.opened = 0
        self.transactions = 0

    async def __aenter__(self) -> RecordingSession:
        self.opened += 1
        return self

    async def __aexit__(self, *exc_info: Any) -> bool:
        return False

    def begin(self) -> _RecordingTransaction:
        self.transactions += 1
        return _RecordingTransaction(self)

    async def execute(self, statement: Any, params: Any = None) -> Any:
        self.statements.append((statement, params))
        result = self.results.pop(0) if self.results else MagicMock()
        if isinstance(result, BaseException):
            raise result
        return result

    async def scalar(self, statement: Any) -> Any:
        self.statements.append((statement, None))
        return self.results.pop(0) if self.results else None

    def add(self, instance: Any) -> None:
        self.added.append(instance)

    async def flush(self) -> None:
        return None

    async def refresh(self, instance: Any) -> None:
        return None


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def password_hash() -> str:
    """bcrypt hash of TEST_PASSWORD, computed once."""
    return hash_password(TEST_PASSWORD)


@pytest.fixture
def user_repo() -> InMemoryUserRepository:
    return InMemoryUserRepository()


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def tenant_repo() -> InMemoryTenantRepository:
    return InMemoryTenantRepository()


@pytest.fixture
def persistence() -> InMemoryPersistence:
    return InMemoryPersistence()


@pytest.fixture
def guard(persistence) -> TenantGuard:
    return TenantGuard(persistence)


@pytest.fixture
def auth_service(user_repo, token_store) -> AuthService:
    return AuthService(user_repo, token_store, get_settings())


@pytest.fixture
def make_user(user_repo, password_hash):
    """Factory: store a user whose password is TEST_PASSWORD."""

    async def _make(email: str | None = None, is_superuser: bool = False, is_active: bool = True) -> User:
        user = await user_repo.create(
            email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
            password_hash=password_hash,
            first_name="Test",
            last_name="User",
            is_superuser=is_superuser,
        )
        user.is_active = is_active
        return user

    return _make


@pytest.fixture
def auth_headers():
    """Factory: Authorization header carrying a fresh access token for a user."""

    def _headers(user: User, **extra: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(str(user.id), user.email)}", **extra}

    return _headers


@pytest_asyncio.fixture
async def app(user_repo, token_store, tenant_repo, persistence, auth_service):
    """FastAPI app with in-memory collaborators on app.state."""
    from src.scope.main import create_app

    application = create_app()
    application.state.redis = None
    application.state.user_repository = user_repo
    application.state.token_store = token_store
    application.state.tenant_repository = tenant_repo
    application.state.tenant_guard = TenantGuard(persistence)
    application.state.auth_service = auth_service
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def recording_session():
    """Factory: a RecordingSession and a session factory that always returns it."""

    def _make(*results: Any) -> tuple[RecordingSession, Any]:
        session = RecordingSession(list(results))
        return session, lambda: session

    return _make


@pytest.fixture
def user_password() -> str:
    """Plaintext password of every user built by make_user."""
    return TEST_PASSWORD
