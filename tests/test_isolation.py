"""Row-level isolation tests.

Exercises both layers against InMemoryPersistence: the application filter
in TenantGuard, and the storage policy the double enforces per pooled
connection from transaction-local session settings.
"""

from __future__ import annotations

import asyncio
import uuid

import pytest
from prometheus_client import REGISTRY

from src.scope.core.isolation import TenantGuard, is_tenant_scoped
from src.scope.core.rls import SessionSettings
from src.scope.core.tenant import tenant_scope
from src.scope.exceptions import Forbidden, MissingTenantContext
from src.scope.models import FeatureFlag, Tenant, TenantType, User

T1 = str(uuid.uuid4())
T2 = str(uuid.uuid4())


@pytest.fixture
def seeded(persistence):
    """One flag per tenant: T1 has 'beta-ui', T2 has 'new-billing'."""
    t1_flag = persistence.seed(FeatureFlag(tenant_id=uuid.UUID(T1), key="beta-ui", enabled=True))
    t2_flag = persistence.seed(FeatureFlag(tenant_id=uuid.UUID(T2), key="new-billing", enabled=True))
    return t1_flag, t2_flag


def _violations(operation: str) -> float:
    return REGISTRY.get_sample_value("tenant_isolation_violations_total", {"operation": operation}) or 0.0


# ── Application filter ───────────────────────────────────────────────────────


class TestApplicationFilter:
    async def test_list_returns_only_bound_tenant_rows(self, guard, seeded):
        t1_flag, _ = seeded
        with tenant_scope(T1):
            flags = await guard.find_many(FeatureFlag)
        assert [flag.id for flag in flags] == [t1_flag.id]

    async def test_find_one_cannot_reach_other_tenant_row(self, guard, seeded):
        _, t2_flag = seeded
        with tenant_scope(T1):
            assert await guard.find_one(FeatureFlag, id=t2_flag.id) is None

    async def test_create_stamps_bound_tenant(self, guard, persistence):
        with tenant_scope(T1):
            flag = await guard.create(FeatureFlag, key="dark-mode", enabled=False)
        assert str(flag.tenant_id) == T1
        assert persistence.tables["feature_flags"] == [flag]

    async def test_caller_supplied_foreign_tenant_is_refused(self, guard, persistence, seeded):
        with tenant_scope(T1):
            with pytest.raises(Forbidden):
                await guard.find_many(FeatureFlag, tenant_id=T2)
            with pytest.raises(Forbidden):
                await guard.create(FeatureFlag, tenant_id=T2, key="x", enabled=False)
            with pytest.raises(Forbidden):
                await guard.update(FeatureFlag, {"key": "beta-ui"}, {"tenant_id": T2})
        assert persistence.calls == []

    async def test_caller_supplied_matching_tenant_is_accepted(self, guard, seeded):
        with tenant_scope(T1):
            flags = await guard.find_many(FeatureFlag, tenant_id=T1)
        assert len(flags) == 1

    async def test_update_and_delete_only_touch_bound_tenant(self, guard, seeded):
        _, t2_flag = seeded
        with tenant_scope(T1):
            updated = await guard.update(FeatureFlag, {"id": t2_flag.id}, {"enabled": False})
            deleted = await guard.delete(FeatureFlag, id=t2_flag.id)
        assert updated == []
        assert deleted == 0
        assert t2_flag.enabled is True

    async def test_exempt_models_pass_through_without_context(self, guard, persistence):
        persistence.seed(Tenant(name="Northfield", type=TenantType.SCHOOL))
        persistence.seed(User(email="a@example.com", first_name="A", last_name="B", password="x"))
        assert len(await guard.find_many(Tenant)) == 1
        assert len(await guard.find_many(User)) == 1
        assert persistence.calls[0][1] == SessionSettings()

    def test_scoped_and_exempt_classification(self):
        assert is_tenant_scoped(FeatureFlag)
        assert not is_tenant_scoped(Tenant)
        assert not is_tenant_scoped(User)


# ── Missing context ──────────────────────────────────────────────────────────


class TestMissingContext:
    @pytest.mark.parametrize("operation", ["find", "create", "update", "delete", "raw"])
    async def test_guarded_operation_without_tenant_fails_closed(self, guard, persistence, seeded, operation):
        before = _violations(operation)
        calls = {
            "find": lambda: guard.find_many(FeatureFlag),
            "create": lambda: guard.create(FeatureFlag, key="x", enabled=False),
            "update": lambda: guard.update(FeatureFlag, {"key": "beta-ui"}, {"enabled": False}),
            "delete": lambda: guard.delete(FeatureFlag, key="beta-ui"),
            "raw": lambda: guard.raw("SELECT key FROM feature_flags"),
        }
        with pytest.raises(MissingTenantContext):
            await calls[operation]()
        assert persistence.calls == []
        assert _violations(operation) == before + 1


# ── Storage policy ───────────────────────────────────────────────────────────


class TestStoragePolicy:
    async def test_raw_query_sees_only_bound_tenant(self, guard, seeded):
        with tenant_scope(T1):
            rows = await guard.raw("SELECT key, tenant_id FROM feature_flags")
        assert rows == [{"key": "beta-ui", "tenant_id": uuid.UUID(T1)}]

    async def test_raw_query_with_params(self, guard, seeded):
        with tenant_scope(T1):
            assert await guard.raw("SELECT key FROM feature_flags WHERE key = :key", {"key": "new-billing"}) == []
        with tenant_scope(T2):
            assert await guard.raw("SELECT key FROM feature_flags WHERE key = :key", {"key": "new-billing"}) == [
                {"key": "new-billing"}
            ]

    async def test_policy_denies_when_setting_unset_or_empty(self, persistence, seeded):
        assert await persistence.find(FeatureFlag, {}, SessionSettings()) == []
        assert await persistence.find(FeatureFlag, {}, SessionSettings(tenant_id="")) == []

    async def test_policy_filters_even_without_application_predicate(self, persistence, seeded):
        t1_flag, _ = seeded
        rows = await persistence.find(FeatureFlag, {}, SessionSettings(tenant_id=T1))
        assert rows == [t1_flag]

    async def test_guard_sends_bound_tenant_in_session_settings(self, guard, persistence, seeded):
        with tenant_scope(T2):
            await guard.find_many(FeatureFlag)
        assert persistence.calls == [("find", SessionSettings(tenant_id=T2))]


# ── Privileged access ────────────────────────────────────────────────────────


class TestPrivileged:
    async def test_privileged_guard_sees_all_tenants(self, guard, persistence, seeded):
        flags = await guard.privileged().find_many(FeatureFlag, order_by="key")
        assert [flag.key for flag in flags] == ["beta-ui", "new-billing"]
        assert persistence.calls[-1][1].bypass is True

    async def test_privileged_raw_needs_no_context(self, guard, seeded):
        rows = await guard.privileged().raw("SELECT key FROM feature_flags")
        assert {row["key"] for row in rows} == {"beta-ui", "new-billing"}

    def test_privileged_returns_new_guard(self, guard):
        admin = guard.privileged()
        assert admin.is_privileged
        assert not guard.is_privileged


# ── Concurrency ──────────────────────────────────────────────────────────────


class TestConcurrency:
    async def test_interleaved_requests_never_cross_tenants(self, persistence, seeded):
        """Tasks for T1 and T2 share a two-connection pool and interleave."""
        guard = TenantGuard(persistence)
        results: dict[str, set[str]] = {T1: set(), T2: set()}

        async def request(tenant_id: str) -> None:
            with tenant_scope(tenant_id):
                for _ in range(10):
                    flags = await guard.find_many(FeatureFlag)
                    results[tenant_id].update(str(flag.tenant_id) for flag in flags)
                    rows = await guard.raw("SELECT tenant_id FROM feature_flags")
                    results[tenant_id].update(str(row["tenant_id"]) for row in rows)

        await asyncio.gather(*(request(tenant) for tenant in [T1, T2] * 5))

        assert results[T1] == {T1}
        assert results[T2] == {T2}

    async def test_settings_do_not_survive_connection_return(self, persistence, seeded):
        await persistence.find(FeatureFlag, {}, SessionSettings(tenant_id=T1))
        # Next borrower of any pooled connection with no settings sees nothing
        for _ in range(2):
            assert await persistence.find(FeatureFlag, {}, SessionSettings()) == []
