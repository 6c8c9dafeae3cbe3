"""Storage-layer row security policies.

Every tenant-scoped table gets ENABLE + FORCE ROW LEVEL SECURITY and one
policy whose USING and WITH CHECK clauses compare the row's ``tenant_id``
with the transaction-local ``app.current_tenant_id`` setting. A privileged
session sets ``app.bypass_rls`` instead. An unset or empty tenant setting
admits no rows.

The settings are written with ``set_config(..., true)``, which scopes them
to the current transaction. Callers must therefore apply them inside the
same transaction as the guarded statement (see SqlAlchemyPersistence).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import MetaData, Table, bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

logger = logging.getLogger(__name__)

TENANT_SETTING = "app.current_tenant_id"
BYPASS_SETTING = "app.bypass_rls"

# Tenant-defining or inherently cross-tenant tables
EXEMPT_TABLES = frozenset({"tenants", "tenant_users", "users", "blacklisted_tokens"})

POLICY_EXPRESSION = (
    f"current_setting('{BYPASS_SETTING}', true) = 'true' "
    f"OR (nullif(current_setting('{TENANT_SETTING}', true), '') IS NOT NULL "
    f"AND tenant_id::text = current_setting('{TENANT_SETTING}', true))"
)

SET_SESSION_SQL = text(
    f"SELECT set_config('{TENANT_SETTING}', :tenant_id, true), "
    f"set_config('{BYPASS_SETTING}', :bypass, true)"
)


@dataclass(frozen=True)
class SessionSettings:
    """Session-local values the storage policy evaluates for one statement."""

    tenant_id: str | None = None
    bypass: bool = False

    def as_params(self) -> dict[str, str]:
        return {
            "tenant_id": self.tenant_id or "",
            "bypass": "true" if self.bypass else "false",
        }


# ── Policy DDL ──────────────────────────────────────────────────────────────


def policy_name(table_name: str) -> str:
    return f"{table_name}_tenant_isolation"


def tenant_scoped_tables(metadata: MetaData) -> list[Table]:
    """Tables carrying a ``tenant_id`` column that are not exempt."""
    return [
        table
        for table in metadata.sorted_tables
        if table.name not in EXEMPT_TABLES and "tenant_id" in table.c
    ]


def policy_statements(table: Table | str) -> list[str]:
    """DDL that enables, forces, and (re)creates the isolation policy."""
    name = table if isinstance(table, str) else table.name
    policy = policy_name(name)
    return [
        f'ALTER TABLE "{name}" ENABLE ROW LEVEL SECURITY',
        f'ALTER TABLE "{name}" FORCE ROW LEVEL SECURITY',
        f'DROP POLICY IF EXISTS {policy} ON "{name}"',
        (
            f'CREATE POLICY {policy} ON "{name}" FOR ALL '
            f"USING ({POLICY_EXPRESSION}) "
            f"WITH CHECK ({POLICY_EXPRESSION})"
        ),
    ]


async def apply_rls_policies(conn: AsyncConnection, metadata: MetaData) -> list[str]:
    """Install policies on every tenant-scoped table. Returns the table names."""
    applied = []
    for table in tenant_scoped_tables(metadata):
        for statement in policy_statements(table):
            await conn.execute(text(statement))
        applied.append(table.name)
        logger.info("Row level security applied to %s", table.name)
    return applied


async def check_rls_policies(conn: AsyncConnection, metadata: MetaData) -> dict[str, dict[str, bool]]:
    """Report whether RLS is enabled, forced, and the policy exists per table."""
    tables = [table.name for table in tenant_scoped_tables(metadata)]
    report = {name: {"enabled": False, "forced": False, "policy": False} for name in tables}
    if not tables:
        return report

    result = await conn.execute(
        text(
            "SELECT relname, relrowsecurity, relforcerowsecurity FROM pg_class "
            "WHERE relkind = 'r' AND relname IN :names"
        ).bindparams(bindparam("names", expanding=True)),
        {"names": tables},
    )
    for row in result:
        report[row.relname]["enabled"] = bool(row.relrowsecurity)
        report[row.relname]["forced"] = bool(row.relforcerowsecurity)

    result = await conn.execute(
        text("SELECT tablename FROM pg_policies WHERE policyname IN :names").bindparams(
            bindparam("names", expanding=True)
        ),
        {"names": [policy_name(name) for name in tables]},
    )
    for row in result:
        if row.tablename in report:
            report[row.tablename]["policy"] = True
    return report


def policies_healthy(report: dict[str, dict[str, Any]]) -> bool:
    return all(all(flags.values()) for flags in report.values())


# ── Session settings ────────────────────────────────────────────────────────


async def apply_session_settings(session: AsyncSession, settings: SessionSettings) -> None:
    """Write tenant and bypass settings for the session's current transaction."""
    await session.execute(SET_SESSION_SQL, settings.as_params())
