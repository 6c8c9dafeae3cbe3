"""SqlAlchemyPersistence tests against a recording session.

Every operation must write the session settings first and then run the
statement on the same session inside the same transaction.
"""

from __future__ import annotations

import uuid
from unittest.mock import MagicMock

from sqlalchemy.dialects import postgresql

from src.scope.core.persistence import SqlAlchemyPersistence
from src.scope.core.rls import SET_SESSION_SQL, SessionSettings
from src.scope.models import FeatureFlag

TENANT = str(uuid.uuid4())


def _sql(statement) -> str:
    return str(statement.compile(dialect=postgresql.dialect()))


def _scalars(rows: list) -> MagicMock:
    result = MagicMock()
    result.scalars.return_value.all.return_value = rows
    return result


async def test_find_applies_settings_before_select(recording_session):
    flag = FeatureFlag(tenant_id=uuid.UUID(TENANT), key="beta-ui")
    session, factory = recording_session(MagicMock(), _scalars([flag]))
    persistence = SqlAlchemyPersistence(factory)

    rows = await persistence.find(
        FeatureFlag, {"tenant_id": uuid.UUID(TENANT)}, SessionSettings(tenant_id=TENANT), order_by="-key", limit=5
    )

    assert rows == [flag]
    assert session.opened == 1
    assert session.transactions == 1
    (first, params), (second, _) = session.statements
    assert first is SET_SESSION_SQL
    assert params == {"tenant_id": TENANT, "bypass": "false"}
    sql = _sql(second)
    assert "feature_flags.tenant_id = " in sql
    assert "ORDER BY feature_flags.key DESC" in sql
    assert "LIMIT" in sql


async def test_create_adds_instance_after_settings(recording_session):
    session, factory = recording_session()
    persistence = SqlAlchemyPersistence(factory)

    flag = await persistence.create(
        FeatureFlag, {"tenant_id": uuid.UUID(TENANT), "key": "dark-mode"}, SessionSettings(tenant_id=TENANT)
    )

    assert session.statements[0][0] is SET_SESSION_SQL
    assert session.added == [flag]
    assert flag.key == "dark-mode"


async def test_update_uses_returning(recording_session):
    session, factory = recording_session(MagicMock(), _scalars([]))
    persistence = SqlAlchemyPersistence(factory)

    await persistence.update(FeatureFlag, {"key": "beta-ui"}, {"enabled": True}, SessionSettings(tenant_id=TENANT))

    sql = _sql(session.statements[1][0])
    assert sql.startswith("UPDATE feature_flags SET enabled=")
    assert "RETURNING" in sql


async def test_delete_returns_rowcount(recording_session):
    deleted = MagicMock(rowcount=2)
    session, factory = recording_session(MagicMock(), deleted)
    persistence = SqlAlchemyPersistence(factory)

    count = await persistence.delete(FeatureFlag, {"key": "beta-ui"}, SessionSettings(tenant_id=TENANT))

    assert count == 2
    assert _sql(session.statements[1][0]).startswith("DELETE FROM feature_flags")


async def test_execute_wraps_string_and_returns_dicts(recording_session):
    result = MagicMock(returns_rows=True)
    result.mappings.return_value.all.return_value = [{"enabled": True}]
    session, factory = recording_session(MagicMock(), result)
    persistence = SqlAlchemyPersistence(factory)

    rows = await persistence.execute(
        "SELECT enabled FROM feature_flags WHERE key = :key", {"key": "beta-ui"}, SessionSettings(bypass=True)
    )

    assert rows == [{"enabled": True}]
    assert session.statements[0][1] == {"tenant_id": "", "bypass": "true"}
    statement, params = session.statements[1]
    assert statement.text == "SELECT enabled FROM feature_flags WHERE key = :key"
    assert params == {"key": "beta-ui"}


async def test_execute_without_rows_returns_empty(recording_session):
    _, factory = recording_session(MagicMock(), MagicMock(returns_rows=False))
    persistence = SqlAlchemyPersistence(factory)

    assert await persistence.execute("UPDATE feature_flags SET enabled = false", None, SessionSettings(tenant_id=TENANT)) == []
