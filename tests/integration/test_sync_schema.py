import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

EXPECTED_TABLES = {
    "alembic_version",
    "accounts",
    "sync_runs",
    "sync_object_runs",
    "synced_objects",
    "managed_webhooks",
}

EXPECTED_ENUMS = {"object_run_status"}


@pytest.mark.integration
@pytest.mark.db
@pytest.mark.migrations
@pytest.mark.asyncio
async def test_migration_creates_expected_tables(db_session: AsyncSession) -> None:
    result = await db_session.execute(text("SELECT tablename FROM pg_tables WHERE schemaname = 'public'"))
    table_names = {row[0] for row in result}
    assert EXPECTED_TABLES.issubset(table_names)


@pytest.mark.integration
@pytest.mark.db
@pytest.mark.migrations
@pytest.mark.asyncio
async def test_migration_creates_expected_enums(db_session: AsyncSession) -> None:
    enum_result = await db_session.execute(text("SELECT typname FROM pg_type WHERE typtype = 'e'"))
    assert EXPECTED_ENUMS.issubset({row[0] for row in enum_result})


@pytest.mark.integration
@pytest.mark.db
@pytest.mark.migrations
@pytest.mark.asyncio
async def test_open_run_index_is_partial_and_unique(db_session: AsyncSession) -> None:
    indexdef = await db_session.scalar(
        text("SELECT indexdef FROM pg_indexes WHERE indexname = 'uq_sync_runs_account_channel_open'")
    )

    assert indexdef is not None
    assert "UNIQUE" in indexdef
    assert "closed_at IS NULL" in indexdef
