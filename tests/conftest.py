from __future__ import annotations

import asyncio
import os
import re
from collections.abc import AsyncIterator, Iterator

import pytest
from alembic.config import Config
from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from alembic import command
from paysync.db.session import close_engine
from paysync.services.runtime import set_runtime

SYNC_TABLES = ("managed_webhooks", "synced_objects", "sync_object_runs", "sync_runs", "accounts")
RESET_SQL = text(f"TRUNCATE TABLE {', '.join(SYNC_TABLES)} RESTART IDENTITY CASCADE")

SAFE_DATABASE_NAME = re.compile(r"^[A-Za-z0-9_]+$")


def _test_database_url() -> str | None:
    """TEST_DATABASE_URL wins; otherwise DATABASE_URL pointed at a `_test` database."""
    explicit = (os.getenv("TEST_DATABASE_URL") or "").strip()
    if explicit:
        return explicit
    base = (os.getenv("DATABASE_URL") or "").strip()
    if not base:
        return None
    url = make_url(base)
    if not url.database:
        return None
    if not url.database.endswith("_test"):
        url = url.set(database=f"{url.database}_test")
    return url.render_as_string(hide_password=False)


async def _create_database_if_missing(url: URL) -> None:
    admin_url = url.set(database="template1" if url.database == "postgres" else "postgres")
    engine = create_async_engine(admin_url, isolation_level="AUTOCOMMIT", pool_pre_ping=True)
    try:
        async with engine.connect() as connection:
            exists = await connection.scalar(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": url.database},
            )
            if exists:
                return
            try:
                await connection.execute(text(f'CREATE DATABASE "{url.database}"'))
            except Exception as exc:
                raise RuntimeError(
                    f"Could not create test database {url.database!r}; create it or grant CREATEDB."
                ) from exc
    finally:
        await engine.dispose()


def pytest_runtest_setup(item: pytest.Item) -> None:
    if "integration" in item.keywords and not _test_database_url():
        pytest.skip("integration tests need TEST_DATABASE_URL or DATABASE_URL")


@pytest.fixture(scope="session")
def database_url() -> str:
    value = _test_database_url()
    if not value:
        pytest.skip("database tests need TEST_DATABASE_URL or DATABASE_URL")
    return value


@pytest.fixture(scope="session")
def ensure_test_database_exists(database_url: str) -> None:
    url = make_url(database_url)
    if not url.database or not SAFE_DATABASE_NAME.fullmatch(url.database):
        raise RuntimeError("The test database name must match [A-Za-z0-9_]+.")
    asyncio.run(_create_database_if_missing(url))


@pytest.fixture(scope="session")
def migrated_database(database_url: str, ensure_test_database_exists: None) -> None:
    config = Config("alembic.ini")
    config.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(config, "head")


@pytest.fixture
async def session_factory(
    migrated_database: None,
    database_url: str,
) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(database_url, pool_pre_ping=True)
    async with engine.begin() as connection:
        await connection.execute(RESET_SQL)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def reset_runtime_state() -> Iterator[None]:
    previous = set_runtime(None)
    yield
    set_runtime(previous)


@pytest.fixture(autouse=True)
async def reset_app_engine() -> AsyncIterator[None]:
    await close_engine()
    yield
    await close_engine()
