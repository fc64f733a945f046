"""Test configuration and fixtures for providerql."""

from dotenv import load_dotenv
import pytest
import asyncio
import os
import sys
from typing import AsyncGenerator
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from providerql import ProviderConfig, Schema, create_provider
from tests.models import Base

# Try to load environment variables from .env file
load_dotenv()

_DML = ('SELECT', 'INSERT', 'UPDATE', 'DELETE', 'WITH')


@pytest.fixture(scope="session", autouse=True)
def event_loop_policy():
    """Set event loop policy for Windows compatibility."""
    if sys.platform.startswith("win"):
        # Use SelectorEventLoop instead of ProactorEventLoop on Windows
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    yield


@pytest.fixture(scope="function")
async def engine(tmp_path):
    """Create a test database engine for each test function.

    Uses PROVIDERQL_TEST_DATABASE_URL when set, otherwise a SQLite file in the
    test's tmp dir (a file rather than :memory: so concurrent connections see
    the same data).
    """
    test_db_url = os.getenv('PROVIDERQL_TEST_DATABASE_URL')
    if test_db_url:
        engine = create_async_engine(test_db_url, echo=False, pool_pre_ping=True)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        is_external_db = True
    else:
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'providerql.db'}", echo=False)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        is_external_db = False

    yield engine

    if is_external_db:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a new database session for each test function."""
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session() as session:
        yield session


class QueryCounter:
    """Records DML statements sent to the driver."""

    def __init__(self):
        self.statements = []

    def __call__(self, conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith(_DML):
            self.statements.append(statement)

    @property
    def count(self) -> int:
        return len(self.statements)

    def reset(self):
        self.statements.clear()


@pytest.fixture(scope="function")
def query_counter(engine):
    counter = QueryCounter()
    event.listen(engine.sync_engine, "before_cursor_execute", counter)
    yield counter
    event.remove(engine.sync_engine, "before_cursor_execute", counter)


@pytest.fixture(scope="function")
def schema():
    return Schema.from_base(Base)


@pytest.fixture(scope="function")
def provider(engine, schema):
    return create_provider(engine, schema)


@pytest.fixture(scope="function")
def two_step_provider(engine, schema):
    """Provider that writes without RETURNING and re-fetches affected rows."""
    if engine.dialect.name == "postgresql":
        pytest.skip("PostgreSQL has no last-insert id to re-fetch batch inserts by")
    return create_provider(engine, schema, ProviderConfig(supports_returning=False))


# Import fixtures from fixtures module
from tests.fixtures import (  # noqa: E402,F401
    sample_users,
    sample_posts,
    populated_db,
)
