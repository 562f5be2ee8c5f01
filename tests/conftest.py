"""Test configuration and fixtures for BerryCRUD."""

from dotenv import load_dotenv
import pytest
import asyncio
import os
import sys
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from tests.models import Base

# Try to load environment variables from .env file
load_dotenv()


@pytest.fixture(scope="session", autouse=True)
def event_loop_policy():
    """Set event loop policy for Windows compatibility."""
    if sys.platform.startswith("win"):
        # Use SelectorEventLoop instead of ProactorEventLoop on Windows
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    yield


@pytest.fixture(scope="function")
async def engine():
    """Create a test database engine for each test function."""
    test_db_url = os.getenv('BERRYCRUD_TEST_DATABASE_URL')

    if test_db_url:
        if test_db_url.startswith("postgresql"):
            # Minimal pool to avoid event loop issues between tests
            engine = create_async_engine(
                test_db_url,
                echo=False,
                pool_size=1,
                max_overflow=0,
                pool_pre_ping=False,
                pool_recycle=-1,
            )
        elif test_db_url.lower().startswith("mssql+aioodbc"):
            engine = create_async_engine(test_db_url, echo=False, poolclass=NullPool)
        else:
            engine = create_async_engine(test_db_url, echo=False, pool_pre_ping=True)
        # Clean slate; also validates the connection/driver early
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        is_external_db = True
    else:
        engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
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
    async_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session


@pytest.fixture(scope="function")
async def session_factory(engine):
    """Session factory for code that opens its own sessions (job workers)."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# Import fixtures from fixtures module
from tests.fixtures import (  # noqa: E402,F401
    sample_managers,
    sample_blocks,
    sample_objects,
    sample_tags,
    sample_apartments,
    populated_db,
    memory_cache,
    reflector,
    settings,
)
