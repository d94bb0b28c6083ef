"""Integration test fixtures with a real PostgreSQL database.

Set SIMFLOW_TEST_DATABASE_URL (postgresql+asyncpg://...) to run them;
otherwise every test here is skipped.
"""

import os
from collections.abc import AsyncGenerator
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from simflow.database import create_session_factory
from simflow.models import Base, Project, Request
from simflow.services import ProjectHoursService

TEST_DATABASE_URL = os.getenv("SIMFLOW_TEST_DATABASE_URL")

# Truncate in reverse dependency order
TABLES = [
    "activity_log",
    "discussion_request",
    "time_entry",
    "project_hour_transaction",
    "request",
    "project_status_history",
    "project",
]


def pytest_collection_modifyitems(config, items):
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.postgres)


@pytest_asyncio.fixture
async def pg_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Engine on the test database with a clean schema."""
    if not TEST_DATABASE_URL:
        pytest.skip("SIMFLOW_TEST_DATABASE_URL not set")
    engine = create_async_engine(TEST_DATABASE_URL, pool_size=10, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        for table in TABLES:
            await conn.execute(text(f"TRUNCATE TABLE {table} CASCADE"))
    yield engine
    await engine.dispose()


@pytest.fixture
def pg_session_factory(pg_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(pg_engine)


@pytest.fixture
def pg_hours_service(pg_session_factory) -> ProjectHoursService:
    return ProjectHoursService(pg_session_factory)


@pytest_asyncio.fixture
async def pg_project(pg_session_factory) -> Project:
    """Active project with 15 hours and nothing used."""
    async with pg_session_factory() as db, db.begin():
        project = Project(
            name="Concurrency",
            code="100001-2000",
            total_hours=Decimal("15"),
            used_hours=Decimal("0"),
            status="Active",
            created_by_name="fixture",
        )
        db.add(project)
    return project


@pytest_asyncio.fixture
async def pg_requests(pg_session_factory, pg_project) -> list[Request]:
    """Twenty Submitted requests on the fixture project."""
    async with pg_session_factory() as db, db.begin():
        requests = [
            Request(
                title=f"Request {n}",
                project_id=pg_project.project_id,
                allocated_hours=Decimal("0"),
                created_by_name="fixture",
            )
            for n in range(20)
        ]
        db.add_all(requests)
    return requests
