"""Pytest fixtures for SimFlow tests."""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator, Awaitable, Callable
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from simflow.database import create_session_factory, configure_sqlite
from simflow.events import DomainEvent, EventEmitter
from simflow.models import Base, Project, Request
from simflow.services import Actor, ProjectHoursService, ProjectService, RequestService

# In-memory SQLite shared by every session of one test (StaticPool).
# FOR UPDATE compiles away here; real lock contention is covered by
# tests/integration against PostgreSQL.
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

_codes = itertools.count(900001)


async def create_test_engine() -> AsyncEngine:
    """Fresh in-memory database with the full schema."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    configure_sqlite(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create test database engine."""
    engine = await create_test_engine()
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def events() -> list[DomainEvent]:
    """Every event emitted during the test, in order."""
    return []


@pytest.fixture
def emitter(events: list[DomainEvent]) -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_all(events.append)
    return emitter


@pytest.fixture
def hours_service(session_factory) -> ProjectHoursService:
    return ProjectHoursService(session_factory)


@pytest.fixture
def project_service(session_factory, hours_service, emitter) -> ProjectService:
    return ProjectService(session_factory, hours_service, emitter)


@pytest.fixture
def request_service(session_factory, hours_service, emitter) -> RequestService:
    return RequestService(session_factory, hours_service, emitter)


@pytest.fixture
def manager() -> Actor:
    return Actor(user_id=uuid4(), name="Morgan Manager", role="Manager")


@pytest.fixture
def engineer() -> Actor:
    return Actor(user_id=uuid4(), name="Erin Engineer", role="Engineer")


@pytest.fixture
def make_project(session_factory) -> Callable[..., Awaitable[Project]]:
    """Insert a project row directly, with no ledger history."""

    async def _make(
        total_hours: str | Decimal = "100",
        status: str = "Active",
        name: str = "Wind tunnel campaign",
    ) -> Project:
        async with session_factory() as db, db.begin():
            project = Project(
                name=name,
                code=f"{next(_codes)}-1999",
                total_hours=Decimal(str(total_hours)),
                used_hours=Decimal("0"),
                status=status,
                created_by_name="fixture",
            )
            db.add(project)
        return project

    return _make


@pytest.fixture
def make_request(session_factory) -> Callable[..., Awaitable[Request]]:
    """Insert a Submitted request row directly."""

    async def _make(project_id: UUID | None, title: str = "CFD mesh study") -> Request:
        async with session_factory() as db, db.begin():
            request = Request(
                title=title,
                status="Submitted",
                project_id=project_id,
                allocated_hours=Decimal("0"),
                created_by_name="fixture",
            )
            db.add(request)
        return request

    return _make


@pytest.fixture
def load_project(session_factory) -> Callable[[UUID], Awaitable[Project]]:
    """Read a project fresh from the database."""

    async def _load(project_id: UUID) -> Project:
        async with session_factory() as db:
            project = await db.get(Project, project_id)
        assert project is not None
        return project

    return _load


@pytest.fixture
def load_request(session_factory) -> Callable[[UUID], Awaitable[Request | None]]:
    """Read a request fresh from the database (None once deleted)."""

    async def _load(request_id: UUID) -> Request | None:
        async with session_factory() as db:
            return await db.get(Request, request_id)

    return _load
