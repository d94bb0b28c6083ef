"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from fastapi import Request as HttpRequest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from simflow.database import get_session_factory
from simflow.events import EventEmitter
from simflow.services import Actor, ProjectHoursService, ProjectService, RequestService


def session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory dependency (overridden in tests)."""
    return get_session_factory()


SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(session_factory)]


async def get_db_session(factory: SessionFactory) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with factory() as session:
        yield session


def get_emitter(request: HttpRequest) -> EventEmitter:
    """Process-wide event emitter created by the app factory."""
    return request.app.state.emitter


Emitter = Annotated[EventEmitter, Depends(get_emitter)]


def get_hours_service(factory: SessionFactory) -> ProjectHoursService:
    return ProjectHoursService(factory)


HoursServiceDep = Annotated[ProjectHoursService, Depends(get_hours_service)]


def get_project_service(
    factory: SessionFactory, hours: HoursServiceDep, emitter: Emitter
) -> ProjectService:
    return ProjectService(factory, hours, emitter)


def get_request_service(
    factory: SessionFactory, hours: HoursServiceDep, emitter: Emitter
) -> RequestService:
    return RequestService(factory, hours, emitter)


async def get_actor(
    x_user_name: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
) -> Actor:
    """Extract the calling user from headers."""
    if not x_user_name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-User-Name header is required",
        )
    user_id = None
    if x_user_id:
        try:
            user_id = UUID(x_user_id)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid X-User-Id format",
            )
    return Actor(user_id=user_id, name=x_user_name, role=x_user_role or "User")


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
CurrentActor = Annotated[Actor, Depends(get_actor)]
ProjectServiceDep = Annotated[ProjectService, Depends(get_project_service)]
RequestServiceDep = Annotated[RequestService, Depends(get_request_service)]
