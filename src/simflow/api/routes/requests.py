"""Simulation request API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, Response, status

from simflow.api.dependencies import CurrentActor, RequestServiceDep
from simflow.api.schemas import (
    DiscussionCreate,
    DiscussionResponse,
    DiscussionReview,
    EngineerAssignment,
    ErrorResponse,
    RequestCreate,
    RequestListResponse,
    RequestResponse,
    RequestStatusUpdate,
    TimeEntryCreate,
    TimeEntryResponse,
)

router = APIRouter(prefix="/requests", tags=["requests"])
discussions_router = APIRouter(prefix="/discussions", tags=["discussions"])

RequestId = Annotated[UUID, Path()]


# ============================================================================
# Request CRUD
# ============================================================================


@router.post(
    "",
    response_model=RequestResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def create_request(
    service: RequestServiceDep,
    actor: CurrentActor,
    payload: RequestCreate,
) -> RequestResponse:
    """Submit a new simulation request."""
    request = await service.create_request(
        payload.title,
        actor,
        description=payload.description,
        vendor=payload.vendor,
        priority=payload.priority,
        project_id=payload.project_id,
    )
    return RequestResponse.model_validate(request)


@router.get("", response_model=RequestListResponse)
async def list_requests(
    service: RequestServiceDep,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    project_id: UUID | None = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> RequestListResponse:
    requests = await service.list_requests(
        status=status_filter, project_id=project_id, limit=limit, offset=offset
    )
    return RequestListResponse(
        items=[RequestResponse.model_validate(r) for r in requests],
        total=len(requests),
    )


@router.get(
    "/{request_id}",
    response_model=RequestResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_request(service: RequestServiceDep, request_id: RequestId) -> RequestResponse:
    return RequestResponse.model_validate(await service.get_request(request_id))


@router.delete(
    "/{request_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_request(
    service: RequestServiceDep,
    actor: CurrentActor,
    request_id: RequestId,
) -> Response:
    """Delete a request, returning its hours to the project."""
    await service.delete_request(request_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Request lifecycle
# ============================================================================


@router.patch(
    "/{request_id}/status",
    response_model=RequestResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def update_request_status(
    service: RequestServiceDep,
    actor: CurrentActor,
    request_id: RequestId,
    payload: RequestStatusUpdate,
) -> RequestResponse:
    """Change status; denial and completion reconcile hours."""
    request = await service.update_status(request_id, payload.status, actor)
    return RequestResponse.model_validate(request)


@router.post(
    "/{request_id}/assign",
    response_model=RequestResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def assign_engineer(
    service: RequestServiceDep,
    actor: CurrentActor,
    request_id: RequestId,
    payload: EngineerAssignment,
) -> RequestResponse:
    """Assign an engineer and reserve the estimated hours."""
    request = await service.assign_engineer(
        request_id,
        payload.engineer_id,
        payload.engineer_name,
        payload.estimated_hours,
        actor,
    )
    return RequestResponse.model_validate(request)


# ============================================================================
# Time entries
# ============================================================================


@router.post(
    "/{request_id}/time-entries",
    response_model=TimeEntryResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def add_time_entry(
    service: RequestServiceDep,
    actor: CurrentActor,
    request_id: RequestId,
    payload: TimeEntryCreate,
) -> TimeEntryResponse:
    entry = await service.add_time_entry(
        request_id, payload.hours, actor, description=payload.description
    )
    return TimeEntryResponse.model_validate(entry)


@router.get(
    "/{request_id}/time-entries",
    response_model=list[TimeEntryResponse],
    responses={404: {"model": ErrorResponse}},
)
async def get_time_entries(
    service: RequestServiceDep, request_id: RequestId
) -> list[TimeEntryResponse]:
    entries = await service.get_time_entries(request_id)
    return [TimeEntryResponse.model_validate(e) for e in entries]


# ============================================================================
# Discussion requests
# ============================================================================


@router.post(
    "/{request_id}/discussions",
    response_model=DiscussionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def create_discussion_request(
    service: RequestServiceDep,
    actor: CurrentActor,
    request_id: RequestId,
    payload: DiscussionCreate,
) -> DiscussionResponse:
    """Challenge the hour allocation of a request."""
    discussion = await service.create_discussion_request(
        request_id, payload.reason, actor, suggested_hours=payload.suggested_hours
    )
    return DiscussionResponse.model_validate(discussion)


@router.get(
    "/{request_id}/discussions",
    response_model=list[DiscussionResponse],
    responses={404: {"model": ErrorResponse}},
)
async def get_discussion_requests(
    service: RequestServiceDep, request_id: RequestId
) -> list[DiscussionResponse]:
    discussions = await service.get_discussion_requests(request_id)
    return [DiscussionResponse.model_validate(d) for d in discussions]


@discussions_router.post(
    "/{discussion_id}/review",
    response_model=DiscussionResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def review_discussion_request(
    service: RequestServiceDep,
    actor: CurrentActor,
    discussion_id: Annotated[UUID, Path()],
    payload: DiscussionReview,
) -> DiscussionResponse:
    """Approve, deny or override the hours in a discussion request."""
    discussion = await service.review_discussion_request(
        discussion_id,
        payload.action,
        actor,
        manager_response=payload.manager_response,
        allocated_hours=payload.allocated_hours,
    )
    return DiscussionResponse.model_validate(discussion)
