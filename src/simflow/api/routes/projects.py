"""Project API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, HTTPException, Path, Query, Response, status

from simflow.api.dependencies import CurrentActor, HoursServiceDep, ProjectServiceDep
from simflow.api.schemas import (
    AvailabilityResponse,
    ErrorResponse,
    ExpiredProjectsResponse,
    HourHistoryResponse,
    HourTransactionResponse,
    HourTransactionResultResponse,
    HoursChange,
    LedgerCheckResponse,
    ProjectCreate,
    ProjectListResponse,
    ProjectNameUpdate,
    ProjectResponse,
    ProjectStatusUpdate,
    ReassignRequests,
    ReassignResponse,
    StatusHistoryResponse,
    TransitionsResponse,
)

router = APIRouter(prefix="/projects", tags=["projects"])

ProjectId = Annotated[UUID, Path()]


# ============================================================================
# Project CRUD
# ============================================================================


@router.post(
    "",
    response_model=ProjectResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
)
async def create_project(
    service: ProjectServiceDep,
    actor: CurrentActor,
    payload: ProjectCreate,
) -> ProjectResponse:
    """Create a project. Managers create Active projects, others Pending."""
    details = payload.model_dump(exclude={"name", "total_hours", "status"}, exclude_none=True)
    project = await service.create_project(
        payload.name, payload.total_hours, actor, status=payload.status, **details
    )
    return ProjectResponse.model_validate(project)


@router.get("", response_model=ProjectListResponse)
async def list_projects(
    service: ProjectServiceDep,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
) -> ProjectListResponse:
    """List projects, optionally filtered by status."""
    projects = await service.list_projects(status=status_filter)
    return ProjectListResponse(
        items=[ProjectResponse.model_validate(p) for p in projects],
        total=len(projects),
    )


@router.post("/expire-overdue", response_model=ExpiredProjectsResponse)
async def expire_overdue_projects(
    service: ProjectServiceDep,
    actor: CurrentActor,
) -> ExpiredProjectsResponse:
    """Expire Active projects whose deadline has passed."""
    expired = await service.expire_overdue_projects(actor=actor)
    return ExpiredProjectsResponse(
        expired=[ProjectResponse.model_validate(p) for p in expired],
        count=len(expired),
    )


@router.get(
    "/{project_id}",
    response_model=ProjectResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_project(service: ProjectServiceDep, project_id: ProjectId) -> ProjectResponse:
    return ProjectResponse.model_validate(await service.get_project(project_id))


@router.patch(
    "/{project_id}/name",
    response_model=ProjectResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def update_project_name(
    service: ProjectServiceDep,
    actor: CurrentActor,
    project_id: ProjectId,
    payload: ProjectNameUpdate,
) -> ProjectResponse:
    project = await service.update_name(project_id, payload.name, actor)
    return ProjectResponse.model_validate(project)


@router.delete(
    "/{project_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def delete_project(service: ProjectServiceDep, project_id: ProjectId) -> Response:
    """Delete a project with no requests attached."""
    await service.delete_project(project_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Project status lifecycle
# ============================================================================


@router.patch(
    "/{project_id}/status",
    response_model=ProjectResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def transition_project_status(
    service: ProjectServiceDep,
    actor: CurrentActor,
    project_id: ProjectId,
    payload: ProjectStatusUpdate,
) -> ProjectResponse:
    """Move a project to a new status."""
    project = await service.transition_status(
        project_id,
        payload.status,
        actor,
        reason=payload.reason,
        completion_notes=payload.completion_notes,
        cancellation_reason=payload.cancellation_reason,
    )
    return ProjectResponse.model_validate(project)


@router.get(
    "/{project_id}/transitions",
    response_model=TransitionsResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_valid_transitions(
    service: ProjectServiceDep, project_id: ProjectId
) -> TransitionsResponse:
    project = await service.get_project(project_id)
    return TransitionsResponse(
        project_id=project_id,
        current_status=project.status,
        valid_transitions=await service.get_valid_transitions(project_id),
    )


@router.get(
    "/{project_id}/status-history",
    response_model=list[StatusHistoryResponse],
    responses={404: {"model": ErrorResponse}},
)
async def get_status_history(
    service: ProjectServiceDep,
    project_id: ProjectId,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[StatusHistoryResponse]:
    history = await service.get_status_history(project_id, limit=limit, offset=offset)
    return [StatusHistoryResponse.model_validate(h) for h in history]


# ============================================================================
# Hour ledger
# ============================================================================


@router.get(
    "/{project_id}/hour-transactions",
    response_model=HourHistoryResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_hour_history(
    service: ProjectServiceDep,
    hours: HoursServiceDep,
    project_id: ProjectId,
    limit: Annotated[int, Query(ge=1)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> HourHistoryResponse:
    """Newest-first ledger rows for a project."""
    await service.get_project(project_id)
    page = await hours.get_project_hour_history(project_id, limit=limit, offset=offset)
    return HourHistoryResponse(
        transactions=[HourTransactionResponse.model_validate(t) for t in page.transactions],
        total=page.total,
        limit=limit,
        offset=offset,
    )


@router.get("/{project_id}/availability", response_model=AvailabilityResponse)
async def check_availability(
    hours: HoursServiceDep,
    project_id: ProjectId,
    needed: Annotated[str, Query(alias="hours")],
) -> AvailabilityResponse:
    """Advisory check whether the project can cover more hours."""
    try:
        availability = await hours.validate_hour_availability(project_id, needed)
    except ArithmeticError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="hours must be a number",
        )
    return AvailabilityResponse.model_validate(availability)


@router.get(
    "/{project_id}/ledger-check",
    response_model=LedgerCheckResponse,
    responses={404: {"model": ErrorResponse}},
)
async def check_ledger(hours: HoursServiceDep, project_id: ProjectId) -> LedgerCheckResponse:
    """Replay the ledger and compare with the cached used hours."""
    verification = await hours.verify_project_ledger(project_id)
    if verification is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Project not found",
        )
    return LedgerCheckResponse.model_validate(verification)


@router.post(
    "/{project_id}/extend",
    response_model=HourTransactionResultResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def extend_project_budget(
    service: ProjectServiceDep,
    actor: CurrentActor,
    project_id: ProjectId,
    payload: HoursChange,
) -> HourTransactionResultResponse:
    result = await service.extend_budget(project_id, payload.hours, payload.reason, actor)
    return HourTransactionResultResponse.model_validate(result)


@router.post(
    "/{project_id}/adjust",
    response_model=HourTransactionResultResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def adjust_project_hours(
    service: ProjectServiceDep,
    actor: CurrentActor,
    project_id: ProjectId,
    payload: HoursChange,
) -> HourTransactionResultResponse:
    result = await service.adjust_hours(project_id, payload.hours, payload.reason, actor)
    return HourTransactionResultResponse.model_validate(result)


@router.post(
    "/{project_id}/reassign-requests",
    response_model=ReassignResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def reassign_requests(
    service: ProjectServiceDep,
    actor: CurrentActor,
    project_id: ProjectId,
    payload: ReassignRequests,
) -> ReassignResponse:
    """Move every request and its hours to another Active project."""
    moved = await service.reassign_requests(project_id, payload.target_project_id, actor)
    return ReassignResponse(
        source_project_id=project_id,
        target_project_id=payload.target_project_id,
        moved=len(moved),
        request_ids=[r.request_id for r in moved],
    )
