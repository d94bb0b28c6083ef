"""SimFlow services."""

from simflow.services.actor import Actor
from simflow.services.exceptions import (
    ConflictError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from simflow.services.project_hours_service import (
    HourErrorCode,
    HourTransactionResult,
    ProjectHoursService,
)
from simflow.services.project_service import ProjectService
from simflow.services.request_service import RequestService
from simflow.services.state_machine import (
    HourTransactionType,
    InvalidTransitionError,
    ProjectStateMachine,
    ProjectStatus,
    RequestStatus,
)

__all__ = [
    "Actor",
    "ConflictError",
    "NotFoundError",
    "ServiceError",
    "ValidationError",
    "HourErrorCode",
    "HourTransactionResult",
    "ProjectHoursService",
    "ProjectService",
    "RequestService",
    "HourTransactionType",
    "InvalidTransitionError",
    "ProjectStateMachine",
    "ProjectStatus",
    "RequestStatus",
]
