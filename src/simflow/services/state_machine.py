"""Project and request status rules."""

from __future__ import annotations

from enum import Enum


class ProjectStatus(str, Enum):
    """Project status values."""

    PENDING = "Pending"
    ACTIVE = "Active"
    ON_HOLD = "On Hold"
    SUSPENDED = "Suspended"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"
    ARCHIVED = "Archived"


class RequestStatus(str, Enum):
    """Simulation request status values."""

    SUBMITTED = "Submitted"
    MANAGER_REVIEW = "Manager Review"
    ENGINEERING_REVIEW = "Engineering Review"
    DISCUSSION = "Discussion"
    IN_PROGRESS = "In Progress"
    READY_FOR_REVIEW = "Ready for Review"
    COMPLETED = "Completed"
    REVISION_REQUESTED = "Revision Requested"
    REVISION_APPROVAL = "Revision Approval"
    ACCEPTED = "Accepted"
    DENIED = "Denied"

    @classmethod
    def values(cls) -> list[str]:
        return [s.value for s in cls]


class HourTransactionType(str, Enum):
    """Kinds of hour ledger rows."""

    ALLOCATION = "ALLOCATION"
    DEALLOCATION = "DEALLOCATION"
    ADJUSTMENT = "ADJUSTMENT"
    EXTENSION = "EXTENSION"


class DiscussionStatus(str, Enum):
    """Discussion request review outcomes."""

    PENDING = "Pending"
    APPROVED = "Approved"
    DENIED = "Denied"
    OVERRIDE = "Override"


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ProjectStateMachine:
    """State machine for project status transitions.

    Allowed transitions:
    - Pending → Active, Cancelled
    - Active → On Hold, Suspended, Completed, Cancelled, Expired
    - On Hold → Active, Suspended, Cancelled
    - Suspended → Active, Cancelled
    - Expired → Active (renewal), Archived
    - Completed → Archived
    - Cancelled → Archived
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        ProjectStatus.PENDING: [ProjectStatus.ACTIVE, ProjectStatus.CANCELLED],
        ProjectStatus.ACTIVE: [
            ProjectStatus.ON_HOLD,
            ProjectStatus.SUSPENDED,
            ProjectStatus.COMPLETED,
            ProjectStatus.CANCELLED,
            ProjectStatus.EXPIRED,
        ],
        ProjectStatus.ON_HOLD: [
            ProjectStatus.ACTIVE,
            ProjectStatus.SUSPENDED,
            ProjectStatus.CANCELLED,
        ],
        ProjectStatus.SUSPENDED: [ProjectStatus.ACTIVE, ProjectStatus.CANCELLED],
        ProjectStatus.EXPIRED: [ProjectStatus.ACTIVE, ProjectStatus.ARCHIVED],
        ProjectStatus.COMPLETED: [ProjectStatus.ARCHIVED],
        ProjectStatus.CANCELLED: [ProjectStatus.ARCHIVED],
        ProjectStatus.ARCHIVED: [],  # Terminal state
    }

    # Statuses that must carry a reason
    REASON_REQUIRED = {
        ProjectStatus.ON_HOLD,
        ProjectStatus.SUSPENDED,
        ProjectStatus.CANCELLED,
    }

    # Statuses in which new hours may be reserved
    ACCEPTS_HOURS = {ProjectStatus.ACTIVE}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(
        cls, from_status: str, to_status: str, reason: str | None = None
    ) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)
        if cls.requires_reason(to_status) and not (reason and reason.strip()):
            raise InvalidTransitionError(
                from_status, to_status, f"a reason is required for '{to_status}'"
            )

    @classmethod
    def is_active(cls, status: str) -> bool:
        """Check if a project in this status may take new hours."""
        return status in cls.ACCEPTS_HOURS

    @classmethod
    def requires_reason(cls, to_status: str) -> bool:
        return to_status in cls.REASON_REQUIRED

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return [str(s.value) for s in cls.VALID_TRANSITIONS.get(current_status, [])]

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return status in cls.VALID_TRANSITIONS and not cls.VALID_TRANSITIONS[status]
