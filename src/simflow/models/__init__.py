"""SQLAlchemy ORM models."""

from simflow.models.base import Base, TimestampMixin, UpdatedAtMixin
from simflow.models.project import Project, ProjectHourTransaction, ProjectStatusHistory
from simflow.models.request import ActivityLog, DiscussionRequest, Request, TimeEntry

__all__ = [
    "Base",
    "TimestampMixin",
    "UpdatedAtMixin",
    "Project",
    "ProjectHourTransaction",
    "ProjectStatusHistory",
    "Request",
    "TimeEntry",
    "DiscussionRequest",
    "ActivityLog",
]
