"""Simulation request, time entry, discussion and activity models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, ForeignKey, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from simflow.models.base import Base, TimestampMixin, UpdatedAtMixin

if TYPE_CHECKING:
    from simflow.models.project import Project


class Request(Base, TimestampMixin, UpdatedAtMixin):
    """A simulation request, optionally billed against one project."""

    __tablename__ = "request"

    request_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    vendor: Mapped[str | None] = mapped_column(String(100), nullable=True)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="Medium")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="Submitted")

    project_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("project.project_id", ondelete="SET NULL"),
        nullable=True,
    )
    assigned_to: Mapped[UUID | None] = mapped_column(nullable=True)
    assigned_to_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    estimated_hours: Mapped[Decimal | None] = mapped_column(nullable=True)
    # Mirror of the per-request ledger sum
    allocated_hours: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    created_by: Mapped[UUID | None] = mapped_column(nullable=True)
    created_by_name: Mapped[str] = mapped_column(String(255), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('Submitted', 'Manager Review', 'Engineering Review', 'Discussion', "
            "'In Progress', 'Ready for Review', 'Completed', 'Revision Requested', "
            "'Revision Approval', 'Accepted', 'Denied')",
            name="request_status_check",
        ),
        CheckConstraint("allocated_hours >= 0", name="request_allocated_hours_check"),
        Index("idx_request_project", "project_id"),
        Index("idx_request_status", "status"),
    )

    # Relationships
    project: Mapped[Project | None] = relationship(back_populates="requests")
    time_entries: Mapped[list[TimeEntry]] = relationship(
        back_populates="request",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class TimeEntry(Base, TimestampMixin):
    """Hours actually worked on a request."""

    __tablename__ = "time_entry"

    time_entry_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    request_id: Mapped[UUID] = mapped_column(
        ForeignKey("request.request_id", ondelete="CASCADE"),
        nullable=False,
    )
    engineer_id: Mapped[UUID | None] = mapped_column(nullable=True)
    engineer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    hours: Mapped[Decimal] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    __table_args__ = (
        CheckConstraint("hours > 0", name="time_entry_hours_positive"),
        Index("idx_time_entry_request", "request_id"),
    )

    request: Mapped[Request] = relationship(back_populates="time_entries")


class DiscussionRequest(Base, TimestampMixin):
    """Engineer challenge of a request's hour allocation."""

    __tablename__ = "discussion_request"

    discussion_request_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    request_id: Mapped[UUID] = mapped_column(
        ForeignKey("request.request_id", ondelete="CASCADE"),
        nullable=False,
    )
    engineer_id: Mapped[UUID | None] = mapped_column(nullable=True)
    engineer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    suggested_hours: Mapped[Decimal | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="Pending")
    reviewed_by: Mapped[UUID | None] = mapped_column(nullable=True)
    reviewed_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    manager_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    allocated_hours: Mapped[Decimal | None] = mapped_column(nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('Pending', 'Approved', 'Denied', 'Override')",
            name="discussion_request_status_check",
        ),
        Index("idx_discussion_request_request", "request_id"),
    )


class ActivityLog(Base, TimestampMixin):
    """Per-request activity feed entry."""

    __tablename__ = "activity_log"

    activity_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    request_id: Mapped[UUID] = mapped_column(
        ForeignKey("request.request_id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        default=dict,
    )

    __table_args__ = (Index("idx_activity_log_request", "request_id"),)
