"""Project, project status history and hour ledger models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from simflow.models.base import Base, TimestampMixin, UpdatedAtMixin

if TYPE_CHECKING:
    from simflow.models.request import Request


class Project(Base, TimestampMixin, UpdatedAtMixin):
    """Project with an hour budget.

    ``used_hours`` is a cached projection of the hour ledger. Only
    ``ProjectHoursService`` writes it.
    """

    __tablename__ = "project"

    project_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_hours: Mapped[Decimal] = mapped_column(nullable=False)
    used_hours: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="Pending")
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="Medium")
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)

    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    deadline: Mapped[date | None] = mapped_column(Date, nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completion_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    owner_id: Mapped[UUID | None] = mapped_column(nullable=True)
    owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[UUID | None] = mapped_column(nullable=True)
    created_by_name: Mapped[str] = mapped_column(String(255), nullable=False)

    __table_args__ = (
        UniqueConstraint("code", name="project_code_unique"),
        CheckConstraint("total_hours >= 0", name="project_total_hours_check"),
        CheckConstraint(
            "used_hours >= 0 AND used_hours <= total_hours",
            name="project_used_hours_check",
        ),
        CheckConstraint(
            "status IN ('Pending', 'Active', 'On Hold', 'Suspended', "
            "'Completed', 'Cancelled', 'Expired', 'Archived')",
            name="project_status_check",
        ),
        CheckConstraint(
            "priority IN ('Low', 'Medium', 'High', 'Critical')",
            name="project_priority_check",
        ),
        Index("idx_project_status", "status"),
    )

    # Relationships
    requests: Mapped[list[Request]] = relationship(back_populates="project")

    @property
    def available_hours(self) -> Decimal:
        """Budget not yet reserved by requests."""
        return self.total_hours - self.used_hours


class ProjectStatusHistory(Base, TimestampMixin):
    """One row per project status change."""

    __tablename__ = "project_status_history"

    history_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(
        ForeignKey("project.project_id", ondelete="CASCADE"),
        nullable=False,
    )
    from_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    to_status: Mapped[str] = mapped_column(String(50), nullable=False)
    changed_by: Mapped[UUID | None] = mapped_column(nullable=True)
    changed_by_name: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("idx_project_status_history_project", "project_id"),)


class ProjectHourTransaction(Base, TimestampMixin):
    """Append-only hour ledger entry.

    ``hours`` is signed: positive rows reserve budget, negative rows return it.
    EXTENSION rows record a budget increase and leave the used balance alone
    (``balance_before == balance_after``).
    """

    __tablename__ = "project_hour_transaction"

    transaction_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(
        ForeignKey("project.project_id", ondelete="CASCADE"),
        nullable=False,
    )
    request_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("request.request_id", ondelete="SET NULL"),
        nullable=True,
    )
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    hours: Mapped[Decimal] = mapped_column(nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(nullable=False)
    performed_by: Mapped[UUID | None] = mapped_column(nullable=True)
    performed_by_name: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "transaction_type IN ('ALLOCATION', 'DEALLOCATION', 'ADJUSTMENT', 'EXTENSION')",
            name="project_hour_transaction_type_check",
        ),
        CheckConstraint("hours <> 0", name="project_hour_transaction_nonzero"),
        Index("idx_hour_txn_project_created", "project_id", "created_at"),
        Index("idx_hour_txn_request", "request_id"),
    )
