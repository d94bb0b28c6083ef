"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Project schemas
# ============================================================================


class ProjectCreate(BaseModel):
    """Schema for creating a project."""

    name: str
    total_hours: Decimal
    status: str | None = None
    description: str | None = None
    priority: str | None = None
    category: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    deadline: date | None = None
    owner_id: UUID | None = None
    owner_name: str | None = None


class ProjectResponse(BaseModel):
    """Schema for project response."""

    model_config = ConfigDict(from_attributes=True)

    project_id: UUID
    name: str
    code: str
    description: str | None = None
    total_hours: Decimal
    used_hours: Decimal
    available_hours: Decimal
    status: str
    priority: str
    category: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    deadline: date | None = None
    completed_at: datetime | None = None
    completion_notes: str | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    owner_id: UUID | None = None
    owner_name: str | None = None
    created_by: UUID | None = None
    created_by_name: str
    created_at: datetime
    updated_at: datetime


class ProjectListResponse(BaseModel):
    """Schema for listing projects."""

    items: list[ProjectResponse]
    total: int


class ProjectNameUpdate(BaseModel):
    name: str


class ProjectStatusUpdate(BaseModel):
    """Schema for a project status transition."""

    status: str
    reason: str | None = None
    completion_notes: str | None = None
    cancellation_reason: str | None = None


class TransitionsResponse(BaseModel):
    project_id: UUID
    current_status: str
    valid_transitions: list[str]


class StatusHistoryResponse(BaseModel):
    """One project status change."""

    model_config = ConfigDict(from_attributes=True)

    history_id: UUID
    from_status: str | None = None
    to_status: str
    changed_by: UUID | None = None
    changed_by_name: str
    reason: str | None = None
    created_at: datetime


class ExpiredProjectsResponse(BaseModel):
    expired: list[ProjectResponse]
    count: int


# ============================================================================
# Hour ledger schemas
# ============================================================================


class HourTransactionResponse(BaseModel):
    """One ledger row in project history."""

    model_config = ConfigDict(from_attributes=True)

    transaction_id: UUID
    project_id: UUID
    request_id: UUID | None = None
    request_title: str | None = None
    transaction_type: str
    hours: Decimal
    balance_before: Decimal
    balance_after: Decimal
    performed_by: UUID | None = None
    performed_by_name: str
    notes: str | None = None
    created_at: datetime


class HourHistoryResponse(BaseModel):
    transactions: list[HourTransactionResponse]
    total: int
    limit: int
    offset: int


class AvailabilityResponse(BaseModel):
    """Pre-flight hour availability."""

    model_config = ConfigDict(from_attributes=True)

    available: bool
    current_available: Decimal
    total_hours: Decimal
    used_hours: Decimal


class LedgerCheckResponse(BaseModel):
    """Cached balance versus ledger replay."""

    model_config = ConfigDict(from_attributes=True)

    project_id: UUID
    cached_used_hours: Decimal
    replayed_used_hours: Decimal
    transaction_count: int
    is_consistent: bool


class HoursChange(BaseModel):
    """Budget extension or manual adjustment."""

    hours: Decimal
    reason: str


class HourTransactionResultResponse(BaseModel):
    """Outcome of a successful ledger write."""

    model_config = ConfigDict(from_attributes=True)

    transaction_id: UUID | None = None
    balance_before: Decimal | None = None
    balance_after: Decimal | None = None
    available_hours: Decimal | None = None
    used_hours: Decimal | None = None


class ReassignRequests(BaseModel):
    target_project_id: UUID


class ReassignResponse(BaseModel):
    source_project_id: UUID
    target_project_id: UUID
    moved: int
    request_ids: list[UUID]


# ============================================================================
# Request schemas
# ============================================================================


class RequestCreate(BaseModel):
    """Schema for submitting a simulation request."""

    title: str
    description: str | None = None
    vendor: str | None = None
    priority: str | None = None
    project_id: UUID | None = None


class RequestResponse(BaseModel):
    """Schema for request response."""

    model_config = ConfigDict(from_attributes=True)

    request_id: UUID
    title: str
    description: str | None = None
    vendor: str | None = None
    priority: str
    status: str
    project_id: UUID | None = None
    assigned_to: UUID | None = None
    assigned_to_name: str | None = None
    estimated_hours: Decimal | None = None
    allocated_hours: Decimal
    created_by: UUID | None = None
    created_by_name: str
    created_at: datetime
    updated_at: datetime


class RequestListResponse(BaseModel):
    items: list[RequestResponse]
    total: int


class RequestStatusUpdate(BaseModel):
    status: str


class EngineerAssignment(BaseModel):
    """Schema for assigning an engineer with an hour estimate."""

    engineer_id: UUID | None = None
    engineer_name: str
    estimated_hours: Decimal


class TimeEntryCreate(BaseModel):
    hours: Decimal
    description: str | None = None


class TimeEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    time_entry_id: UUID
    request_id: UUID
    engineer_id: UUID | None = None
    engineer_name: str
    hours: Decimal
    description: str
    created_at: datetime


class DiscussionCreate(BaseModel):
    reason: str
    suggested_hours: Decimal | None = None


class DiscussionReview(BaseModel):
    """Manager decision on a discussion request."""

    action: str = Field(description="approve, deny or override")
    manager_response: str | None = None
    allocated_hours: Decimal | None = None


class DiscussionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    discussion_request_id: UUID
    request_id: UUID
    engineer_id: UUID | None = None
    engineer_name: str | None = None
    reason: str
    suggested_hours: Decimal | None = None
    status: str
    reviewed_by: UUID | None = None
    reviewed_by_name: str | None = None
    manager_response: str | None = None
    allocated_hours: Decimal | None = None
    reviewed_at: datetime | None = None
    created_at: datetime


# ============================================================================
# Error schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None
