"""Request lifecycle orchestration.

Status changes, engineer assignment and discussion reviews all move hours
through ``ProjectHoursService``. Two policies apply to ledger outcomes:

- best effort (denial, completion, deletion): the ledger call runs in a
  savepoint of the locked request's transaction; a refusal is logged, the
  savepoint is undone and the request change still commits with the mirror
  untouched.
- mandatory (assignment, discussion review): the ledger call joins the
  request's transaction; a refusal raises ``ValidationError`` and the whole
  unit rolls back.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from simflow.events import (
    DiscussionReviewed,
    DomainEvent,
    EngineerAssigned,
    EventEmitter,
    RequestStatusChanged,
)
from simflow.models import ActivityLog, DiscussionRequest, Project, Request, TimeEntry
from simflow.services.actor import Actor
from simflow.services.exceptions import NotFoundError, ValidationError
from simflow.services.project_hours_service import (
    ZERO,
    HourTransactionResult,
    ProjectHoursService,
    format_hours,
    to_hours,
)
from simflow.services.state_machine import (
    DiscussionStatus,
    ProjectStateMachine,
    RequestStatus,
)

logger = logging.getLogger(__name__)

PRIORITIES = ("Low", "Medium", "High", "Critical")

REVIEW_ACTIONS = {
    "approve": DiscussionStatus.APPROVED,
    "deny": DiscussionStatus.DENIED,
    "override": DiscussionStatus.OVERRIDE,
}


def _parse_hours(value: Any, message: str) -> Decimal:
    try:
        hours = to_hours(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(message)
    if not hours.is_finite():
        raise ValidationError(message)
    return hours


def _jsonable(value: Any) -> Any:
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    return value


class RequestService:
    """Request lifecycle operations."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        hours_service: ProjectHoursService | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.session_factory = session_factory
        self.hours = hours_service or ProjectHoursService(session_factory)
        self.emitter = emitter or EventEmitter()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _lock_request(db: AsyncSession, request_id: UUID) -> Request:
        request = (
            await db.execute(
                select(Request)
                .where(Request.request_id == request_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if request is None:
            raise NotFoundError("Request not found", {"request_id": str(request_id)})
        return request

    @staticmethod
    def _log_activity(
        db: AsyncSession, request_id: UUID, actor: Actor, action: str, **details: Any
    ) -> None:
        details = {key: _jsonable(value) for key, value in details.items()}
        details.setdefault("actor_name", actor.name)
        db.add(
            ActivityLog(
                request_id=request_id,
                user_id=actor.user_id,
                action=action,
                details=details,
            )
        )

    def _reconcile_best_effort(
        self, result: HourTransactionResult, operation: str, request_id: UUID
    ) -> bool:
        """Log a refused ledger call and let the caller continue."""
        if result.success:
            return True
        logger.warning(
            "Hour reconciliation for %s of request %s failed (%s): %s",
            operation,
            request_id,
            result.error_code.value if result.error_code else "UNKNOWN",
            result.error,
        )
        return False

    async def _reconcile_in_savepoint(
        self,
        db: AsyncSession,
        operation: str,
        request_id: UUID,
        ledger_call: Awaitable[HourTransactionResult],
    ) -> bool:
        """Run a best-effort ledger call inside a savepoint of ``db``.

        A refusal or database error undoes only the savepoint; the caller's
        request change still commits.
        """
        savepoint = await db.begin_nested()
        result = await ledger_call
        if result.success:
            await savepoint.commit()
        else:
            await savepoint.rollback()
        return self._reconcile_best_effort(result, operation, request_id)

    @staticmethod
    def _require_success(result: HourTransactionResult) -> None:
        """Turn a refused ledger call into a ValidationError."""
        if result.success:
            return
        context: dict[str, Any] = {
            "error_code": result.error_code.value if result.error_code else None,
        }
        if result.available_hours is not None:
            context["available_hours"] = str(result.available_hours)
        if result.used_hours is not None:
            context["used_hours"] = str(result.used_hours)
        raise ValidationError(result.error or "Hour transaction failed", context)

    async def _move_request_hours(
        self,
        db: AsyncSession,
        request: Request,
        delta: Decimal,
        actor: Actor,
        note: str,
    ) -> None:
        """Apply a mandatory net delta for a request inside ``db``."""
        if request.project_id is None or delta == 0:
            return

        if delta > 0:
            availability = await self.hours.validate_hour_availability(
                request.project_id, delta, session=db
            )
            # Status refusals come from the locked primitive with their own code
            if availability.current_available < delta:
                raise ValidationError(
                    "Insufficient project hours. "
                    f"Available: {format_hours(availability.current_available)}h, "
                    f"Requested: {format_hours(delta)}h",
                    {
                        "error_code": "INSUFFICIENT_HOURS",
                        "available_hours": str(availability.current_available),
                    },
                )
            result = await self.hours.allocate_hours_to_request(
                request.project_id, request.request_id, delta, actor, notes=note, session=db
            )
        else:
            result = await self.hours.deallocate_hours_from_request(
                request.project_id, request.request_id, -delta, actor, reason=note, session=db
            )
        self._require_success(result)

    @staticmethod
    async def _sum_time_entries(db: AsyncSession, request_id: UUID) -> Decimal:
        total = await db.scalar(
            select(func.coalesce(func.sum(TimeEntry.hours), 0)).where(
                TimeEntry.request_id == request_id
            )
        )
        return to_hours(total or 0)

    def _emit(self, *events: DomainEvent) -> None:
        self.emitter.emit_all(list(events))

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def create_request(
        self,
        title: str,
        actor: Actor,
        description: str | None = None,
        vendor: str | None = None,
        priority: str | None = None,
        project_id: UUID | None = None,
    ) -> Request:
        """Create a request in Submitted status."""
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title is required")
        priority = priority or "Medium"
        if priority not in PRIORITIES:
            raise ValidationError(f"Invalid priority '{priority}'")

        async with self.session_factory() as db, db.begin():
            if project_id is not None:
                project = await db.get(Project, project_id)
                if project is None:
                    raise NotFoundError("Project not found", {"project_id": str(project_id)})
                if not ProjectStateMachine.is_active(project.status):
                    raise ValidationError(
                        f"Project '{project.code}' is not accepting requests "
                        f"(status '{project.status}')"
                    )

            request = Request(
                title=title,
                description=description,
                vendor=vendor,
                priority=priority,
                status=RequestStatus.SUBMITTED.value,
                project_id=project_id,
                allocated_hours=ZERO,
                created_by=actor.user_id,
                created_by_name=actor.name,
            )
            db.add(request)
            await db.flush()
            self._log_activity(db, request.request_id, actor, "created", title=title)

        logger.info("Request %s created by %s", request.request_id, actor.name)
        return request

    async def get_request(self, request_id: UUID) -> Request:
        async with self.session_factory() as db:
            request = await db.get(Request, request_id)
        if request is None:
            raise NotFoundError("Request not found", {"request_id": str(request_id)})
        return request

    async def list_requests(
        self,
        status: str | None = None,
        project_id: UUID | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Request]:
        stmt = select(Request).order_by(Request.created_at.desc())
        if status is not None:
            stmt = stmt.where(Request.status == status)
        if project_id is not None:
            stmt = stmt.where(Request.project_id == project_id)
        async with self.session_factory() as db:
            result = await db.scalars(stmt.limit(max(1, limit)).offset(max(0, offset)))
            return list(result.all())

    async def delete_request(self, request_id: UUID, actor: Actor) -> None:
        """Delete a request after returning the hours it holds.

        Ledger rows survive with their request link cleared.
        """
        async with self.session_factory() as db, db.begin():
            request = await self._lock_request(db, request_id)
            if request.project_id is not None and request.allocated_hours > 0:
                await self._reconcile_in_savepoint(
                    db,
                    "deletion",
                    request_id,
                    self.hours.deallocate_hours_from_request(
                        request.project_id,
                        request_id,
                        request.allocated_hours,
                        actor,
                        reason="Request deleted",
                        session=db,
                    ),
                )
                request = await self._lock_request(db, request_id)
            await db.delete(request)

        logger.info("Request %s deleted by %s", request_id, actor.name)

    async def update_status(self, request_id: UUID, status: str, actor: Actor) -> Request:
        """Change a request's status, reconciling hours on denial and completion.

        Ledger refusals here are logged and do not block the status change.
        """
        if status not in RequestStatus.values():
            raise ValidationError(f"Invalid status '{status}'")
        status = RequestStatus(status).value

        async with self.session_factory() as db, db.begin():
            request = await self._lock_request(db, request_id)
            from_status = request.status
            project_id = request.project_id
            allocated = request.allocated_hours or ZERO
            new_allocated = allocated

            if status == RequestStatus.DENIED and project_id is not None and allocated > 0:
                reconciled = await self._reconcile_in_savepoint(
                    db,
                    "denial",
                    request_id,
                    self.hours.deallocate_hours_from_request(
                        project_id,
                        request_id,
                        allocated,
                        actor,
                        reason="Request denied",
                        session=db,
                    ),
                )
                if reconciled:
                    new_allocated = ZERO

            elif (
                status == RequestStatus.COMPLETED
                and from_status != RequestStatus.COMPLETED
                and project_id is not None
                and allocated != 0
            ):
                actual = await self._sum_time_entries(db, request_id)
                if actual == 0:
                    actual = allocated
                reconciled = await self._reconcile_in_savepoint(
                    db,
                    "completion",
                    request_id,
                    self.hours.finalize_request_hours(
                        project_id, request_id, allocated, actual, actor, session=db
                    ),
                )
                if reconciled:
                    new_allocated = actual

            # The savepoint may have expired the row; lock again before writing
            request = await self._lock_request(db, request_id)
            request.status = status
            request.allocated_hours = new_allocated
            self._log_activity(
                db,
                request_id,
                actor,
                "status_changed",
                from_status=from_status,
                to_status=status,
                allocated_hours=new_allocated,
            )

        logger.info("Request %s status %s -> %s", request_id, from_status, status)
        self._emit(
            RequestStatusChanged(
                request_id=request_id,
                from_status=from_status,
                to_status=status,
                allocated_hours=new_allocated,
                actor_id=actor.user_id,
                actor_name=actor.name,
            )
        )
        return request

    async def assign_engineer(
        self,
        request_id: UUID,
        engineer_id: UUID | None,
        engineer_name: str,
        estimated_hours: Decimal | int | float | str,
        actor: Actor,
    ) -> Request:
        """Assign (or reassign) an engineer and reserve the estimated hours.

        Only the net difference against the current reservation reaches the
        ledger. Any ledger refusal rolls back the whole assignment.
        """
        estimated = _parse_hours(estimated_hours, "Estimated hours must be a number")
        if estimated < 0:
            raise ValidationError("Estimated hours must not be negative")
        if not (engineer_name or "").strip():
            raise ValidationError("Engineer name is required")

        async with self.session_factory() as db, db.begin():
            request = await self._lock_request(db, request_id)
            previous = request.allocated_hours or ZERO
            delta = estimated - previous

            await self._move_request_hours(
                db,
                request,
                delta,
                actor,
                note=f"Assigned to {engineer_name}: {format_hours(estimated)}h estimated",
            )

            request.assigned_to = engineer_id
            request.assigned_to_name = engineer_name
            request.estimated_hours = estimated
            if request.project_id is not None:
                request.allocated_hours = estimated
            request.status = RequestStatus.ENGINEERING_REVIEW.value
            self._log_activity(
                db,
                request_id,
                actor,
                "assigned",
                engineer_id=engineer_id,
                engineer_name=engineer_name,
                estimated_hours=estimated,
                hours_delta=delta,
            )
            project_id = request.project_id

        logger.info(
            "Request %s assigned to %s (%sh, delta %sh)",
            request_id,
            engineer_name,
            estimated,
            delta,
        )
        self._emit(
            EngineerAssigned(
                request_id=request_id,
                project_id=project_id,
                engineer_id=engineer_id,
                engineer_name=engineer_name,
                estimated_hours=estimated,
                hours_delta=delta,
                actor_id=actor.user_id,
                actor_name=actor.name,
            )
        )
        return request

    # ------------------------------------------------------------------
    # Time entries
    # ------------------------------------------------------------------

    async def add_time_entry(
        self,
        request_id: UUID,
        hours: Decimal | int | float | str,
        actor: Actor,
        description: str | None = None,
    ) -> TimeEntry:
        hours = _parse_hours(hours, "Hours must be a positive number")
        if hours <= 0:
            raise ValidationError("Hours must be a positive number")

        async with self.session_factory() as db, db.begin():
            await self._lock_request(db, request_id)
            entry = TimeEntry(
                request_id=request_id,
                engineer_id=actor.user_id,
                engineer_name=actor.name,
                hours=hours,
                description=description or "",
            )
            db.add(entry)
            self._log_activity(db, request_id, actor, "time_logged", hours=hours)
        return entry

    async def get_time_entries(self, request_id: UUID) -> list[TimeEntry]:
        await self.get_request(request_id)
        async with self.session_factory() as db:
            result = await db.scalars(
                select(TimeEntry)
                .where(TimeEntry.request_id == request_id)
                .order_by(TimeEntry.created_at.desc())
            )
            return list(result.all())

    # ------------------------------------------------------------------
    # Discussion requests
    # ------------------------------------------------------------------

    async def create_discussion_request(
        self,
        request_id: UUID,
        reason: str,
        actor: Actor,
        suggested_hours: Decimal | int | float | str | None = None,
    ) -> DiscussionRequest:
        """Engineer challenges the current hour allocation."""
        reason = (reason or "").strip()
        if len(reason) < 5:
            raise ValidationError("Reason must be at least 5 characters")
        suggested = None
        if suggested_hours is not None:
            suggested = _parse_hours(suggested_hours, "Suggested hours must be a number")
            if suggested < 0:
                raise ValidationError("Suggested hours must not be negative")

        async with self.session_factory() as db, db.begin():
            request = await self._lock_request(db, request_id)
            pending = await db.scalar(
                select(func.count())
                .select_from(DiscussionRequest)
                .where(
                    DiscussionRequest.request_id == request_id,
                    DiscussionRequest.status == DiscussionStatus.PENDING.value,
                )
            )
            if pending:
                raise ValidationError("A discussion request is already pending for this request")

            discussion = DiscussionRequest(
                request_id=request_id,
                engineer_id=actor.user_id,
                engineer_name=actor.name,
                reason=reason,
                suggested_hours=suggested,
                status=DiscussionStatus.PENDING.value,
            )
            db.add(discussion)
            from_status = request.status
            request.status = RequestStatus.DISCUSSION.value
            self._log_activity(
                db,
                request_id,
                actor,
                "discussion_requested",
                reason=reason,
                suggested_hours=suggested,
            )

        self._emit(
            RequestStatusChanged(
                request_id=request_id,
                from_status=from_status,
                to_status=RequestStatus.DISCUSSION.value,
                allocated_hours=request.allocated_hours,
                actor_id=actor.user_id,
                actor_name=actor.name,
            )
        )
        return discussion

    async def get_discussion_requests(self, request_id: UUID) -> list[DiscussionRequest]:
        await self.get_request(request_id)
        async with self.session_factory() as db:
            result = await db.scalars(
                select(DiscussionRequest)
                .where(DiscussionRequest.request_id == request_id)
                .order_by(DiscussionRequest.created_at.desc())
            )
            return list(result.all())

    async def review_discussion_request(
        self,
        discussion_id: UUID,
        action: str,
        actor: Actor,
        manager_response: str | None = None,
        allocated_hours: Decimal | int | float | str | None = None,
    ) -> DiscussionRequest:
        """Resolve a discussion by approving, denying or overriding the hours.

        Approve takes the engineer's suggestion (or keeps the current
        allocation when none was given), override takes the manager's
        figure, deny leaves hours alone. Every outcome sends the request
        back to Engineering Review.
        """
        action = (action or "").lower()
        if action not in REVIEW_ACTIONS:
            raise ValidationError(f"Invalid action '{action}'. Must be approve, deny or override")

        override_hours = None
        if action == "override":
            if allocated_hours is None:
                raise ValidationError("Allocated hours are required for override")
            override_hours = _parse_hours(allocated_hours, "Allocated hours must be a number")
            if override_hours < 0:
                raise ValidationError("Allocated hours must not be negative")

        async with self.session_factory() as db, db.begin():
            discussion = (
                await db.execute(
                    select(DiscussionRequest)
                    .where(DiscussionRequest.discussion_request_id == discussion_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
            ).scalar_one_or_none()
            if discussion is None:
                raise NotFoundError(
                    "Discussion request not found", {"discussion_id": str(discussion_id)}
                )
            if discussion.status != DiscussionStatus.PENDING:
                raise ValidationError("Discussion request has already been reviewed")

            request = await self._lock_request(db, discussion.request_id)
            current = request.allocated_hours or ZERO
            from_status = request.status

            if action == "approve":
                final_hours = (
                    discussion.suggested_hours
                    if discussion.suggested_hours is not None
                    else current
                )
            elif action == "override":
                final_hours = override_hours
            else:
                final_hours = None

            if final_hours is not None:
                await self._move_request_hours(
                    db,
                    request,
                    final_hours - current,
                    actor,
                    note=f"Discussion {action}: {format_hours(final_hours)}h",
                )
                request.estimated_hours = final_hours
                if request.project_id is not None:
                    request.allocated_hours = final_hours

            discussion.status = REVIEW_ACTIONS[action].value
            discussion.reviewed_by = actor.user_id
            discussion.reviewed_by_name = actor.name
            discussion.manager_response = manager_response
            discussion.allocated_hours = final_hours
            discussion.reviewed_at = datetime.now(timezone.utc)

            request.status = RequestStatus.ENGINEERING_REVIEW.value
            self._log_activity(
                db,
                request.request_id,
                actor,
                f"discussion_{action}",
                discussion_id=discussion_id,
                final_hours=final_hours,
                manager_response=manager_response,
            )
            request_id = request.request_id
            allocated_after = request.allocated_hours

        logger.info(
            "Discussion %s on request %s resolved: %s (%s)",
            discussion_id,
            request_id,
            action,
            final_hours,
        )
        self._emit(
            DiscussionReviewed(
                discussion_request_id=discussion_id,
                request_id=request_id,
                action=action,
                final_hours=final_hours,
                actor_id=actor.user_id,
                actor_name=actor.name,
            ),
            RequestStatusChanged(
                request_id=request_id,
                from_status=from_status,
                to_status=RequestStatus.ENGINEERING_REVIEW.value,
                allocated_hours=allocated_after,
                actor_id=actor.user_id,
                actor_name=actor.name,
            ),
        )
        return discussion
