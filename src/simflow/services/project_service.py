"""Project lifecycle: creation, status transitions and budget changes."""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from simflow.events import EventEmitter, ProjectHoursChanged, ProjectStatusChanged
from simflow.models import Project, ProjectStatusHistory, Request
from simflow.services.actor import Actor
from simflow.services.exceptions import ConflictError, NotFoundError, ValidationError
from simflow.services.project_hours_service import (
    ZERO,
    HourErrorCode,
    HourTransactionResult,
    ProjectHoursService,
    format_hours,
    to_hours,
)
from simflow.services.state_machine import (
    HourTransactionType,
    ProjectStateMachine,
    ProjectStatus,
)

logger = logging.getLogger(__name__)

PRIORITIES = ("Low", "Medium", "High", "Critical")

SYSTEM_ACTOR = Actor(user_id=None, name="system", role="System")

# Per-year project codes start here: 100001-2026, 100002-2026, ...
FIRST_CODE_NUMBER = 100001
CODE_PATTERN = re.compile(r"^(\d{6})-(\d{4})$")

# Optional descriptive fields accepted by create_project
PROJECT_DETAILS = (
    "description",
    "priority",
    "category",
    "start_date",
    "end_date",
    "deadline",
    "owner_id",
    "owner_name",
)


def _require_reason(reason: str | None, minimum: int = 3) -> str:
    reason = (reason or "").strip()
    if len(reason) < minimum:
        raise ValidationError(f"Reason must be at least {minimum} characters")
    return reason


def _raise_on_failure(result: HourTransactionResult, project_id: UUID | None = None) -> None:
    if result.success:
        return
    if result.error_code is HourErrorCode.PROJECT_NOT_FOUND:
        raise NotFoundError("Project not found", {"project_id": str(project_id)})
    raise ValidationError(
        result.error or "Hour transaction failed",
        {"error_code": result.error_code.value if result.error_code else None},
    )


class ProjectService:
    """Project operations. Hour movements go through ``ProjectHoursService``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        hours_service: ProjectHoursService | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.session_factory = session_factory
        self.hours = hours_service or ProjectHoursService(session_factory)
        self.emitter = emitter or EventEmitter()

    @staticmethod
    async def _lock_project(db: AsyncSession, project_id: UUID) -> Project:
        project = (
            await db.execute(
                select(Project)
                .where(Project.project_id == project_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if project is None:
            raise NotFoundError("Project not found", {"project_id": str(project_id)})
        return project

    @staticmethod
    async def _next_code(db: AsyncSession, year: int) -> str:
        """Next NNNNNN-YYYY code past the highest existing number for ``year``."""
        codes = (
            await db.scalars(select(Project.code).where(Project.code.like(f"%-{year}")))
        ).all()
        numbers = [
            int(match.group(1))
            for match in (CODE_PATTERN.match(code) for code in codes)
            if match
        ]
        next_number = max(numbers) + 1 if numbers else FIRST_CODE_NUMBER
        return f"{max(next_number, FIRST_CODE_NUMBER)}-{year}"

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create_project(
        self,
        name: str,
        total_hours: Decimal | int | float | str,
        actor: Actor,
        status: str | None = None,
        **details: Any,
    ) -> Project:
        """Create a project with a generated code.

        Managers and admins create Active projects; anyone else creates a
        Pending project that must be approved first.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Project name is required")
        total = to_hours(total_hours)
        if total < 0:
            raise ValidationError("Total hours must not be negative")
        unknown = set(details) - set(PROJECT_DETAILS)
        if unknown:
            raise ValidationError(f"Unknown project fields: {', '.join(sorted(unknown))}")
        if details.get("priority") is None:
            details.pop("priority", None)
        elif details["priority"] not in PRIORITIES:
            raise ValidationError(f"Invalid priority '{details['priority']}'")

        if status is None:
            status = ProjectStatus.ACTIVE.value if actor.is_manager else ProjectStatus.PENDING.value
        elif status not in (ProjectStatus.ACTIVE, ProjectStatus.PENDING):
            raise ValidationError("New projects must start as Active or Pending")
        status = ProjectStatus(status).value

        async with self.session_factory() as db, db.begin():
            code = await self._next_code(db, datetime.now(timezone.utc).year)
            project = Project(
                name=name,
                code=code,
                total_hours=total,
                used_hours=ZERO,
                status=status,
                created_by=actor.user_id,
                created_by_name=actor.name,
                **details,
            )
            db.add(project)
            await db.flush()
            db.add(
                ProjectStatusHistory(
                    project_id=project.project_id,
                    from_status=None,
                    to_status=status,
                    changed_by=actor.user_id,
                    changed_by_name=actor.name,
                    reason="Project created",
                )
            )

        logger.info("Project %s (%s) created with %sh", project.code, status, total)
        return project

    async def get_project(self, project_id: UUID) -> Project:
        async with self.session_factory() as db:
            project = await db.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project not found", {"project_id": str(project_id)})
        return project

    async def list_projects(self, status: str | None = None) -> list[Project]:
        stmt = select(Project).order_by(Project.created_at.desc())
        if status is not None:
            stmt = stmt.where(Project.status == status)
        async with self.session_factory() as db:
            return list((await db.scalars(stmt)).all())

    async def update_name(self, project_id: UUID, name: str, actor: Actor) -> Project:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Project name is required")
        async with self.session_factory() as db, db.begin():
            project = await self._lock_project(db, project_id)
            old_name = project.name
            project.name = name
        logger.info("Project %s renamed from %r to %r by %s", project.code, old_name, name, actor.name)
        return project

    async def delete_project(self, project_id: UUID) -> None:
        """Delete a project that no request references."""
        async with self.session_factory() as db, db.begin():
            project = await self._lock_project(db, project_id)
            request_count = await db.scalar(
                select(func.count()).select_from(Request).where(Request.project_id == project_id)
            )
            if request_count:
                raise ConflictError(
                    f"Project has {request_count} request(s); reassign or delete them first",
                    {"request_count": request_count},
                )
            await db.delete(project)
        logger.info("Project %s deleted", project_id)

    # ------------------------------------------------------------------
    # Status lifecycle
    # ------------------------------------------------------------------

    async def transition_status(
        self,
        project_id: UUID,
        to_status: str,
        actor: Actor,
        reason: str | None = None,
        completion_notes: str | None = None,
        cancellation_reason: str | None = None,
    ) -> Project:
        """Move a project to a new status and record the change."""
        if cancellation_reason and not reason:
            reason = cancellation_reason

        async with self.session_factory() as db, db.begin():
            project = await self._lock_project(db, project_id)
            from_status = project.status
            self._apply_transition(db, project, to_status, actor, reason)
            if to_status == ProjectStatus.COMPLETED:
                project.completion_notes = completion_notes
            elif to_status == ProjectStatus.CANCELLED:
                project.cancellation_reason = cancellation_reason or reason

        logger.info("Project %s status %s -> %s", project.code, from_status, to_status)
        self.emitter.emit(
            ProjectStatusChanged(
                project_id=project_id,
                from_status=from_status,
                to_status=project.status,
                reason=reason,
                actor_id=actor.user_id,
                actor_name=actor.name,
            )
        )
        return project

    @staticmethod
    def _apply_transition(
        db: AsyncSession,
        project: Project,
        to_status: str,
        actor: Actor,
        reason: str | None,
    ) -> None:
        ProjectStateMachine.validate_transition(project.status, to_status, reason)
        now = datetime.now(timezone.utc)
        db.add(
            ProjectStatusHistory(
                project_id=project.project_id,
                from_status=project.status,
                to_status=ProjectStatus(to_status).value,
                changed_by=actor.user_id,
                changed_by_name=actor.name,
                reason=reason,
            )
        )
        project.status = ProjectStatus(to_status).value
        if to_status == ProjectStatus.COMPLETED:
            project.completed_at = now
        elif to_status == ProjectStatus.CANCELLED:
            project.cancelled_at = now

    async def get_valid_transitions(self, project_id: UUID) -> list[str]:
        project = await self.get_project(project_id)
        return ProjectStateMachine.get_next_statuses(project.status)

    async def get_status_history(
        self, project_id: UUID, limit: int = 50, offset: int = 0
    ) -> list[ProjectStatusHistory]:
        await self.get_project(project_id)
        async with self.session_factory() as db:
            result = await db.scalars(
                select(ProjectStatusHistory)
                .where(ProjectStatusHistory.project_id == project_id)
                .order_by(ProjectStatusHistory.created_at.desc())
                .limit(max(1, limit))
                .offset(max(0, offset))
            )
            return list(result.all())

    async def expire_overdue_projects(
        self, today: date | None = None, actor: Actor | None = None
    ) -> list[Project]:
        """Move Active projects past their deadline to Expired."""
        today = today or datetime.now(timezone.utc).date()
        actor = actor or SYSTEM_ACTOR
        async with self.session_factory() as db, db.begin():
            overdue = (
                await db.scalars(
                    select(Project)
                    .where(
                        Project.status == ProjectStatus.ACTIVE.value,
                        Project.deadline.is_not(None),
                        Project.deadline < today,
                    )
                    .with_for_update()
                )
            ).all()
            for project in overdue:
                self._apply_transition(
                    db,
                    project,
                    ProjectStatus.EXPIRED.value,
                    actor,
                    f"Deadline {project.deadline.isoformat()} passed",
                )

        for project in overdue:
            logger.info("Project %s expired (deadline %s)", project.code, project.deadline)
            self.emitter.emit(
                ProjectStatusChanged(
                    project_id=project.project_id,
                    from_status=ProjectStatus.ACTIVE.value,
                    to_status=ProjectStatus.EXPIRED.value,
                    reason="Deadline passed",
                    actor_id=actor.user_id,
                    actor_name=actor.name,
                )
            )
        return list(overdue)

    async def can_accept_requests(self, project_id: UUID) -> tuple[bool, str | None]:
        """Whether new requests (and new hours) may be attached to a project."""
        async with self.session_factory() as db:
            project = await db.get(Project, project_id)
        if project is None:
            return False, "Project not found"
        if not ProjectStateMachine.is_active(project.status):
            return False, f"Project is {project.status}"
        if project.available_hours <= 0:
            return False, "Project has no available hours"
        return True, None

    # ------------------------------------------------------------------
    # Budget changes
    # ------------------------------------------------------------------

    async def extend_budget(
        self,
        project_id: UUID,
        additional_hours: Decimal | int | float | str,
        reason: str,
        actor: Actor,
    ) -> HourTransactionResult:
        """Raise a project's total hours."""
        reason = _require_reason(reason)
        result = await self.hours.extend_project_hours(
            project_id, additional_hours, actor, reason=reason
        )
        _raise_on_failure(result, project_id)
        logger.info("Project %s extended by %sh: %s", project_id, additional_hours, reason)
        self._emit_hours_changed(
            project_id,
            HourTransactionType.EXTENSION,
            to_hours(additional_hours),
            actor,
            total_hours=(result.used_hours or ZERO) + (result.available_hours or ZERO),
            used_hours=result.used_hours or ZERO,
        )
        return result

    async def adjust_hours(
        self,
        project_id: UUID,
        adjustment: Decimal | int | float | str,
        reason: str,
        actor: Actor,
    ) -> HourTransactionResult:
        """Manually correct a project's used hours."""
        reason = _require_reason(reason)
        result = await self.hours.adjust_project_hours(
            project_id, adjustment, actor, reason=reason
        )
        _raise_on_failure(result, project_id)
        logger.info("Project %s adjusted by %sh: %s", project_id, adjustment, reason)
        self._emit_hours_changed(
            project_id,
            HourTransactionType.ADJUSTMENT,
            to_hours(adjustment),
            actor,
            total_hours=(result.used_hours or ZERO) + (result.available_hours or ZERO),
            used_hours=result.used_hours or ZERO,
        )
        return result

    def _emit_hours_changed(
        self,
        project_id: UUID,
        transaction_type: HourTransactionType,
        hours: Decimal,
        actor: Actor,
        total_hours: Decimal,
        used_hours: Decimal,
    ) -> None:
        self.emitter.emit(
            ProjectHoursChanged(
                project_id=project_id,
                transaction_type=transaction_type.value,
                hours=hours,
                total_hours=total_hours,
                used_hours=used_hours,
                actor_id=actor.user_id,
                actor_name=actor.name,
            )
        )

    async def reassign_requests(
        self, source_id: UUID, target_id: UUID, actor: Actor
    ) -> list[Request]:
        """Move every request (and its reserved hours) to another project.

        All deallocations and allocations share one transaction; any refusal
        rolls the whole move back.
        """
        if source_id == target_id:
            raise ValidationError("Source and target projects must differ")

        async with self.session_factory() as db, db.begin():
            requests = list(
                (
                    await db.scalars(
                        select(Request)
                        .where(Request.project_id == source_id)
                        .order_by(Request.created_at)
                        .with_for_update()
                    )
                ).all()
            )
            # Lock both projects in a stable order to avoid deadlocks
            first, second = sorted((source_id, target_id), key=str)
            locked = {
                first: await self._lock_project(db, first),
                second: await self._lock_project(db, second),
            }
            source, target = locked[source_id], locked[target_id]
            if not ProjectStateMachine.is_active(target.status):
                raise ValidationError(
                    f"Target project must be Active, is '{target.status}'",
                    {"target_status": target.status},
                )

            moved_hours = ZERO
            for request in requests:
                hours = request.allocated_hours or ZERO
                if hours > 0:
                    note = f"Reassigned from {source.code} to {target.code}"
                    _raise_on_failure(
                        await self.hours.deallocate_hours_from_request(
                            source_id, request.request_id, hours, actor, reason=note, session=db
                        )
                    )
                    _raise_on_failure(
                        await self.hours.allocate_hours_to_request(
                            target_id, request.request_id, hours, actor, notes=note, session=db
                        )
                    )
                    moved_hours += hours
                request.project_id = target_id

        logger.info(
            "Reassigned %d request(s) (%sh) from %s to %s",
            len(requests),
            format_hours(moved_hours),
            source.code,
            target.code,
        )
        if moved_hours:
            for project, hours, txn_type in (
                (source, -moved_hours, HourTransactionType.DEALLOCATION),
                (target, moved_hours, HourTransactionType.ALLOCATION),
            ):
                self._emit_hours_changed(
                    project.project_id,
                    txn_type,
                    hours,
                    actor,
                    total_hours=project.total_hours,
                    used_hours=project.used_hours,
                )
        return requests
