"""Project hour ledger.

Every change to a project's reserved hours goes through
``record_hour_transaction``, which:
- locks the project row (SELECT ... FOR UPDATE)
- validates state and balance
- appends one ``project_hour_transaction`` row
- updates the cached ``project.used_hours``

all inside one database transaction. The ledger is the source of truth;
``used_hours`` must always equal the replayed sum of non-EXTENSION rows.

Business failures come back as ``HourTransactionResult`` values, never as
exceptions, so orchestrators can choose between best-effort and mandatory
handling.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from simflow.config import get_settings
from simflow.models import Project, ProjectHourTransaction, Request
from simflow.services.actor import Actor
from simflow.services.state_machine import HourTransactionType, ProjectStateMachine

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class HourErrorCode(str, Enum):
    """Why a ledger operation was refused."""

    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    INSUFFICIENT_HOURS = "INSUFFICIENT_HOURS"
    OVER_DEALLOCATION = "OVER_DEALLOCATION"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    TRANSIENT_DB_ERROR = "TRANSIENT_DB_ERROR"


@dataclass(frozen=True)
class HourTransactionResult:
    """Outcome of a ledger operation.

    On success ``transaction_id`` and both balances are set. A finalize call
    whose actual hours match the allocation succeeds without a transaction.
    """

    success: bool
    transaction_id: UUID | None = None
    balance_before: Decimal | None = None
    balance_after: Decimal | None = None
    available_hours: Decimal | None = None
    used_hours: Decimal | None = None
    error: str | None = None
    error_code: HourErrorCode | None = None

    @classmethod
    def failure(
        cls, error_code: HourErrorCode, error: str, **details: Any
    ) -> HourTransactionResult:
        return cls(success=False, error=error, error_code=error_code, **details)


@dataclass(frozen=True)
class HourAvailability:
    """Pre-flight answer for "can this project cover N more hours"."""

    available: bool
    current_available: Decimal = ZERO
    total_hours: Decimal = ZERO
    used_hours: Decimal = ZERO


@dataclass(frozen=True)
class HourTransactionEntry:
    """One ledger row as shown in project history."""

    transaction_id: UUID
    project_id: UUID
    request_id: UUID | None
    request_title: str | None
    transaction_type: str
    hours: Decimal
    balance_before: Decimal
    balance_after: Decimal
    performed_by: UUID | None
    performed_by_name: str
    notes: str | None
    created_at: datetime


@dataclass(frozen=True)
class HourHistoryPage:
    """A page of ledger rows plus the total row count for the project."""

    transactions: list[HourTransactionEntry] = field(default_factory=list)
    total: int = 0


@dataclass(frozen=True)
class LedgerVerification:
    """Comparison of the cached used balance with a replay of the ledger."""

    project_id: UUID
    cached_used_hours: Decimal
    replayed_used_hours: Decimal
    transaction_count: int

    @property
    def is_consistent(self) -> bool:
        return self.cached_used_hours == self.replayed_used_hours


def to_hours(value: Decimal | int | float | str) -> Decimal:
    """Coerce a numeric value to Decimal without float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def format_hours(value: Decimal) -> str:
    """Render hours without trailing zeros (35.00 -> 35, 2.50 -> 2.5)."""
    return format(value.normalize(), "f")


class ProjectHoursService:
    """Ledger primitive, allocation wrappers and read projections.

    Every mutating method takes an optional ``session``. When given, the
    caller owns the transaction and the method only executes and flushes;
    a business failure leaves nothing written. When omitted, the method runs
    in its own transaction (commit on success, rollback on failure).
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _unit_of_work(
        self, session: AsyncSession | None
    ) -> AsyncGenerator[AsyncSession, None]:
        if session is not None:
            yield session
            return
        async with self.session_factory() as own, own.begin():
            yield own

    @asynccontextmanager
    async def _reader(
        self, session: AsyncSession | None
    ) -> AsyncGenerator[AsyncSession, None]:
        if session is not None:
            yield session
            return
        async with self.session_factory() as own:
            yield own

    @staticmethod
    async def _load_project(
        db: AsyncSession, project_id: UUID, *, lock: bool = False
    ) -> Project | None:
        stmt = select(Project).where(Project.project_id == project_id)
        if lock:
            stmt = stmt.with_for_update()
        # Always refresh from the row so a lock never returns cached balances
        stmt = stmt.execution_options(populate_existing=True)
        return (await db.execute(stmt)).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Ledger primitive
    # ------------------------------------------------------------------

    async def record_hour_transaction(
        self,
        *,
        project_id: UUID,
        transaction_type: HourTransactionType | str,
        hours: Decimal | int | float | str,
        actor: Actor,
        request_id: UUID | None = None,
        notes: str | None = None,
        session: AsyncSession | None = None,
    ) -> HourTransactionResult:
        """Apply a signed hour delta to a project under a row lock.

        Args:
            project_id: Project whose budget is touched
            transaction_type: ALLOCATION, DEALLOCATION or ADJUSTMENT
                (EXTENSION rows come from ``extend_project_hours`` only)
            hours: Signed delta; positive reserves hours, negative returns them
            actor: Who performed the change (stored on the ledger row)
            request_id: Optional request the hours belong to
            notes: Optional free-text note stored on the row
            session: Caller-owned session to join instead of opening one

        Returns:
            HourTransactionResult with balances on success, error_code otherwise
        """
        delta = to_hours(hours)
        try:
            txn_type = HourTransactionType(transaction_type)
        except ValueError:
            txn_type = None
        if txn_type is None or txn_type is HourTransactionType.EXTENSION:
            return HourTransactionResult.failure(
                HourErrorCode.INVALID_ARGUMENT,
                f"Unsupported transaction type '{transaction_type}'",
            )
        if delta == 0:
            return HourTransactionResult.failure(
                HourErrorCode.INVALID_ARGUMENT, "Hours must be non-zero"
            )

        try:
            async with self._unit_of_work(session) as db:
                return await self._apply_delta(
                    db,
                    project_id=project_id,
                    transaction_type=txn_type,
                    delta=delta,
                    actor=actor,
                    request_id=request_id,
                    notes=notes,
                )
        except SQLAlchemyError:
            logger.exception(
                "Hour transaction failed for project %s (%s %s)",
                project_id,
                transaction_type,
                delta,
            )
            return HourTransactionResult.failure(
                HourErrorCode.TRANSIENT_DB_ERROR, "Failed to record hour transaction"
            )

    async def _apply_delta(
        self,
        db: AsyncSession,
        *,
        project_id: UUID,
        transaction_type: HourTransactionType,
        delta: Decimal,
        actor: Actor,
        request_id: UUID | None,
        notes: str | None,
    ) -> HourTransactionResult:
        # Pending caller changes must reach the row before it is re-read
        await db.flush()

        project = await self._load_project(db, project_id, lock=True)
        if project is None:
            return HourTransactionResult.failure(
                HourErrorCode.PROJECT_NOT_FOUND, "Project not found"
            )

        if delta > 0 and not ProjectStateMachine.is_active(project.status):
            return HourTransactionResult.failure(
                HourErrorCode.INVALID_STATE,
                f"Cannot allocate hours to project with status '{project.status}', "
                "must be Active",
            )

        balance_before = project.used_hours
        balance_after = balance_before + delta

        if balance_after > project.total_hours:
            available = project.total_hours - balance_before
            return HourTransactionResult.failure(
                HourErrorCode.INSUFFICIENT_HOURS,
                f"Insufficient hours. Available: {format_hours(available)}h, "
                f"Requested: {format_hours(delta)}h",
                available_hours=available,
            )

        if balance_after < 0:
            return HourTransactionResult.failure(
                HourErrorCode.OVER_DEALLOCATION,
                "Cannot deallocate more hours than used. "
                f"Currently used: {format_hours(balance_before)}h",
                used_hours=balance_before,
            )

        txn = ProjectHourTransaction(
            project_id=project_id,
            request_id=request_id,
            transaction_type=transaction_type.value,
            hours=delta,
            balance_before=balance_before,
            balance_after=balance_after,
            performed_by=actor.user_id,
            performed_by_name=actor.name,
            notes=notes,
        )
        db.add(txn)
        project.used_hours = balance_after
        await db.flush()

        return HourTransactionResult(
            success=True,
            transaction_id=txn.transaction_id,
            balance_before=balance_before,
            balance_after=balance_after,
            available_hours=project.total_hours - balance_after,
            used_hours=balance_after,
        )

    # ------------------------------------------------------------------
    # Allocation operations
    # ------------------------------------------------------------------

    async def allocate_hours_to_request(
        self,
        project_id: UUID,
        request_id: UUID,
        hours: Decimal | int | float | str,
        actor: Actor,
        notes: str | None = None,
        session: AsyncSession | None = None,
    ) -> HourTransactionResult:
        """Reserve hours from a project for a request."""
        hours = to_hours(hours)
        if hours <= 0:
            return HourTransactionResult.failure(
                HourErrorCode.INVALID_ARGUMENT, "Hours to allocate must be positive"
            )
        return await self.record_hour_transaction(
            project_id=project_id,
            transaction_type=HourTransactionType.ALLOCATION,
            hours=hours,
            actor=actor,
            request_id=request_id,
            notes=notes,
            session=session,
        )

    async def deallocate_hours_from_request(
        self,
        project_id: UUID,
        request_id: UUID,
        hours: Decimal | int | float | str,
        actor: Actor,
        reason: str | None = None,
        session: AsyncSession | None = None,
    ) -> HourTransactionResult:
        """Return hours a request holds to the project pool."""
        hours = to_hours(hours)
        if hours <= 0:
            return HourTransactionResult.failure(
                HourErrorCode.INVALID_ARGUMENT, "Hours to deallocate must be positive"
            )
        return await self.record_hour_transaction(
            project_id=project_id,
            transaction_type=HourTransactionType.DEALLOCATION,
            hours=-hours,
            actor=actor,
            request_id=request_id,
            notes=reason,
            session=session,
        )

    async def adjust_project_hours(
        self,
        project_id: UUID,
        delta: Decimal | int | float | str,
        actor: Actor,
        reason: str | None = None,
        session: AsyncSession | None = None,
    ) -> HourTransactionResult:
        """Manual correction of a project's used balance (no request)."""
        delta = to_hours(delta)
        if delta == 0:
            return HourTransactionResult.failure(
                HourErrorCode.INVALID_ARGUMENT, "Adjustment must be non-zero"
            )
        return await self.record_hour_transaction(
            project_id=project_id,
            transaction_type=HourTransactionType.ADJUSTMENT,
            hours=delta,
            actor=actor,
            notes=reason,
            session=session,
        )

    async def finalize_request_hours(
        self,
        project_id: UUID,
        request_id: UUID,
        allocated: Decimal | int | float | str,
        actual: Decimal | int | float | str,
        actor: Actor,
        session: AsyncSession | None = None,
    ) -> HourTransactionResult:
        """Reconcile a request's reservation against the hours actually worked.

        Under-runs return the difference, over-runs reserve it. Equal values
        succeed without touching the database.
        """
        allocated = to_hours(allocated)
        actual = to_hours(actual)
        if allocated < 0 or actual < 0:
            return HourTransactionResult.failure(
                HourErrorCode.INVALID_ARGUMENT, "Hours must not be negative"
            )
        if actual == allocated:
            return HourTransactionResult(success=True)

        note = (
            f"Finalized: actual {format_hours(actual)}h "
            f"vs allocated {format_hours(allocated)}h"
        )
        if actual < allocated:
            return await self.deallocate_hours_from_request(
                project_id, request_id, allocated - actual, actor, reason=note, session=session
            )
        return await self.allocate_hours_to_request(
            project_id, request_id, actual - allocated, actor, notes=note, session=session
        )

    async def extend_project_hours(
        self,
        project_id: UUID,
        additional_hours: Decimal | int | float | str,
        actor: Actor,
        reason: str | None = None,
        session: AsyncSession | None = None,
    ) -> HourTransactionResult:
        """Raise a project's budget and record an EXTENSION row.

        The used balance does not move, so the row carries
        ``balance_before == balance_after``.
        """
        additional = to_hours(additional_hours)
        if additional <= 0:
            return HourTransactionResult.failure(
                HourErrorCode.INVALID_ARGUMENT, "Additional hours must be positive"
            )
        try:
            async with self._unit_of_work(session) as db:
                await db.flush()
                project = await self._load_project(db, project_id, lock=True)
                if project is None:
                    return HourTransactionResult.failure(
                        HourErrorCode.PROJECT_NOT_FOUND, "Project not found"
                    )

                used = project.used_hours
                project.total_hours = project.total_hours + additional
                txn = ProjectHourTransaction(
                    project_id=project_id,
                    transaction_type=HourTransactionType.EXTENSION.value,
                    hours=additional,
                    balance_before=used,
                    balance_after=used,
                    performed_by=actor.user_id,
                    performed_by_name=actor.name,
                    notes=reason,
                )
                db.add(txn)
                await db.flush()

                return HourTransactionResult(
                    success=True,
                    transaction_id=txn.transaction_id,
                    balance_before=used,
                    balance_after=used,
                    available_hours=project.total_hours - used,
                    used_hours=used,
                )
        except SQLAlchemyError:
            logger.exception("Hour extension failed for project %s", project_id)
            return HourTransactionResult.failure(
                HourErrorCode.TRANSIENT_DB_ERROR, "Failed to record hour transaction"
            )

    # ------------------------------------------------------------------
    # Read projections
    # ------------------------------------------------------------------

    async def validate_hour_availability(
        self,
        project_id: UUID,
        hours_needed: Decimal | int | float | str,
        session: AsyncSession | None = None,
    ) -> HourAvailability:
        """Non-locking check whether an Active project can cover ``hours_needed``.

        Advisory only: the answer may be stale by the time the caller
        allocates. The locked primitive is the real guard.
        """
        needed = to_hours(hours_needed)
        try:
            async with self._reader(session) as db:
                project = await self._load_project(db, project_id)
        except SQLAlchemyError:
            logger.exception("Availability check failed for project %s", project_id)
            return HourAvailability(available=False)

        if project is None:
            return HourAvailability(available=False)

        remaining = project.total_hours - project.used_hours
        active = ProjectStateMachine.is_active(project.status)
        return HourAvailability(
            available=active and remaining >= needed,
            current_available=remaining,
            total_hours=project.total_hours,
            used_hours=project.used_hours,
        )

    async def get_project_hour_history(
        self,
        project_id: UUID,
        limit: int = 50,
        offset: int = 0,
        session: AsyncSession | None = None,
    ) -> HourHistoryPage:
        """Newest-first page of ledger rows with linked request titles."""
        limit = max(1, min(limit, get_settings().history_max_limit))
        offset = max(0, offset)

        async with self._reader(session) as db:
            rows = await db.execute(
                select(ProjectHourTransaction, Request.title)
                .outerjoin(Request, Request.request_id == ProjectHourTransaction.request_id)
                .where(ProjectHourTransaction.project_id == project_id)
                .order_by(ProjectHourTransaction.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            total = await db.scalar(
                select(func.count())
                .select_from(ProjectHourTransaction)
                .where(ProjectHourTransaction.project_id == project_id)
            )

        transactions = [
            HourTransactionEntry(
                transaction_id=txn.transaction_id,
                project_id=txn.project_id,
                request_id=txn.request_id,
                request_title=title,
                transaction_type=txn.transaction_type,
                hours=txn.hours,
                balance_before=txn.balance_before,
                balance_after=txn.balance_after,
                performed_by=txn.performed_by,
                performed_by_name=txn.performed_by_name,
                notes=txn.notes,
                created_at=txn.created_at,
            )
            for txn, title in rows.all()
        ]
        return HourHistoryPage(transactions=transactions, total=total or 0)

    async def get_request_allocated_hours(
        self,
        project_id: UUID,
        request_id: UUID,
        session: AsyncSession | None = None,
    ) -> Decimal:
        """Sum of ledger hours tagged to a request (reconciliation aid)."""
        try:
            async with self._reader(session) as db:
                total = await db.scalar(
                    select(func.coalesce(func.sum(ProjectHourTransaction.hours), 0)).where(
                        ProjectHourTransaction.project_id == project_id,
                        ProjectHourTransaction.request_id == request_id,
                    )
                )
        except SQLAlchemyError:
            logger.exception(
                "Allocated hours lookup failed for request %s on project %s",
                request_id,
                project_id,
            )
            return ZERO
        return to_hours(total or 0)

    async def verify_project_ledger(
        self,
        project_id: UUID,
        session: AsyncSession | None = None,
    ) -> LedgerVerification | None:
        """Replay a project's ledger and compare with the cached balance.

        Returns None when the project does not exist.
        """
        async with self._reader(session) as db:
            project = await self._load_project(db, project_id)
            if project is None:
                return None
            hours = (
                await db.scalars(
                    select(ProjectHourTransaction.hours)
                    .where(
                        ProjectHourTransaction.project_id == project_id,
                        ProjectHourTransaction.transaction_type
                        != HourTransactionType.EXTENSION.value,
                    )
                    .order_by(ProjectHourTransaction.created_at)
                )
            ).all()

        replayed = ZERO
        for delta in hours:
            replayed += delta

        verification = LedgerVerification(
            project_id=project_id,
            cached_used_hours=project.used_hours,
            replayed_used_hours=replayed,
            transaction_count=len(hours),
        )
        if not verification.is_consistent:
            logger.warning(
                "Ledger drift on project %s: cached %s, replayed %s",
                project_id,
                verification.cached_used_hours,
                verification.replayed_used_hours,
            )
        return verification
