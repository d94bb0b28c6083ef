"""Tests for the project hour ledger."""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from simflow.models import ProjectHourTransaction
from simflow.services.project_hours_service import HourErrorCode, ProjectHoursService


async def count_rows(session_factory, project_id) -> int:
    async with session_factory() as db:
        return await db.scalar(
            select(func.count())
            .select_from(ProjectHourTransaction)
            .where(ProjectHourTransaction.project_id == project_id)
        )


class TestAllocation:
    """Allocation under the row lock."""

    async def test_allocate_within_budget(
        self, hours_service, make_project, make_request, manager, load_project, session_factory
    ):
        """100h project with 40h used: allocating 30h leaves 30h available."""
        project = await make_project(total_hours="100")
        first = await make_request(project.project_id, "Baseline")
        second = await make_request(project.project_id, "Variant")
        await hours_service.allocate_hours_to_request(
            project.project_id, first.request_id, 40, manager
        )

        result = await hours_service.allocate_hours_to_request(
            project.project_id, second.request_id, 30, manager
        )

        assert result.success is True
        assert result.transaction_id is not None
        assert result.balance_before == Decimal("40")
        assert result.balance_after == Decimal("70")
        assert result.available_hours == Decimal("30")
        assert (await load_project(project.project_id)).used_hours == Decimal("70")
        assert await count_rows(session_factory, project.project_id) == 2

    async def test_insufficient_hours_writes_nothing(
        self, hours_service, make_project, make_request, manager, load_project, session_factory
    ):
        """100h project with 90h used cannot take 20h more."""
        project = await make_project(total_hours="100")
        request = await make_request(project.project_id)
        await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 90, manager
        )

        result = await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 20, manager
        )

        assert result.success is False
        assert result.error_code is HourErrorCode.INSUFFICIENT_HOURS
        assert result.available_hours == Decimal("10")
        assert "Available: 10h" in result.error
        assert "Requested: 20h" in result.error
        assert (await load_project(project.project_id)).used_hours == Decimal("90")
        assert await count_rows(session_factory, project.project_id) == 1

    async def test_exact_boundary_then_one_hundredth_more(
        self, hours_service, make_project, make_request, manager
    ):
        """Filling the budget exactly succeeds; 0.01h more is refused."""
        project = await make_project(total_hours="100")
        request = await make_request(project.project_id)
        await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 90, manager
        )

        exact = await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 10, manager
        )
        assert exact.success is True
        assert exact.available_hours == Decimal("0")

        over = await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, "0.01", manager
        )
        assert over.success is False
        assert over.error_code is HourErrorCode.INSUFFICIENT_HOURS

    @pytest.mark.parametrize("status", ["Pending", "On Hold", "Suspended", "Completed", "Expired"])
    async def test_allocation_needs_active_project(
        self, hours_service, make_project, make_request, manager, status
    ):
        project = await make_project(status=status)
        request = await make_request(project.project_id)

        result = await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 5, manager
        )

        assert result.success is False
        assert result.error_code is HourErrorCode.INVALID_STATE
        assert result.error == (
            f"Cannot allocate hours to project with status '{status}', must be Active"
        )

    async def test_missing_project(self, hours_service, manager):
        result = await hours_service.allocate_hours_to_request(uuid4(), uuid4(), 5, manager)

        assert result.success is False
        assert result.error_code is HourErrorCode.PROJECT_NOT_FOUND
        assert result.error == "Project not found"

    @pytest.mark.parametrize("hours", [0, -1, "-0.5"])
    async def test_allocate_rejects_non_positive(self, hours_service, manager, hours):
        result = await hours_service.allocate_hours_to_request(uuid4(), uuid4(), hours, manager)

        assert result.error_code is HourErrorCode.INVALID_ARGUMENT
        assert result.error == "Hours to allocate must be positive"


class TestDeallocation:
    """Returning hours to the pool."""

    async def test_deallocate_more_than_used(
        self, hours_service, make_project, make_request, manager, load_project
    ):
        project = await make_project()
        request = await make_request(project.project_id)
        await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 5, manager
        )

        result = await hours_service.deallocate_hours_from_request(
            project.project_id, request.request_id, 10, manager
        )

        assert result.success is False
        assert result.error_code is HourErrorCode.OVER_DEALLOCATION
        assert result.used_hours == Decimal("5")
        assert result.error == "Cannot deallocate more hours than used. Currently used: 5h"
        assert (await load_project(project.project_id)).used_hours == Decimal("5")

    async def test_deallocation_allowed_on_inactive_project(
        self, hours_service, make_project, make_request, manager, session_factory, load_project
    ):
        """Hours can always be returned, whatever the project status."""
        project = await make_project()
        request = await make_request(project.project_id)
        await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 8, manager
        )
        async with session_factory() as db, db.begin():
            loaded = await db.get(type(project), project.project_id)
            loaded.status = "On Hold"

        result = await hours_service.deallocate_hours_from_request(
            project.project_id, request.request_id, 8, manager, reason="Request denied"
        )

        assert result.success is True
        assert result.balance_after == Decimal("0")
        assert (await load_project(project.project_id)).used_hours == Decimal("0")

    async def test_deallocation_row_is_negative(
        self, hours_service, make_project, make_request, manager
    ):
        project = await make_project()
        request = await make_request(project.project_id)
        await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 12, manager
        )
        await hours_service.deallocate_hours_from_request(
            project.project_id, request.request_id, 4, manager, reason="Scope cut"
        )

        page = await hours_service.get_project_hour_history(project.project_id)
        latest = page.transactions[0]
        assert latest.transaction_type == "DEALLOCATION"
        assert latest.hours == Decimal("-4")
        assert latest.balance_before == Decimal("12")
        assert latest.balance_after == Decimal("8")
        assert latest.notes == "Scope cut"

    @pytest.mark.parametrize("hours", [0, -3])
    async def test_deallocate_rejects_non_positive(self, hours_service, manager, hours):
        result = await hours_service.deallocate_hours_from_request(uuid4(), uuid4(), hours, manager)

        assert result.error_code is HourErrorCode.INVALID_ARGUMENT
        assert result.error == "Hours to deallocate must be positive"


class TestAdjustmentAndExtension:
    """Manual corrections and budget increases."""

    async def test_adjust_requires_non_zero(self, hours_service, manager):
        result = await hours_service.adjust_project_hours(uuid4(), 0, manager)

        assert result.error_code is HourErrorCode.INVALID_ARGUMENT
        assert result.error == "Adjustment must be non-zero"

    async def test_adjustment_has_no_request(
        self, hours_service, make_project, manager, load_project
    ):
        project = await make_project()

        result = await hours_service.adjust_project_hours(
            project.project_id, "2.5", manager, reason="Setup time"
        )

        assert result.success is True
        assert (await load_project(project.project_id)).used_hours == Decimal("2.5")
        page = await hours_service.get_project_hour_history(project.project_id)
        assert page.transactions[0].transaction_type == "ADJUSTMENT"
        assert page.transactions[0].request_id is None

    async def test_negative_adjustment_cannot_go_below_zero(
        self, hours_service, make_project, manager
    ):
        project = await make_project()

        result = await hours_service.adjust_project_hours(project.project_id, -1, manager)

        assert result.error_code is HourErrorCode.OVER_DEALLOCATION

    async def test_extension_raises_total_only(
        self, hours_service, make_project, make_request, manager, load_project
    ):
        project = await make_project(total_hours="50")
        request = await make_request(project.project_id)
        await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 50, manager
        )

        result = await hours_service.extend_project_hours(
            project.project_id, 25, manager, reason="Phase 2"
        )

        assert result.success is True
        assert result.balance_before == result.balance_after == Decimal("50")
        assert result.available_hours == Decimal("25")
        reloaded = await load_project(project.project_id)
        assert reloaded.total_hours == Decimal("75")
        assert reloaded.used_hours == Decimal("50")

        verification = await hours_service.verify_project_ledger(project.project_id)
        assert verification.is_consistent is True
        assert verification.transaction_count == 1

    async def test_extension_allowed_for_any_status(
        self, hours_service, make_project, manager, load_project
    ):
        project = await make_project(total_hours="10", status="Expired")

        result = await hours_service.extend_project_hours(project.project_id, 5, manager)

        assert result.success is True
        assert (await load_project(project.project_id)).total_hours == Decimal("15")

    async def test_extension_rejects_non_positive(self, hours_service, manager):
        result = await hours_service.extend_project_hours(uuid4(), 0, manager)

        assert result.error_code is HourErrorCode.INVALID_ARGUMENT
        assert result.error == "Additional hours must be positive"

    async def test_extension_missing_project(self, hours_service, manager):
        result = await hours_service.extend_project_hours(uuid4(), 5, manager)

        assert result.error_code is HourErrorCode.PROJECT_NOT_FOUND

    async def test_primitive_refuses_extension_type(self, hours_service, make_project, manager):
        project = await make_project()

        result = await hours_service.record_hour_transaction(
            project_id=project.project_id,
            transaction_type="EXTENSION",
            hours=5,
            actor=manager,
        )

        assert result.error_code is HourErrorCode.INVALID_ARGUMENT


class TestFinalize:
    """Reconciling a reservation against actual hours."""

    async def test_equal_hours_touch_nothing(
        self, hours_service, make_project, make_request, manager, session_factory
    ):
        project = await make_project()
        request = await make_request(project.project_id)
        await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 10, manager
        )

        result = await hours_service.finalize_request_hours(
            project.project_id, request.request_id, 10, "10.00", manager
        )

        assert result.success is True
        assert result.transaction_id is None
        assert await count_rows(session_factory, project.project_id) == 1

    async def test_under_run_returns_difference(
        self, hours_service, make_project, make_request, manager, load_project
    ):
        project = await make_project()
        request = await make_request(project.project_id)
        await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 10, manager
        )

        result = await hours_service.finalize_request_hours(
            project.project_id, request.request_id, 10, 7, manager
        )

        assert result.success is True
        assert (await load_project(project.project_id)).used_hours == Decimal("7")
        page = await hours_service.get_project_hour_history(project.project_id)
        assert page.transactions[0].transaction_type == "DEALLOCATION"
        assert page.transactions[0].hours == Decimal("-3")

    async def test_over_run_reserves_difference(
        self, hours_service, make_project, make_request, manager, load_project
    ):
        project = await make_project()
        request = await make_request(project.project_id)
        await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 10, manager
        )

        result = await hours_service.finalize_request_hours(
            project.project_id, request.request_id, 10, 12, manager
        )

        assert result.success is True
        assert (await load_project(project.project_id)).used_hours == Decimal("12")

    async def test_over_run_past_budget_fails(
        self, hours_service, make_project, make_request, manager
    ):
        project = await make_project(total_hours="10")
        request = await make_request(project.project_id)
        await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 10, manager
        )

        result = await hours_service.finalize_request_hours(
            project.project_id, request.request_id, 10, 14, manager
        )

        assert result.error_code is HourErrorCode.INSUFFICIENT_HOURS


class TestCallerOwnedTransaction:
    """The primitive joins a session handed in by the caller."""

    async def test_rollback_discards_ledger_work(
        self, hours_service, make_project, make_request, manager, session_factory, load_project
    ):
        project = await make_project()
        request = await make_request(project.project_id)

        class CallerFailed(Exception):
            pass

        with pytest.raises(CallerFailed):
            async with session_factory() as db, db.begin():
                result = await hours_service.allocate_hours_to_request(
                    project.project_id, request.request_id, 15, manager, session=db
                )
                assert result.success is True
                raise CallerFailed

        assert (await load_project(project.project_id)).used_hours == Decimal("0")
        assert await count_rows(session_factory, project.project_id) == 0

    async def test_commit_keeps_ledger_work(
        self, hours_service, make_project, make_request, manager, session_factory, load_project
    ):
        project = await make_project()
        request = await make_request(project.project_id)

        async with session_factory() as db, db.begin():
            first = await hours_service.allocate_hours_to_request(
                project.project_id, request.request_id, 15, manager, session=db
            )
            second = await hours_service.allocate_hours_to_request(
                project.project_id, request.request_id, 5, manager, session=db
            )

        assert first.balance_after == Decimal("15")
        assert second.balance_before == Decimal("15")
        assert (await load_project(project.project_id)).used_hours == Decimal("20")


class TestDatabaseErrors:
    """Unexpected database failures become a generic transient error."""

    async def test_transient_error_hides_details(
        self, session_factory, make_project, manager, monkeypatch, caplog
    ):
        project = await make_project()
        service = ProjectHoursService(session_factory)

        async def broken(*args, **kwargs):
            raise OperationalError("UPDATE project", {}, Exception("connection reset"))

        monkeypatch.setattr(service, "_apply_delta", broken)

        result = await service.adjust_project_hours(project.project_id, 1, manager)

        assert result.success is False
        assert result.error_code is HourErrorCode.TRANSIENT_DB_ERROR
        assert result.error == "Failed to record hour transaction"
        assert "connection reset" not in result.error
        assert "Hour transaction failed" in caplog.text


class TestQueries:
    """Read-only projections over the ledger."""

    async def test_availability(self, hours_service, make_project, make_request, manager):
        project = await make_project(total_hours="40")
        request = await make_request(project.project_id)
        await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 30, manager
        )

        enough = await hours_service.validate_hour_availability(project.project_id, 10)
        short = await hours_service.validate_hour_availability(project.project_id, "10.5")

        assert enough.available is True
        assert enough.current_available == Decimal("10")
        assert enough.total_hours == Decimal("40")
        assert enough.used_hours == Decimal("30")
        assert short.available is False

    async def test_availability_missing_project(self, hours_service):
        availability = await hours_service.validate_hour_availability(uuid4(), 1)

        assert availability.available is False
        assert availability.current_available == Decimal("0")
        assert availability.total_hours == Decimal("0")

    async def test_availability_inactive_project(self, hours_service, make_project):
        project = await make_project(total_hours="100", status="On Hold")

        availability = await hours_service.validate_hour_availability(project.project_id, 10)

        assert availability.available is False
        assert availability.current_available == Decimal("100")
        assert availability.total_hours == Decimal("100")

    async def test_history_newest_first_with_titles(
        self, hours_service, make_project, make_request, manager
    ):
        project = await make_project()
        request = await make_request(project.project_id, "Crash sim")
        await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 5, manager
        )
        await hours_service.adjust_project_hours(project.project_id, 1, manager)
        await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 2, manager
        )

        page = await hours_service.get_project_hour_history(project.project_id)

        assert page.total == 3
        assert [t.hours for t in page.transactions] == [
            Decimal("2"),
            Decimal("1"),
            Decimal("5"),
        ]
        assert page.transactions[0].request_title == "Crash sim"
        assert page.transactions[1].request_title is None
        assert page.transactions[0].performed_by_name == manager.name

    async def test_history_pagination(self, hours_service, make_project, manager):
        project = await make_project()
        for _ in range(5):
            await hours_service.adjust_project_hours(project.project_id, 1, manager)

        page = await hours_service.get_project_hour_history(project.project_id, limit=2, offset=2)

        assert page.total == 5
        assert len(page.transactions) == 2
        assert [t.balance_after for t in page.transactions] == [Decimal("3"), Decimal("2")]

    async def test_request_allocated_hours(
        self, hours_service, make_project, make_request, manager
    ):
        project = await make_project()
        request = await make_request(project.project_id)
        other = await make_request(project.project_id)
        await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 10, manager
        )
        await hours_service.deallocate_hours_from_request(
            project.project_id, request.request_id, 4, manager
        )
        await hours_service.allocate_hours_to_request(
            project.project_id, other.request_id, 3, manager
        )

        total = await hours_service.get_request_allocated_hours(
            project.project_id, request.request_id
        )
        none = await hours_service.get_request_allocated_hours(project.project_id, uuid4())

        assert total == Decimal("6")
        assert none == Decimal("0")

    async def test_verify_detects_drift(
        self, hours_service, make_project, make_request, manager, session_factory
    ):
        project = await make_project()
        request = await make_request(project.project_id)
        await hours_service.allocate_hours_to_request(
            project.project_id, request.request_id, 10, manager
        )
        async with session_factory() as db, db.begin():
            loaded = await db.get(type(project), project.project_id)
            loaded.used_hours = Decimal("11")

        verification = await hours_service.verify_project_ledger(project.project_id)

        assert verification.is_consistent is False
        assert verification.cached_used_hours == Decimal("11")
        assert verification.replayed_used_hours == Decimal("10")

    async def test_verify_missing_project(self, hours_service):
        assert await hours_service.verify_project_ledger(uuid4()) is None
