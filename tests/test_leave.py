"""Leave module test suite — request lifecycle, ledger bookkeeping,
attendance projection, compensation, leave types and balances.

Every lifecycle test checks the balance counters after the transition;
the sum of reservations and consumption must always match the requests
that are PENDING / APPROVED.

Tests run against SQLite via the shared conftest.py fixtures.
"""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hrms.attendance.models import AttendanceRecord
from hrms.attendance.projector import AttendanceProjector
from hrms.common.audit import AuditTrail
from hrms.common.constants import AttendanceStatus, LeaveStatus
from hrms.common.exceptions import (
    AlreadyProcessedException,
    ConcurrencyConflictException,
    ConflictError,
    ForbiddenException,
    InsufficientBalanceException,
    InvalidStateException,
    NotFoundException,
    ValidationException,
)
from hrms.common.pagination import PaginationParams
from hrms.core_hr.models import Employee
from hrms.leave.ledger import BalanceCounters, LeaveBalanceLedger
from hrms.leave.models import LeaveBalance, LeaveRequest, LeaveType
from hrms.leave.schemas import (
    BalanceAdjustRequest,
    LeaveRequestCreate,
    LeaveRequestOut,
    LeaveRequestUpdate,
    LeaveTypeCreate,
    LeaveTypeUpdate,
)
from hrms.leave.service import LeaveService
from tests.conftest import _make_employee, _make_leave_type

D = Decimal


# ═════════════════════════════════════════════════════════════════════
# Helpers: seed data for leave tests
# ═════════════════════════════════════════════════════════════════════


async def _seed_leave_type(db: AsyncSession, **overrides) -> LeaveType:
    lt = LeaveType(**_make_leave_type(**overrides))
    db.add(lt)
    await db.flush()
    return lt


async def _seed_balance(
    db: AsyncSession,
    employee_id: uuid.UUID,
    leave_type_id: uuid.UUID,
    *,
    year: int = 2025,
    allocated: Decimal = D("20"),
    carried_forward: Decimal = D("0"),
    used: Decimal = D("0"),
    pending: Decimal = D("0"),
) -> LeaveBalance:
    bal = LeaveBalance(
        id=uuid.uuid4(),
        employee_id=employee_id,
        leave_type_id=leave_type_id,
        year=year,
        allocated_leaves=allocated,
        carried_forward=carried_forward,
        used_leaves=used,
        pending_leaves=pending,
        version=1,
    )
    db.add(bal)
    await db.flush()
    return bal


async def _seed_employee(db: AsyncSession, **overrides) -> Employee:
    emp = Employee(**_make_employee(**overrides))
    db.add(emp)
    await db.flush()
    return emp


async def _apply(
    db: AsyncSession,
    employee_id: uuid.UUID,
    leave_type_id: uuid.UUID,
    start: date,
    end: date,
    *,
    is_half_day: bool = False,
) -> LeaveRequestOut:
    return await LeaveService.create_leave_request(
        db,
        employee_id,
        LeaveRequestCreate(
            leave_type_id=leave_type_id,
            start_date=start,
            end_date=end,
            is_half_day=is_half_day,
            reason="Family trip",
        ),
    )


async def _balance(
    db: AsyncSession,
    employee_id: uuid.UUID,
    leave_type_id: uuid.UUID,
    year: int = 2025,
) -> Optional[LeaveBalance]:
    result = await db.execute(
        select(LeaveBalance)
        .where(
            LeaveBalance.employee_id == employee_id,
            LeaveBalance.leave_type_id == leave_type_id,
            LeaveBalance.year == year,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def _request(db: AsyncSession, request_id: uuid.UUID) -> LeaveRequest:
    result = await db.execute(
        select(LeaveRequest)
        .where(LeaveRequest.id == request_id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().one()


async def _attendance(db: AsyncSession, employee_id: uuid.UUID) -> list[AttendanceRecord]:
    result = await db.execute(
        select(AttendanceRecord)
        .where(AttendanceRecord.employee_id == employee_id)
        .order_by(AttendanceRecord.date)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _request_count(db: AsyncSession) -> int:
    return (
        await db.execute(select(func.count()).select_from(LeaveRequest))
    ).scalar_one()


def _page() -> PaginationParams:
    return PaginationParams(page=1, page_size=50)


MON = date(2025, 1, 6)
FRI = date(2025, 1, 10)


# ═════════════════════════════════════════════════════════════════════
# Lifecycle scenarios
# ═════════════════════════════════════════════════════════════════════


class TestLifecycle:

    async def test_create_reserves_days(self, db: AsyncSession, test_employee, annual_leave):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        assert req.status == LeaveStatus.pending
        assert req.duration == D("5")
        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.allocated_leaves == D("20")
        assert bal.pending_leaves == D("5")
        assert bal.used_leaves == D("0")

    async def test_approve_commits_and_projects_attendance(
        self, db: AsyncSession, test_employee, test_manager, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        out = await LeaveService.decide_leave_request(
            db, req.id, LeaveStatus.approved, test_manager["id"],
        )

        assert out.status == LeaveStatus.approved
        assert out.approved_by == test_manager["id"]
        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.used_leaves == D("5")
        assert bal.pending_leaves == D("0")

        rows = await _attendance(db, test_employee["id"])
        assert [r.date for r in rows] == [date(2025, 1, d) for d in range(6, 11)]
        assert all(r.status == AttendanceStatus.leave for r in rows)
        assert all(r.is_leave and r.leave_request_id == req.id for r in rows)

    async def test_cancel_approved_revokes_and_reverts_attendance(
        self, db: AsyncSession, test_employee, test_manager, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)
        await LeaveService.decide_leave_request(
            db, req.id, LeaveStatus.approved, test_manager["id"],
        )

        out = await LeaveService.cancel_leave_request(
            db, req.id, test_employee["id"], is_privileged=False,
        )

        assert out.status == LeaveStatus.cancelled
        assert out.cancelled_by == test_employee["id"]
        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.used_leaves == D("0")
        assert bal.pending_leaves == D("0")

        rows = await _attendance(db, test_employee["id"])
        assert len(rows) == 5
        assert all(r.status == AttendanceStatus.absent for r in rows)
        assert all(r.leave_request_id is None and not r.is_leave for r in rows)

    async def test_insufficient_balance_leaves_balance_unchanged(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        await _seed_balance(
            db, test_employee["id"], annual_leave["id"], used=D("17"),
        )

        with pytest.raises(InsufficientBalanceException) as exc_info:
            await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        assert exc_info.value.available == D("3")
        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.used_leaves == D("17")
        assert bal.pending_leaves == D("0")
        assert bal.version == 1
        assert await _request_count(db) == 0

    async def test_reject_releases_without_attendance(
        self, db: AsyncSession, test_employee, test_manager, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        out = await LeaveService.decide_leave_request(
            db, req.id, LeaveStatus.rejected, test_manager["id"],
            rejection_reason="Release week",
        )

        assert out.status == LeaveStatus.rejected
        assert out.rejection_reason == "Release week"
        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.pending_leaves == D("0")
        assert bal.used_leaves == D("0")
        assert await _attendance(db, test_employee["id"]) == []

    async def test_cancel_pending_releases(self, db: AsyncSession, test_employee, annual_leave):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        await LeaveService.cancel_leave_request(
            db, req.id, test_employee["id"], is_privileged=False,
        )

        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.pending_leaves == D("0")
        assert bal.used_leaves == D("0")

    async def test_request_exactly_available_succeeds(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        await _seed_balance(db, test_employee["id"], annual_leave["id"], used=D("15"))

        await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)
        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.available == D("0")

        with pytest.raises(InsufficientBalanceException):
            await _apply(
                db, test_employee["id"], annual_leave["id"],
                date(2025, 2, 3), date(2025, 2, 3), is_half_day=True,
            )

    async def test_carried_forward_counts_towards_available(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        await _seed_balance(
            db, test_employee["id"], annual_leave["id"],
            allocated=D("2"), carried_forward=D("3"),
        )

        await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.pending_leaves == D("5")

    async def test_half_day_request(self, db: AsyncSession, test_employee, annual_leave):
        req = await _apply(
            db, test_employee["id"], annual_leave["id"], MON, MON, is_half_day=True,
        )

        assert req.duration == D("0.5")
        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.pending_leaves == D("0.5")

    async def test_round_trip_restores_balance(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        await _seed_balance(db, test_employee["id"], annual_leave["id"], used=D("2"))
        before = BalanceCounters.of(await _balance(db, test_employee["id"], annual_leave["id"]))

        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)
        await LeaveService.update_leave_request(
            db, req.id, test_employee["id"], False,
            LeaveRequestUpdate(end_date=date(2025, 1, 7)),
        )
        await LeaveService.cancel_leave_request(db, req.id, test_employee["id"], False)

        after = BalanceCounters.of(await _balance(db, test_employee["id"], annual_leave["id"]))
        assert after.used_leaves == before.used_leaves
        assert after.pending_leaves == before.pending_leaves
        assert after.available == before.available
        assert after.version > before.version

    async def test_lifecycle_writes_audit_entries(
        self, db: AsyncSession, test_employee, test_manager, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)
        await LeaveService.decide_leave_request(
            db, req.id, LeaveStatus.approved, test_manager["id"],
        )
        await LeaveService.cancel_leave_request(db, req.id, test_manager["id"], True)

        result = await db.execute(
            select(AuditTrail).where(
                AuditTrail.entity_type == "leave_request",
                AuditTrail.entity_id == req.id,
            )
        )
        entries = {e.action: e for e in result.scalars().all()}
        assert set(entries) == {"create", "approve", "cancel"}
        assert entries["approve"].actor_id == test_manager["id"]
        assert entries["approve"].new_values["attendance_days"] == 5
        assert entries["cancel"].old_values == {"status": "approved"}


# ═════════════════════════════════════════════════════════════════════
# Validation before the state machine
# ═════════════════════════════════════════════════════════════════════


class TestCreateValidation:

    async def test_overlapping_request_rejected(self, db: AsyncSession, test_employee, annual_leave):
        await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        with pytest.raises(ValidationException) as exc_info:
            await _apply(
                db, test_employee["id"], annual_leave["id"],
                date(2025, 1, 10), date(2025, 1, 13),
            )
        assert "dates" in exc_info.value.errors

    async def test_cancelled_dates_can_be_reused(self, db: AsyncSession, test_employee, annual_leave):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)
        await LeaveService.cancel_leave_request(db, req.id, test_employee["id"], False)

        again = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        assert again.status == LeaveStatus.pending

    async def test_max_consecutive_days(self, db: AsyncSession, test_employee):
        sick = await _seed_leave_type(db, code="SL", name="Sick Leave", max_consecutive_days=3)

        with pytest.raises(ValidationException) as exc_info:
            await _apply(db, test_employee["id"], sick.id, MON, date(2025, 1, 9))

        assert "duration" in exc_info.value.errors
        assert await _balance(db, test_employee["id"], sick.id) is None

    async def test_inactive_leave_type(self, db: AsyncSession, test_employee):
        retired = await _seed_leave_type(db, code="OL", name="Old Leave", is_active=False)

        with pytest.raises(NotFoundException):
            await _apply(db, test_employee["id"], retired.id, MON, FRI)

    async def test_inactive_employee(self, db: AsyncSession, annual_leave):
        emp = await _seed_employee(db)
        emp.is_active = False
        await db.flush()

        with pytest.raises(NotFoundException):
            await _apply(db, emp.id, annual_leave["id"], MON, FRI)

    async def test_cross_year_request(self, db: AsyncSession, test_employee, annual_leave):
        with pytest.raises(ValidationException):
            await _apply(
                db, test_employee["id"], annual_leave["id"],
                date(2025, 12, 30), date(2026, 1, 2),
            )

    async def test_balance_year_follows_start_date(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        await _apply(
            db, test_employee["id"], annual_leave["id"],
            date(2026, 3, 2), date(2026, 3, 3),
        )

        assert await _balance(db, test_employee["id"], annual_leave["id"], 2025) is None
        bal = await _balance(db, test_employee["id"], annual_leave["id"], 2026)
        assert bal.pending_leaves == D("2")

    async def test_auto_approve_when_no_approval_required(self, db: AsyncSession, test_employee):
        comp_off = await _seed_leave_type(
            db, code="CO", name="Comp Off", default_annual_quota=D("5"),
            requires_approval=False,
        )

        req = await _apply(db, test_employee["id"], comp_off.id, MON, date(2025, 1, 7))

        assert req.status == LeaveStatus.approved
        assert req.approved_by is None
        bal = await _balance(db, test_employee["id"], comp_off.id)
        assert bal.used_leaves == D("2")
        assert bal.pending_leaves == D("0")
        rows = await _attendance(db, test_employee["id"])
        assert len(rows) == 2


# ═════════════════════════════════════════════════════════════════════
# Decisions and cancellation
# ═════════════════════════════════════════════════════════════════════


class TestDecisions:

    async def test_decide_twice_already_processed(
        self, db: AsyncSession, test_employee, test_manager, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)
        await LeaveService.decide_leave_request(
            db, req.id, LeaveStatus.approved, test_manager["id"],
        )

        with pytest.raises(AlreadyProcessedException):
            await LeaveService.decide_leave_request(
                db, req.id, LeaveStatus.rejected, test_manager["id"],
                rejection_reason="Too late",
            )

        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.used_leaves == D("5")

    async def test_decide_with_cancelled_outcome_rejected(
        self, db: AsyncSession, test_employee, test_manager, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        with pytest.raises(ValidationException):
            await LeaveService.decide_leave_request(
                db, req.id, LeaveStatus.cancelled, test_manager["id"],
            )

    async def test_decide_unknown_request(self, db: AsyncSession, test_manager):
        with pytest.raises(NotFoundException):
            await LeaveService.decide_leave_request(
                db, uuid.uuid4(), LeaveStatus.approved, test_manager["id"],
            )

    async def test_cancel_others_request_forbidden(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)
        other = await _seed_employee(db)

        with pytest.raises(ForbiddenException):
            await LeaveService.cancel_leave_request(db, req.id, other.id, False)

        assert (await _request(db, req.id)).status == LeaveStatus.pending

    async def test_privileged_can_cancel_others_request(
        self, db: AsyncSession, test_employee, test_manager, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        out = await LeaveService.cancel_leave_request(db, req.id, test_manager["id"], True)

        assert out.status == LeaveStatus.cancelled
        assert out.cancelled_by == test_manager["id"]

    async def test_cancel_rejected_invalid_state(
        self, db: AsyncSession, test_employee, test_manager, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)
        await LeaveService.decide_leave_request(
            db, req.id, LeaveStatus.rejected, test_manager["id"], rejection_reason="No",
        )

        with pytest.raises(InvalidStateException):
            await LeaveService.cancel_leave_request(db, req.id, test_employee["id"], False)

    async def test_cancel_twice_invalid_state(self, db: AsyncSession, test_employee, annual_leave):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)
        await LeaveService.cancel_leave_request(db, req.id, test_employee["id"], False)

        with pytest.raises(InvalidStateException):
            await LeaveService.cancel_leave_request(db, req.id, test_employee["id"], False)

        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.pending_leaves == D("0")


# ═════════════════════════════════════════════════════════════════════
# Concurrency and compensation
# ═════════════════════════════════════════════════════════════════════


def _racing_balance_for(on_read):
    """Wrap ``_balance_for`` so *on_read* runs between our read and our write."""

    original = LeaveService._balance_for

    async def racing(db, leave_request):
        balance = await original(db, leave_request)
        await on_read(db, leave_request, balance)
        return balance

    return patch.object(LeaveService, "_balance_for", staticmethod(racing))


async def _set_status(db: AsyncSession, request_id: uuid.UUID, status: LeaveStatus) -> None:
    await db.execute(
        update(LeaveRequest)
        .where(LeaveRequest.id == request_id)
        .values(status=status)
        .execution_options(synchronize_session=False)
    )


class TestConcurrencyAndCompensation:

    async def test_concurrent_decision_already_processed(
        self, db: AsyncSession, test_employee, test_manager, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        async def rejected_elsewhere(db, leave_request, balance):
            await _set_status(db, leave_request.id, LeaveStatus.rejected)

        with _racing_balance_for(rejected_elsewhere):
            with pytest.raises(AlreadyProcessedException) as exc_info:
                await LeaveService.decide_leave_request(
                    db, req.id, LeaveStatus.approved, test_manager["id"],
                )
        assert exc_info.value.status_code == 409

        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.used_leaves == D("0")
        assert await _attendance(db, test_employee["id"]) == []

    async def test_cancel_racing_rejection_invalid_state(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        async def rejected_elsewhere(db, leave_request, balance):
            await _set_status(db, leave_request.id, LeaveStatus.rejected)

        with _racing_balance_for(rejected_elsewhere):
            with pytest.raises(InvalidStateException):
                await LeaveService.cancel_leave_request(
                    db, req.id, test_employee["id"], False,
                )

        assert (await _request(db, req.id)).status == LeaveStatus.rejected

    async def test_cancel_racing_approval_revokes(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        async def approved_elsewhere(db, leave_request, balance):
            await LeaveBalanceLedger.commit(db, balance, leave_request.duration)
            await _set_status(db, leave_request.id, LeaveStatus.approved)
            await AttendanceProjector.apply_leave(
                db, leave_request.employee_id, leave_request.id, MON, FRI,
            )

        with _racing_balance_for(approved_elsewhere):
            resp = await LeaveService.cancel_leave_request(
                db, req.id, test_employee["id"], False,
            )

        assert resp.status == LeaveStatus.cancelled
        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.used_leaves == D("0")
        assert bal.pending_leaves == D("0")
        rows = await _attendance(db, test_employee["id"])
        assert len(rows) == 5
        assert all(r.status == AttendanceStatus.absent for r in rows)
        assert all(r.leave_request_id is None for r in rows)

    async def test_competing_reservation_wins_last_days(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        await _seed_balance(db, test_employee["id"], annual_leave["id"], used=D("12"))
        original = LeaveBalanceLedger._read_counters
        raced = {"done": False}

        async def racing_read(db, balance_id):
            counters = await original(db, balance_id)
            if not raced["done"]:
                raced["done"] = True
                await db.execute(
                    update(LeaveBalance)
                    .where(LeaveBalance.id == balance_id)
                    .values(
                        pending_leaves=LeaveBalance.pending_leaves + 6,
                        version=LeaveBalance.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
            return counters

        with patch.object(LeaveBalanceLedger, "_read_counters", staticmethod(racing_read)):
            with pytest.raises(InsufficientBalanceException):
                await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.pending_leaves == D("6")
        assert bal.used_leaves + bal.pending_leaves <= bal.allocated_leaves
        assert await _request_count(db) == 0

    async def test_failed_ledger_step_restores_status(
        self, db: AsyncSession, test_employee, test_manager, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)
        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        # HR shrank the allocation below what this request needs
        await db.execute(
            update(LeaveBalance)
            .where(LeaveBalance.id == bal.id)
            .values(allocated_leaves=D("2"), pending_leaves=D("0"))
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(InsufficientBalanceException):
            await LeaveService.decide_leave_request(
                db, req.id, LeaveStatus.approved, test_manager["id"],
            )

        stored = await _request(db, req.id)
        assert stored.status == LeaveStatus.pending
        assert stored.approved_by is None
        assert await _attendance(db, test_employee["id"]) == []

    async def test_insert_failure_releases_reservation(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        with patch.object(
            LeaveService, "_persist_request",
            new_callable=AsyncMock, side_effect=RuntimeError("insert failed"),
        ):
            with pytest.raises(RuntimeError):
                await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.pending_leaves == D("0")
        assert bal.version == 3  # reserve + release
        assert await _request_count(db) == 0

    async def test_update_write_failure_restores_reservation(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, date(2025, 1, 8))

        with patch.object(
            LeaveService, "_write_request_fields",
            new_callable=AsyncMock,
            side_effect=ConcurrencyConflictException("LeaveRequest", req.id),
        ):
            with pytest.raises(ConcurrencyConflictException):
                await LeaveService.update_leave_request(
                    db, req.id, test_employee["id"], False,
                    LeaveRequestUpdate(end_date=FRI),
                )

        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.pending_leaves == D("3")
        assert (await _request(db, req.id)).duration == D("3")

    async def test_update_type_change_write_failure_restores_both_balances(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        casual = await _seed_leave_type(db, code="CL", name="Casual Leave", default_annual_quota=D("7"))
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, date(2025, 1, 8))

        with patch.object(
            LeaveService, "_write_request_fields",
            new_callable=AsyncMock, side_effect=RuntimeError("write failed"),
        ):
            with pytest.raises(RuntimeError):
                await LeaveService.update_leave_request(
                    db, req.id, test_employee["id"], False,
                    LeaveRequestUpdate(leave_type_id=casual.id),
                )

        assert (await _balance(db, test_employee["id"], annual_leave["id"])).pending_leaves == D("3")
        assert (await _balance(db, test_employee["id"], casual.id)).pending_leaves == D("0")


# ═════════════════════════════════════════════════════════════════════
# Update
# ═════════════════════════════════════════════════════════════════════


class TestUpdate:

    async def test_extend_rebooks_delta(self, db: AsyncSession, test_employee, annual_leave):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, date(2025, 1, 8))

        out = await LeaveService.update_leave_request(
            db, req.id, test_employee["id"], False,
            LeaveRequestUpdate(end_date=FRI, reason="Longer trip"),
        )

        assert out.duration == D("5")
        assert out.reason == "Longer trip"
        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.pending_leaves == D("5")

    async def test_extend_beyond_balance_keeps_request(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        await _seed_balance(db, test_employee["id"], annual_leave["id"], allocated=D("4"))
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, date(2025, 1, 8))

        with pytest.raises(InsufficientBalanceException):
            await LeaveService.update_leave_request(
                db, req.id, test_employee["id"], False,
                LeaveRequestUpdate(end_date=FRI),
            )

        assert (await _request(db, req.id)).end_date == date(2025, 1, 8)
        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.pending_leaves == D("3")

    async def test_change_type_moves_reservation(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        casual = await _seed_leave_type(db, code="CL", name="Casual Leave", default_annual_quota=D("7"))
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, date(2025, 1, 8))

        out = await LeaveService.update_leave_request(
            db, req.id, test_employee["id"], False,
            LeaveRequestUpdate(leave_type_id=casual.id),
        )

        assert out.leave_type_id == casual.id
        assert (await _balance(db, test_employee["id"], annual_leave["id"])).pending_leaves == D("0")
        assert (await _balance(db, test_employee["id"], casual.id)).pending_leaves == D("3")

    async def test_change_type_without_balance_restores_old_reservation(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        short = await _seed_leave_type(db, code="BL", name="Bereavement", default_annual_quota=D("2"))
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, date(2025, 1, 8))

        with pytest.raises(InsufficientBalanceException):
            await LeaveService.update_leave_request(
                db, req.id, test_employee["id"], False,
                LeaveRequestUpdate(leave_type_id=short.id),
            )

        assert (await _balance(db, test_employee["id"], annual_leave["id"])).pending_leaves == D("3")
        assert (await _balance(db, test_employee["id"], short.id)).pending_leaves == D("0")
        assert (await _request(db, req.id)).leave_type_id == annual_leave["id"]

    async def test_update_approved_request_refused(
        self, db: AsyncSession, test_employee, test_manager, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)
        await LeaveService.decide_leave_request(
            db, req.id, LeaveStatus.approved, test_manager["id"],
        )

        with pytest.raises(AlreadyProcessedException):
            await LeaveService.update_leave_request(
                db, req.id, test_employee["id"], False,
                LeaveRequestUpdate(end_date=date(2025, 1, 7)),
            )

    async def test_update_others_request_forbidden(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)
        other = await _seed_employee(db)

        with pytest.raises(ForbiddenException):
            await LeaveService.update_leave_request(
                db, req.id, other.id, False, LeaveRequestUpdate(reason="mine now"),
            )

    async def test_update_ignores_its_own_dates_for_overlap(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        out = await LeaveService.update_leave_request(
            db, req.id, test_employee["id"], False,
            LeaveRequestUpdate(start_date=date(2025, 1, 8)),
        )

        assert out.duration == D("3")


# ═════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════


class TestReads:

    async def test_get_own_and_privileged(
        self, db: AsyncSession, test_employee, test_manager, annual_leave,
    ):
        req = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        own = await LeaveService.get_leave_request(db, req.id, test_employee["id"], False)
        assert own.id == req.id
        seen = await LeaveService.get_leave_request(db, req.id, test_manager["id"], True)
        assert seen.id == req.id

        other = await _seed_employee(db)
        with pytest.raises(ForbiddenException):
            await LeaveService.get_leave_request(db, req.id, other.id, False)

    async def test_list_scoped_to_self(self, db: AsyncSession, test_employee, annual_leave):
        other = await _seed_employee(db)
        await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)
        await _apply(db, other.id, annual_leave["id"], MON, FRI)

        page = await LeaveService.list_leave_requests(db, test_employee["id"], False, _page())

        assert page.meta.total == 1
        assert page.data[0].employee_id == test_employee["id"]

        with pytest.raises(ForbiddenException):
            await LeaveService.list_leave_requests(
                db, test_employee["id"], False, _page(), employee_id=other.id,
            )

    async def test_list_filters(self, db: AsyncSession, test_employee, test_manager, annual_leave):
        first = await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)
        await _apply(
            db, test_employee["id"], annual_leave["id"],
            date(2025, 3, 3), date(2025, 3, 4),
        )
        await LeaveService.decide_leave_request(
            db, first.id, LeaveStatus.approved, test_manager["id"],
        )

        approved = await LeaveService.list_leave_requests(
            db, test_manager["id"], True, _page(), status=LeaveStatus.approved,
        )
        assert [r.id for r in approved.data] == [first.id]

        in_january = await LeaveService.list_leave_requests(
            db, test_manager["id"], True, _page(),
            employee_id=test_employee["id"],
            from_date=date(2025, 1, 8), to_date=date(2025, 1, 31),
        )
        assert [r.id for r in in_january.data] == [first.id]


# ═════════════════════════════════════════════════════════════════════
# Leave types
# ═════════════════════════════════════════════════════════════════════


class TestLeaveTypes:

    async def test_create_and_duplicate_code(self, db: AsyncSession, test_manager):
        created = await LeaveService.create_leave_type(
            db,
            LeaveTypeCreate(code="ML", name="Maternity Leave", default_annual_quota=D("90")),
            test_manager["id"],
        )
        assert created.code == "ML"
        assert created.is_active

        with pytest.raises(ConflictError):
            await LeaveService.create_leave_type(
                db, LeaveTypeCreate(code="ML", name="Other"), test_manager["id"],
            )

    async def test_quota_change_does_not_touch_existing_balances(
        self, db: AsyncSession, test_employee, test_manager, annual_leave,
    ):
        await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        out = await LeaveService.update_leave_type(
            db, annual_leave["id"],
            LeaveTypeUpdate(default_annual_quota=D("25")),
            test_manager["id"],
        )

        assert out.default_annual_quota == D("25")
        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.allocated_leaves == D("20")

        # Balances created afterwards are seeded from the new quota
        await _apply(
            db, test_employee["id"], annual_leave["id"],
            date(2026, 1, 5), date(2026, 1, 5),
        )
        bal_2026 = await _balance(db, test_employee["id"], annual_leave["id"], 2026)
        assert bal_2026.allocated_leaves == D("25")

    async def test_deactivate_hides_from_active_list(
        self, db: AsyncSession, test_manager, annual_leave,
    ):
        await _seed_leave_type(db, code="SL", name="Sick Leave")

        await LeaveService.deactivate_leave_type(db, annual_leave["id"], test_manager["id"])

        active = await LeaveService.list_leave_types(db)
        assert [lt.code for lt in active] == ["SL"]
        everything = await LeaveService.list_leave_types(db, is_active=None)
        assert {lt.code for lt in everything} == {"AL", "SL"}


# ═════════════════════════════════════════════════════════════════════
# Balances
# ═════════════════════════════════════════════════════════════════════


class TestBalances:

    async def test_virtual_balance_for_untouched_type(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        balances = await LeaveService.get_balances(db, test_employee["id"], 2025)

        assert len(balances) == 1
        assert balances[0].is_virtual
        assert balances[0].id is None
        assert balances[0].available == D("20")
        # Reading never creates rows
        assert await _balance(db, test_employee["id"], annual_leave["id"]) is None

    async def test_stored_and_inactive_type_balances(
        self, db: AsyncSession, test_employee, annual_leave,
    ):
        retired = await _seed_leave_type(db, code="OL", name="Old Leave", is_active=False)
        await _seed_leave_type(db, code="XL", name="Unused Retired", is_active=False)
        await _seed_balance(db, test_employee["id"], retired.id, allocated=D("4"))
        await _apply(db, test_employee["id"], annual_leave["id"], MON, FRI)

        balances = await LeaveService.get_balances(db, test_employee["id"], 2025)

        by_code = {b.leave_type.code: b for b in balances}
        assert set(by_code) == {"AL", "OL"}
        assert not by_code["AL"].is_virtual
        assert by_code["AL"].pending_leaves == D("5")
        assert by_code["AL"].available == D("15")
        assert by_code["OL"].allocated_leaves == D("4")

    async def test_unknown_employee(self, db: AsyncSession):
        with pytest.raises(NotFoundException):
            await LeaveService.get_balances(db, uuid.uuid4(), 2025)

    async def test_adjust_balance(
        self, db: AsyncSession, test_employee, test_manager, annual_leave,
    ):
        out = await LeaveService.adjust_balance(
            db,
            test_employee["id"],
            BalanceAdjustRequest(
                leave_type_id=annual_leave["id"], year=2025,
                allocated_leaves=D("22"), carried_forward=D("1.5"),
            ),
            test_manager["id"],
        )

        assert out.allocated_leaves == D("22")
        assert out.carried_forward == D("1.5")
        assert out.available == D("23.5")

        entry = (
            await db.execute(select(AuditTrail).where(AuditTrail.action == "adjust"))
        ).scalars().one()
        assert entry.entity_id == out.id
        assert entry.actor_id == test_manager["id"]

    async def test_adjust_below_consumption_rejected(
        self, db: AsyncSession, test_employee, test_manager, annual_leave,
    ):
        await _seed_balance(db, test_employee["id"], annual_leave["id"], used=D("8"))

        with pytest.raises(ValidationException):
            await LeaveService.adjust_balance(
                db,
                test_employee["id"],
                BalanceAdjustRequest(
                    leave_type_id=annual_leave["id"], year=2025, allocated_leaves=D("5"),
                ),
                test_manager["id"],
            )

        bal = await _balance(db, test_employee["id"], annual_leave["id"])
        assert bal.allocated_leaves == D("20")
