"""Attendance service layer — check in/out and attendance reads.

Business logic:
  - One AttendanceRecord per employee per calendar day
  - Check-in marks the day PRESENT (WEEKEND on Saturday/Sunday); days
    already projected from an approved leave keep their LEAVE status
  - Check-out computes work hours and derives PRESENT / HALF_DAY
  - Read operations for self and manager views, a yearly per-status
    summary and a today board across all active employees
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hrms.attendance.models import AttendanceRecord
from hrms.attendance.schemas import (
    AttendanceRecordOut,
    AttendanceSummaryOut,
    EmployeeBrief,
    TodayAttendanceItem,
    TodayAttendanceResponse,
    TodaySummary,
)
from hrms.common.audit import create_audit_entry
from hrms.common.constants import WEEKEND_DAYS, AttendanceStatus
from hrms.common.exceptions import NotFoundException, ValidationException
from hrms.common.pagination import PaginatedResponse, PaginationParams, paginate
from hrms.config import settings
from hrms.core_hr.models import Employee

logger = logging.getLogger(__name__)

# ── Constants ───────────────────────────────────────────────────────

MAX_DATE_RANGE_DAYS = 90

# TodaySummary field each status is counted under
_TODAY_COUNTERS = {
    AttendanceStatus.present: "present",
    AttendanceStatus.absent: "absent",
    AttendanceStatus.half_day: "half_day",
    AttendanceStatus.leave: "on_leave",
    AttendanceStatus.holiday: "holiday",
    AttendanceStatus.weekend: "weekend",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back naive; PostgreSQL keeps the offset.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ═════════════════════════════════════════════════════════════════════
# AttendanceService
# ═════════════════════════════════════════════════════════════════════


class AttendanceService:
    """Async attendance operations: check in, check out, read."""

    # ── Helpers ─────────────────────────────────────────────────────

    @staticmethod
    def status_for_hours(work_hours: Decimal) -> Optional[AttendanceStatus]:
        """PRESENT at or above a full day, HALF_DAY at or above half a day, else None."""

        hours = float(work_hours)
        if hours >= settings.FULL_DAY_HOURS:
            return AttendanceStatus.present
        if hours >= settings.HALF_DAY_HOURS:
            return AttendanceStatus.half_day
        return None

    @staticmethod
    def neutral_status(record: AttendanceRecord) -> AttendanceStatus:
        """Status a day falls back to once a leave tag is removed."""

        if record.check_in and record.check_out and record.work_hours is not None:
            status = AttendanceService.status_for_hours(record.work_hours)
            if status is not None:
                return status
        return AttendanceStatus.absent

    @staticmethod
    def _validate_date_range(from_date: date, to_date: date) -> None:
        """Ensure date range is valid and within MAX_DATE_RANGE_DAYS."""

        if from_date > to_date:
            raise ValidationException(
                {"date_range": ["from_date must be before or equal to to_date."]}
            )
        if (to_date - from_date).days > MAX_DATE_RANGE_DAYS:
            raise ValidationException(
                {"date_range": [f"Date range cannot exceed {MAX_DATE_RANGE_DAYS} days."]}
            )

    @staticmethod
    async def _require_employee(db: AsyncSession, employee_id: uuid.UUID) -> None:
        emp_check = await db.execute(
            select(Employee.id).where(Employee.id == employee_id)
        )
        if emp_check.scalar() is None:
            raise NotFoundException("Employee", str(employee_id))

    @staticmethod
    async def _get_day(
        db: AsyncSession,
        employee_id: uuid.UUID,
        day: date,
    ) -> Optional[AttendanceRecord]:
        result = await db.execute(
            select(AttendanceRecord).where(
                AttendanceRecord.employee_id == employee_id,
                AttendanceRecord.date == day,
            )
        )
        return result.scalars().first()

    # ── Check in ────────────────────────────────────────────────────

    @staticmethod
    async def check_in(
        db: AsyncSession,
        employee_id: uuid.UUID,
        *,
        remarks: Optional[str] = None,
    ) -> AttendanceRecordOut:
        """Record today's check-in. Creates the day's AttendanceRecord if needed."""

        now = _utcnow()
        today = now.date()
        default_status = (
            AttendanceStatus.weekend
            if today.weekday() in WEEKEND_DAYS
            else AttendanceStatus.present
        )

        attendance = await AttendanceService._get_day(db, employee_id, today)
        if attendance is not None and attendance.check_in is not None:
            raise ValidationException(
                {"check_in": ["Already checked in today."]}
            )

        if attendance is None:
            attendance = AttendanceRecord(
                employee_id=employee_id,
                date=today,
                status=default_status,
                check_in=now,
                is_leave=False,
                remarks=remarks,
            )
            db.add(attendance)
        else:
            attendance.check_in = now
            if attendance.leave_request_id is None:
                attendance.status = default_status
            if remarks:
                attendance.remarks = remarks
            attendance.updated_at = now
        await db.flush()

        await create_audit_entry(
            db,
            action="check_in",
            entity_type="attendance_record",
            entity_id=attendance.id,
            actor_id=employee_id,
            new_values={
                "timestamp": now.isoformat(),
                "status": attendance.status.value,
            },
        )

        return AttendanceRecordOut.model_validate(attendance)

    # ── Check out ───────────────────────────────────────────────────

    @staticmethod
    async def check_out(
        db: AsyncSession,
        employee_id: uuid.UUID,
        *,
        remarks: Optional[str] = None,
    ) -> AttendanceRecordOut:
        """Record today's check-out and derive the day's status from work hours."""

        now = _utcnow()
        today = now.date()

        attendance = await AttendanceService._get_day(db, employee_id, today)
        if attendance is None:
            raise NotFoundException("AttendanceRecord", f"{employee_id}/{today}")
        if attendance.check_in is None:
            raise ValidationException(
                {"check_out": ["No check-in found for today. Please check in first."]}
            )
        if attendance.check_out is not None:
            raise ValidationException(
                {"check_out": ["Already checked out today."]}
            )

        seconds = (now - _as_utc(attendance.check_in)).total_seconds()
        work_hours = Decimal(str(round(max(0.0, seconds) / 3600, 2)))

        old_status = attendance.status
        attendance.check_out = now
        attendance.work_hours = work_hours
        if attendance.leave_request_id is None:
            derived = AttendanceService.status_for_hours(work_hours)
            if derived is not None:
                attendance.status = derived
        if remarks:
            attendance.remarks = remarks
        attendance.updated_at = now
        await db.flush()

        await create_audit_entry(
            db,
            action="check_out",
            entity_type="attendance_record",
            entity_id=attendance.id,
            actor_id=employee_id,
            old_values={"status": old_status.value},
            new_values={
                "timestamp": now.isoformat(),
                "work_hours": str(work_hours),
                "status": attendance.status.value,
            },
        )

        return AttendanceRecordOut.model_validate(attendance)

    # ── Reads ───────────────────────────────────────────────────────

    @staticmethod
    async def list_attendance(
        db: AsyncSession,
        employee_id: uuid.UUID,
        from_date: date,
        to_date: date,
        params: PaginationParams,
    ) -> PaginatedResponse:
        """Attendance records for one employee, newest first. Max 90-day range."""

        AttendanceService._validate_date_range(from_date, to_date)
        await AttendanceService._require_employee(db, employee_id)

        query = (
            select(AttendanceRecord)
            .where(
                AttendanceRecord.employee_id == employee_id,
                AttendanceRecord.date >= from_date,
                AttendanceRecord.date <= to_date,
            )
            .order_by(AttendanceRecord.date.desc())
        )
        return await paginate(
            db, query, params, serializer=AttendanceRecordOut.model_validate,
        )

    # ── Yearly summary ──────────────────────────────────────────────

    @staticmethod
    async def get_summary(
        db: AsyncSession,
        employee_id: uuid.UUID,
        year: int,
    ) -> AttendanceSummaryOut:
        """Day counts per status and total work hours for one calendar year.

        Counts follow the stored status, so days reverted from a cancelled
        leave are counted under the status they fell back to.
        """

        await AttendanceService._require_employee(db, employee_id)

        result = await db.execute(
            select(
                AttendanceRecord.status,
                func.count(AttendanceRecord.id),
                func.coalesce(func.sum(AttendanceRecord.work_hours), 0),
            )
            .where(
                AttendanceRecord.employee_id == employee_id,
                AttendanceRecord.date >= date(year, 1, 1),
                AttendanceRecord.date <= date(year, 12, 31),
            )
            .group_by(AttendanceRecord.status)
        )

        counts: dict[str, int] = {}
        total_hours = Decimal("0")
        for status, days, hours in result.all():
            counts[AttendanceStatus(status).value] = days
            total_hours += Decimal(str(hours))

        return AttendanceSummaryOut(
            employee_id=employee_id,
            year=year,
            total_work_hours=total_hours,
            **counts,
        )

    # ── Today's attendance (manager view) ───────────────────────────

    @staticmethod
    async def get_today_attendance(
        db: AsyncSession,
        *,
        status_filter: Optional[AttendanceStatus] = None,
    ) -> TodayAttendanceResponse:
        """Today's attendance for all active employees with summary counts.

        Employees without a record for today count as absent and as not
        checked in.
        """

        today = _utcnow().date()

        emp_result = await db.execute(
            select(Employee)
            .where(Employee.is_active.is_(True))
            .order_by(Employee.first_name, Employee.last_name)
        )
        employees = emp_result.scalars().all()

        att_result = await db.execute(
            select(AttendanceRecord).where(
                AttendanceRecord.date == today,
                AttendanceRecord.employee_id.in_([e.id for e in employees]),
            )
        )
        att_map = {r.employee_id: r for r in att_result.scalars().all()}

        items: list[TodayAttendanceItem] = []
        summary = TodaySummary(total_employees=len(employees))

        for emp in employees:
            record = att_map.get(emp.id)
            if record is None:
                att_status = AttendanceStatus.absent
                summary.not_checked_in += 1
            else:
                att_status = record.status

            counter = _TODAY_COUNTERS[att_status]
            setattr(summary, counter, getattr(summary, counter) + 1)

            if status_filter and att_status != status_filter:
                continue

            items.append(
                TodayAttendanceItem(
                    employee=EmployeeBrief(
                        id=emp.id,
                        employee_code=emp.employee_code,
                        display_name=f"{emp.first_name} {emp.last_name}".strip(),
                    ),
                    status=att_status,
                    check_in=record.check_in if record else None,
                    check_out=record.check_out if record else None,
                    work_hours=record.work_hours if record else None,
                    leave_request_id=record.leave_request_id if record else None,
                )
            )

        return TodayAttendanceResponse(date=today, data=items, summary=summary)
