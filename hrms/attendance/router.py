"""Attendance router — check in/out and daily records.

All endpoints require authentication. Viewing another employee's records
and today's board requires manager or above.
"""


import uuid
from datetime import date, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from hrms.attendance.schemas import (
    AttendanceRecordOut,
    AttendanceSummaryOut,
    CheckInRequest,
    CheckOutRequest,
    TodayAttendanceResponse,
)
from hrms.attendance.service import AttendanceService
from hrms.auth.dependencies import get_current_user, is_privileged, require_role
from hrms.common.constants import AttendanceStatus, UserRole
from hrms.common.exceptions import ForbiddenException
from hrms.common.pagination import PaginationParams
from hrms.common.rate_limit import limiter
from hrms.core_hr.models import Employee
from hrms.database import get_db
from hrms.leave.service import LeaveService

router = APIRouter(prefix="", tags=["attendance"])


def _default_range(
    from_date: Optional[date],
    to_date: Optional[date],
) -> tuple[date, date]:
    to_date = to_date or date.today()
    return from_date or to_date - timedelta(days=30), to_date


# ── POST /check-in ──────────────────────────────────────────────────

@router.post("/check-in", response_model=AttendanceRecordOut)
@limiter.limit("10/minute")
async def check_in(
    request: Request,
    body: CheckInRequest,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Record a check-in for the current user."""
    return await AttendanceService.check_in(db, employee.id, remarks=body.remarks)


# ── POST /check-out ─────────────────────────────────────────────────

@router.post("/check-out", response_model=AttendanceRecordOut)
@limiter.limit("10/minute")
async def check_out(
    request: Request,
    body: CheckOutRequest,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Record a check-out for the current user."""
    return await AttendanceService.check_out(db, employee.id, remarks=body.remarks)


# ── GET /me ─────────────────────────────────────────────────────────

@router.get("/me")
async def my_attendance(
    from_date: Optional[date] = Query(None, description="Start date (inclusive), default 30 days ago"),
    to_date: Optional[date] = Query(None, description="End date (inclusive), default today"),
    pagination: PaginationParams = Depends(),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """The authenticated user's attendance records."""
    start, end = _default_range(from_date, to_date)
    return await AttendanceService.list_attendance(db, employee.id, start, end, pagination)


# ── GET /employees/{employee_id} ────────────────────────────────────

@router.get("/employees/{employee_id}")
async def employee_attendance(
    employee_id: uuid.UUID,
    from_date: Optional[date] = Query(None, description="Start date (inclusive), default 30 days ago"),
    to_date: Optional[date] = Query(None, description="End date (inclusive), default today"),
    pagination: PaginationParams = Depends(),
    employee: Employee = Depends(
        require_role(UserRole.manager, UserRole.hr_admin, UserRole.system_admin)
    ),
    db: AsyncSession = Depends(get_db),
):
    """Another employee's attendance records (manager / HR view)."""
    start, end = _default_range(from_date, to_date)
    return await AttendanceService.list_attendance(db, employee_id, start, end, pagination)


# ── GET /summary ────────────────────────────────────────────────────

@router.get("/summary", response_model=AttendanceSummaryOut)
async def attendance_summary(
    request: Request,
    year: Optional[int] = Query(None, ge=2000, le=2100),
    employee_id: Optional[uuid.UUID] = Query(None),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Yearly day counts per status plus leave balances; own unless privileged."""
    target_id = employee_id or employee.id
    if target_id != employee.id and not is_privileged(request.state.user_role):
        raise ForbiddenException("You can only view your own attendance summary.")

    year = year or date.today().year
    summary = await AttendanceService.get_summary(db, target_id, year)
    summary.leave_balances = await LeaveService.get_balances(db, target_id, year)
    return summary


# ── GET /today ──────────────────────────────────────────────────────

@router.get("/today", response_model=TodayAttendanceResponse)
async def today_attendance(
    status: Optional[AttendanceStatus] = Query(None),
    employee: Employee = Depends(
        require_role(UserRole.manager, UserRole.hr_admin, UserRole.system_admin)
    ),
    db: AsyncSession = Depends(get_db),
):
    """Today's attendance for all active employees (manager / HR view)."""
    return await AttendanceService.get_today_attendance(db, status_filter=status)
