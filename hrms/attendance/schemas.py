"""Attendance Pydantic v2 schemas — request / response validation.

Naming conventions:
  - *Request → request bodies (write)
  - *Out     → response bodies (read)
"""


import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from hrms.common.constants import AttendanceStatus
from hrms.leave.schemas import LeaveBalanceOut


# ═════════════════════════════════════════════════════════════════════
# Check in / out
# ═════════════════════════════════════════════════════════════════════


class CheckInRequest(BaseModel):
    """Payload for checking in."""

    remarks: Optional[str] = Field(None, max_length=500)


class CheckOutRequest(BaseModel):
    """Payload for checking out."""

    remarks: Optional[str] = Field(None, max_length=500)


# ═════════════════════════════════════════════════════════════════════
# Attendance record
# ═════════════════════════════════════════════════════════════════════


class AttendanceRecordOut(BaseModel):
    """Single day of attendance, including leave projection tags."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    employee_id: uuid.UUID
    date: date
    status: AttendanceStatus
    check_in: Optional[datetime] = None
    check_out: Optional[datetime] = None
    work_hours: Optional[Decimal] = None
    is_leave: bool = False
    leave_request_id: Optional[uuid.UUID] = None
    remarks: Optional[str] = None


# ═════════════════════════════════════════════════════════════════════
# Yearly summary
# ═════════════════════════════════════════════════════════════════════


class AttendanceSummaryOut(BaseModel):
    """Day counts per status for one employee and calendar year."""

    employee_id: uuid.UUID
    year: int
    present: int = 0
    absent: int = 0
    half_day: int = 0
    leave: int = 0
    holiday: int = 0
    weekend: int = 0
    total_work_hours: Decimal = Decimal("0")
    leave_balances: list[LeaveBalanceOut] = []


# ═════════════════════════════════════════════════════════════════════
# Today's attendance (manager / HR view)
# ═════════════════════════════════════════════════════════════════════


class EmployeeBrief(BaseModel):
    """Minimal employee info for attendance listings."""

    id: uuid.UUID
    employee_code: str
    display_name: str


class TodayAttendanceItem(BaseModel):
    """Single employee's attendance for today."""

    employee: EmployeeBrief
    status: AttendanceStatus
    check_in: Optional[datetime] = None
    check_out: Optional[datetime] = None
    work_hours: Optional[Decimal] = None
    leave_request_id: Optional[uuid.UUID] = None


class TodaySummary(BaseModel):
    """Counts for today's attendance board."""

    total_employees: int = 0
    present: int = 0
    absent: int = 0
    half_day: int = 0
    on_leave: int = 0
    holiday: int = 0
    weekend: int = 0
    not_checked_in: int = 0


class TodayAttendanceResponse(BaseModel):
    """Today's attendance with items and summary."""

    date: date
    data: list[TodayAttendanceItem]
    summary: TodaySummary
