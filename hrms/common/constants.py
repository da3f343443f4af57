"""Enums and constants for the HRMS leave and attendance core."""

from __future__ import annotations

import enum
from decimal import Decimal


# ── Auth / Roles ────────────────────────────────────────────────────

class UserRole(str, enum.Enum):
    employee = "employee"
    manager = "manager"
    hr_admin = "hr_admin"
    system_admin = "system_admin"


# ── Leave ───────────────────────────────────────────────────────────

class LeaveStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    cancelled = "cancelled"


# PENDING → {APPROVED, REJECTED, CANCELLED}; APPROVED → {CANCELLED}
LEAVE_TRANSITIONS: dict[LeaveStatus, frozenset[LeaveStatus]] = {
    LeaveStatus.pending: frozenset(
        {LeaveStatus.approved, LeaveStatus.rejected, LeaveStatus.cancelled}
    ),
    LeaveStatus.approved: frozenset({LeaveStatus.cancelled}),
    LeaveStatus.rejected: frozenset(),
    LeaveStatus.cancelled: frozenset(),
}

HALF_DAY_DURATION = Decimal("0.5")


# ── Attendance ──────────────────────────────────────────────────────

class AttendanceStatus(str, enum.Enum):
    present = "present"
    absent = "absent"
    leave = "leave"
    holiday = "holiday"
    half_day = "half_day"
    weekend = "weekend"


# ── Misc constants ──────────────────────────────────────────────────

WEEKEND_DAYS = frozenset({5, 6})   # Saturday, Sunday
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50
