"""Attendance ORM model: one AttendanceRecord per employee per calendar day."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hrms.common.constants import AttendanceStatus
from hrms.database import Base


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (
        sa.UniqueConstraint("employee_id", "date", name="uq_attendance_emp_date"),
        sa.Index("ix_attendance_leave_request_id", "leave_request_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False
    )
    date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    status: Mapped[AttendanceStatus] = mapped_column(
        sa.Enum(AttendanceStatus, name="attendance_status"),
        nullable=False,
        default=AttendanceStatus.absent,
    )
    check_in: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True)
    )
    check_out: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True)
    )
    work_hours: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(5, 2))
    is_leave: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    # Set only by AttendanceProjector for days produced by an approved leave
    leave_request_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_requests.id")
    )
    # Status the day had before a leave took it over; restored on revert
    status_before_leave: Mapped[Optional[AttendanceStatus]] = mapped_column(
        sa.Enum(AttendanceStatus, name="attendance_status")
    )
    remarks: Mapped[Optional[str]] = mapped_column(sa.Text)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    # Relationships
    employee: Mapped["hrms.core_hr.models.Employee"] = relationship()
    leave_request: Mapped[Optional["hrms.leave.models.LeaveRequest"]] = relationship()

    def __repr__(self) -> str:
        return (
            f"<AttendanceRecord {self.employee_id} {self.date} "
            f"{self.status.value} leave={self.leave_request_id}>"
        )
