"""Leave ORM models: LeaveType, LeaveBalance, LeaveRequest."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hrms.common.constants import LeaveStatus
from hrms.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LeaveType(Base):
    __tablename__ = "leave_types"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    code: Mapped[str] = mapped_column(sa.String(10), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(sa.Text)
    default_annual_quota: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), default=Decimal("0"), server_default=sa.text("0")
    )
    # 0 = unlimited
    max_consecutive_days: Mapped[int] = mapped_column(
        sa.Integer, default=0, server_default=sa.text("0")
    )
    is_carry_forward: Mapped[bool] = mapped_column(
        sa.Boolean, default=False, server_default=sa.text("FALSE")
    )
    requires_approval: Mapped[bool] = mapped_column(
        sa.Boolean, default=True, server_default=sa.text("TRUE")
    )
    is_active: Mapped[bool] = mapped_column(
        sa.Boolean, default=True, server_default=sa.text("TRUE")
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, server_default=sa.func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        default=_utcnow,
        server_default=sa.func.now(),
        onupdate=_utcnow,
    )

    __table_args__ = (
        sa.CheckConstraint("default_annual_quota >= 0", name="ck_leave_type_quota"),
        sa.CheckConstraint("max_consecutive_days >= 0", name="ck_leave_type_max_days"),
    )

    # Relationships
    balances: Mapped[list[LeaveBalance]] = relationship(back_populates="leave_type")
    requests: Mapped[list[LeaveRequest]] = relationship(back_populates="leave_type")


class LeaveBalance(Base):
    """Per (employee, leave type, year) counters.

    Only ``hrms.leave.ledger.LeaveBalanceLedger`` writes the counter columns,
    always through a conditional update on ``version``.
    """

    __tablename__ = "leave_balances"
    __table_args__ = (
        sa.UniqueConstraint(
            "employee_id", "leave_type_id", "year", name="uq_leave_balance"
        ),
        sa.CheckConstraint("used_leaves >= 0", name="ck_balance_used_non_negative"),
        sa.CheckConstraint("pending_leaves >= 0", name="ck_balance_pending_non_negative"),
        sa.CheckConstraint(
            "used_leaves + pending_leaves <= allocated_leaves + carried_forward",
            name="ck_balance_within_entitlement",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False
    )
    leave_type_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_types.id"), nullable=False
    )
    year: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    allocated_leaves: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), default=Decimal("0"), server_default=sa.text("0")
    )
    carried_forward: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), default=Decimal("0"), server_default=sa.text("0")
    )
    used_leaves: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), default=Decimal("0"), server_default=sa.text("0")
    )
    pending_leaves: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), default=Decimal("0"), server_default=sa.text("0")
    )
    version: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, default=1, server_default=sa.text("1")
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, server_default=sa.func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, server_default=sa.func.now()
    )

    # Relationships
    employee: Mapped["hrms.core_hr.models.Employee"] = relationship(
        back_populates="leave_balances"
    )
    leave_type: Mapped[LeaveType] = relationship(back_populates="balances")

    @property
    def available(self) -> Decimal:
        return (
            self.allocated_leaves
            + self.carried_forward
            - self.used_leaves
            - self.pending_leaves
        )

    def __repr__(self) -> str:
        return (
            f"<LeaveBalance {self.employee_id}/{self.leave_type_id}/{self.year} "
            f"alloc={self.allocated_leaves} cf={self.carried_forward} "
            f"used={self.used_leaves} pending={self.pending_leaves} v{self.version}>"
        )


class LeaveRequest(Base):
    __tablename__ = "leave_requests"
    __table_args__ = (
        sa.CheckConstraint("start_date <= end_date", name="ck_leave_request_dates"),
        sa.CheckConstraint("duration > 0", name="ck_leave_request_duration"),
        sa.Index("ix_leave_requests_employee_dates", "employee_id", "start_date", "end_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False
    )
    leave_type_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_types.id"), nullable=False
    )
    start_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    end_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    duration: Mapped[Decimal] = mapped_column(sa.Numeric(5, 1), nullable=False)
    is_half_day: Mapped[bool] = mapped_column(
        sa.Boolean, default=False, server_default=sa.text("FALSE")
    )
    reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    contact_during_leave: Mapped[Optional[str]] = mapped_column(sa.String(100))
    status: Mapped[LeaveStatus] = mapped_column(
        sa.Enum(LeaveStatus, name="leave_status"),
        nullable=False,
        default=LeaveStatus.pending,
        server_default="pending",
    )
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id")
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id")
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True)
    )
    applied_date: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, server_default=sa.func.now()
    )
    last_modified: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, server_default=sa.func.now()
    )

    # Relationships
    employee: Mapped["hrms.core_hr.models.Employee"] = relationship(
        back_populates="leave_requests", foreign_keys=[employee_id]
    )
    approver: Mapped[Optional["hrms.core_hr.models.Employee"]] = relationship(
        foreign_keys=[approved_by]
    )
    leave_type: Mapped[LeaveType] = relationship(back_populates="requests")

    @property
    def balance_year(self) -> int:
        return self.start_date.year

    def __repr__(self) -> str:
        return (
            f"<LeaveRequest {self.id} {self.start_date}..{self.end_date} "
            f"{self.duration}d {self.status.value}>"
        )
