"""Leave Pydantic v2 schemas — request / response validation.

Naming conventions:
  - *Create / *Update / *Request → request bodies (write)
  - *Out                         → response bodies (read)
  - *Brief                       → compact embedded representations
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hrms.common.constants import LeaveStatus


# ═════════════════════════════════════════════════════════════════════
# Embedded / shared
# ═════════════════════════════════════════════════════════════════════


class LeaveTypeBrief(BaseModel):
    """Minimal leave type info embedded in leave responses."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    code: str
    name: str


# ═════════════════════════════════════════════════════════════════════
# Leave Type
# ═════════════════════════════════════════════════════════════════════


class LeaveTypeCreate(BaseModel):
    """Payload for creating a leave type."""

    code: str = Field(..., min_length=1, max_length=10)
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    default_annual_quota: Decimal = Field(Decimal("0"), ge=0, max_digits=5, decimal_places=1)
    max_consecutive_days: int = Field(0, ge=0, description="0 = unlimited")
    is_carry_forward: bool = False
    requires_approval: bool = True


class LeaveTypeUpdate(BaseModel):
    """Partial update of a leave type. Existing balances are never touched."""

    code: Optional[str] = Field(None, min_length=1, max_length=10)
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    default_annual_quota: Optional[Decimal] = Field(
        None, ge=0, max_digits=5, decimal_places=1
    )
    max_consecutive_days: Optional[int] = Field(None, ge=0)
    is_carry_forward: Optional[bool] = None
    requires_approval: Optional[bool] = None
    is_active: Optional[bool] = None


class LeaveTypeOut(BaseModel):
    """Full leave type representation."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    code: str
    name: str
    description: Optional[str] = None
    default_annual_quota: Decimal
    max_consecutive_days: int = 0
    is_carry_forward: bool = False
    requires_approval: bool = True
    is_active: bool = True
    created_at: datetime
    updated_at: datetime


# ═════════════════════════════════════════════════════════════════════
# Leave Balance
# ═════════════════════════════════════════════════════════════════════


class LeaveBalanceOut(BaseModel):
    """Balance for a single leave type with computed available field.

    Virtual balances (no row stored yet) have ``id = None`` and
    ``is_virtual = True``.
    """

    model_config = ConfigDict(from_attributes=True)

    id: Optional[uuid.UUID] = None
    employee_id: uuid.UUID
    leave_type_id: uuid.UUID
    year: int
    allocated_leaves: Decimal
    carried_forward: Decimal
    used_leaves: Decimal
    pending_leaves: Decimal
    available: Decimal
    is_virtual: bool = False

    leave_type: Optional[LeaveTypeBrief] = None


class BalanceAdjustRequest(BaseModel):
    """Admin override of a balance's allocation."""

    leave_type_id: uuid.UUID
    year: int = Field(..., ge=2000, le=2100)
    allocated_leaves: Optional[Decimal] = Field(
        None, ge=0, max_digits=5, decimal_places=1
    )
    carried_forward: Optional[Decimal] = Field(
        None, ge=0, max_digits=5, decimal_places=1
    )

    @model_validator(mode="after")
    def require_a_change(self) -> BalanceAdjustRequest:
        if self.allocated_leaves is None and self.carried_forward is None:
            raise ValueError("Provide allocated_leaves and/or carried_forward.")
        return self


# ═════════════════════════════════════════════════════════════════════
# Leave Request: Create / Update
# ═════════════════════════════════════════════════════════════════════


class LeaveRequestCreate(BaseModel):
    """Payload for applying a leave request."""

    leave_type_id: uuid.UUID
    start_date: date = Field(..., description="Leave start date (inclusive)")
    end_date: date = Field(..., description="Leave end date (inclusive)")
    is_half_day: bool = False
    reason: Optional[str] = Field(None, max_length=1000)
    contact_during_leave: Optional[str] = Field(None, max_length=100)


class LeaveRequestUpdate(BaseModel):
    """Partial update of a PENDING leave request."""

    leave_type_id: Optional[uuid.UUID] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_half_day: Optional[bool] = None
    reason: Optional[str] = Field(None, max_length=1000)
    contact_during_leave: Optional[str] = Field(None, max_length=100)


# ═════════════════════════════════════════════════════════════════════
# Leave Request: Response
# ═════════════════════════════════════════════════════════════════════


class LeaveRequestOut(BaseModel):
    """Full leave request response."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    employee_id: uuid.UUID
    leave_type_id: uuid.UUID
    start_date: date
    end_date: date
    duration: Decimal
    is_half_day: bool = False
    reason: Optional[str] = None
    contact_during_leave: Optional[str] = None
    status: LeaveStatus
    approved_by: Optional[uuid.UUID] = None
    rejection_reason: Optional[str] = None
    cancelled_by: Optional[uuid.UUID] = None
    cancelled_at: Optional[datetime] = None
    applied_date: datetime
    last_modified: datetime


# ═════════════════════════════════════════════════════════════════════
# Decision
# ═════════════════════════════════════════════════════════════════════


class LeaveDecisionRequest(BaseModel):
    """Approve or reject a pending leave request."""

    status: LeaveStatus = Field(..., description="approved | rejected")
    rejection_reason: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def check_outcome(self) -> LeaveDecisionRequest:
        if self.status not in (LeaveStatus.approved, LeaveStatus.rejected):
            raise ValueError("status must be approved or rejected.")
        if self.status == LeaveStatus.rejected and not self.rejection_reason:
            raise ValueError("rejection_reason is required when rejecting.")
        return self
