"""Leave router — leave types, requests, decisions, balances.

All endpoints require authentication. Manager/HR-specific endpoints enforce role checks.
"""


import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from hrms.auth.dependencies import get_current_user, is_privileged, require_role
from hrms.common.constants import LeaveStatus, UserRole
from hrms.common.exceptions import ForbiddenException
from hrms.common.pagination import PaginationParams
from hrms.common.rate_limit import limiter
from hrms.core_hr.models import Employee
from hrms.database import get_db
from hrms.leave.schemas import (
    BalanceAdjustRequest,
    LeaveBalanceOut,
    LeaveDecisionRequest,
    LeaveRequestCreate,
    LeaveRequestOut,
    LeaveRequestUpdate,
    LeaveTypeCreate,
    LeaveTypeOut,
    LeaveTypeUpdate,
)
from hrms.leave.service import LeaveService

router = APIRouter(prefix="", tags=["leave"])

_manager_up = require_role(UserRole.manager, UserRole.hr_admin, UserRole.system_admin)
_hr_admin = require_role(UserRole.hr_admin, UserRole.system_admin)


# ═════════════════════════════════════════════════════════════════════
# Leave types
# ═════════════════════════════════════════════════════════════════════


# ── GET /types ──────────────────────────────────────────────────────

@router.get("/types", response_model=list[LeaveTypeOut])
async def list_leave_types(
    is_active: Optional[bool] = Query(True),
    include_inactive: bool = Query(False),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List leave types; active only by default, all with ``include_inactive``."""
    return await LeaveService.list_leave_types(
        db, is_active=None if include_inactive else is_active,
    )


# ── GET /types/{id} ─────────────────────────────────────────────────

@router.get("/types/{leave_type_id}", response_model=LeaveTypeOut)
async def get_leave_type(
    leave_type_id: uuid.UUID,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_leave_type(db, leave_type_id)


# ── POST /types ─────────────────────────────────────────────────────

@router.post("/types", response_model=LeaveTypeOut, status_code=201)
async def create_leave_type(
    body: LeaveTypeCreate,
    employee: Employee = Depends(_hr_admin),
    db: AsyncSession = Depends(get_db),
):
    """Create a leave type. Duplicate codes return 409."""
    return await LeaveService.create_leave_type(db, body, employee.id)


# ── PUT /types/{id} ─────────────────────────────────────────────────

@router.put("/types/{leave_type_id}", response_model=LeaveTypeOut)
async def update_leave_type(
    leave_type_id: uuid.UUID,
    body: LeaveTypeUpdate,
    employee: Employee = Depends(_hr_admin),
    db: AsyncSession = Depends(get_db),
):
    """Edit a leave type. Existing balances keep their allocation."""
    return await LeaveService.update_leave_type(db, leave_type_id, body, employee.id)


# ── DELETE /types/{id} ──────────────────────────────────────────────

@router.delete("/types/{leave_type_id}", response_model=LeaveTypeOut)
async def deactivate_leave_type(
    leave_type_id: uuid.UUID,
    employee: Employee = Depends(_hr_admin),
    db: AsyncSession = Depends(get_db),
):
    """Soft-delete a leave type."""
    return await LeaveService.deactivate_leave_type(db, leave_type_id, employee.id)


# ═════════════════════════════════════════════════════════════════════
# Leave requests
# ═════════════════════════════════════════════════════════════════════


# ── POST /requests ──────────────────────────────────────────────────

@router.post("/requests", response_model=LeaveRequestOut, status_code=201)
@limiter.limit("20/minute")
async def create_leave_request(
    request: Request,
    body: LeaveRequestCreate,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Apply for leave. Reserves the days on the balance before the request exists."""
    return await LeaveService.create_leave_request(db, employee.id, body)


# ── GET /requests ───────────────────────────────────────────────────

@router.get("/requests")
async def list_leave_requests(
    request: Request,
    employee_id: Optional[uuid.UUID] = Query(None),
    status: Optional[LeaveStatus] = Query(None),
    leave_type_id: Optional[uuid.UUID] = Query(None),
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    pagination: PaginationParams = Depends(),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Paginated leave requests. Managers and above may filter by employee."""
    return await LeaveService.list_leave_requests(
        db,
        employee.id,
        is_privileged(request.state.user_role),
        pagination,
        employee_id=employee_id,
        status=status,
        leave_type_id=leave_type_id,
        from_date=from_date,
        to_date=to_date,
    )


# ── GET /requests/{id} ──────────────────────────────────────────────

@router.get("/requests/{request_id}", response_model=LeaveRequestOut)
async def get_leave_request(
    request_id: uuid.UUID,
    request: Request,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_leave_request(
        db, request_id, employee.id, is_privileged(request.state.user_role),
    )


# ── PUT /requests/{id} ──────────────────────────────────────────────

@router.put("/requests/{request_id}", response_model=LeaveRequestOut)
async def update_leave_request(
    request_id: uuid.UUID,
    body: LeaveRequestUpdate,
    request: Request,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Edit a pending request; the reservation follows the new dates and type."""
    return await LeaveService.update_leave_request(
        db, request_id, employee.id, is_privileged(request.state.user_role), body,
    )


# ── PUT /requests/{id}/decision ─────────────────────────────────────

@router.put("/requests/{request_id}/decision", response_model=LeaveRequestOut)
async def decide_leave_request(
    request_id: uuid.UUID,
    body: LeaveDecisionRequest,
    employee: Employee = Depends(_manager_up),
    db: AsyncSession = Depends(get_db),
):
    """Approve or reject a pending leave request."""
    return await LeaveService.decide_leave_request(
        db,
        request_id,
        body.status,
        employee.id,
        rejection_reason=body.rejection_reason,
    )


# ── PUT /requests/{id}/cancel ───────────────────────────────────────

@router.put("/requests/{request_id}/cancel", response_model=LeaveRequestOut)
async def cancel_leave_request(
    request_id: uuid.UUID,
    request: Request,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a pending or approved request (owner, or manager and above)."""
    return await LeaveService.cancel_leave_request(
        db, request_id, employee.id, is_privileged(request.state.user_role),
    )


# ═════════════════════════════════════════════════════════════════════
# Balances
# ═════════════════════════════════════════════════════════════════════


# ── GET /balances ───────────────────────────────────────────────────

@router.get("/balances", response_model=list[LeaveBalanceOut])
async def get_balances(
    request: Request,
    year: Optional[int] = Query(None, ge=2000, le=2100),
    employee_id: Optional[uuid.UUID] = Query(None),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Balances for every leave type; the caller's own unless privileged."""
    target_id = employee_id or employee.id
    if target_id != employee.id and not is_privileged(request.state.user_role):
        raise ForbiddenException("You can only view your own leave balances.")
    return await LeaveService.get_balances(
        db, target_id, year or date.today().year,
    )


# ── PUT /balances/{employee_id} ─────────────────────────────────────

@router.put("/balances/{employee_id}", response_model=LeaveBalanceOut)
async def adjust_balance(
    employee_id: uuid.UUID,
    body: BalanceAdjustRequest,
    employee: Employee = Depends(_hr_admin),
    db: AsyncSession = Depends(get_db),
):
    """Override allocated / carried-forward days (HR only)."""
    return await LeaveService.adjust_balance(db, employee_id, body, employee.id)
