"""Leave service layer — leave request state machine, leave types, balances.

Business logic:
  - Request lifecycle PENDING → {APPROVED, REJECTED, CANCELLED}, APPROVED → CANCELLED
  - Every lifecycle step moves days through LeaveBalanceLedger:
      create  → reserve         reject / cancel pending  → release
      approve → commit          cancel approved          → revoke
      update  → rebook (same balance) or release + reserve (different balance)
  - Approval projects LEAVE days onto attendance; cancelling an approved
    request removes exactly those days again
  - Reservation happens before the request row exists, and is released
    again if the row cannot be written
  - Status changes are compare-and-set on the current status, so two
    concurrent decisions on one request cannot both move the ledger
  - Leave-type administration and balance listing / adjustment
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from hrms.attendance.projector import AttendanceProjector
from hrms.common.audit import create_audit_entry
from hrms.common.constants import LEAVE_TRANSITIONS, LeaveStatus
from hrms.common.exceptions import (
    AlreadyProcessedException,
    ConflictError,
    ForbiddenException,
    InvalidStateException,
    NotFoundException,
    ValidationException,
)
from hrms.common.pagination import PaginatedResponse, PaginationParams, paginate
from hrms.core_hr.models import Employee
from hrms.leave.ledger import BalanceCounters, LeaveBalanceLedger
from hrms.leave.models import LeaveBalance, LeaveRequest, LeaveType
from hrms.leave.policy import LeaveTypePolicy, compute_duration
from hrms.leave.schemas import (
    BalanceAdjustRequest,
    LeaveBalanceOut,
    LeaveRequestCreate,
    LeaveRequestOut,
    LeaveRequestUpdate,
    LeaveTypeBrief,
    LeaveTypeCreate,
    LeaveTypeOut,
    LeaveTypeUpdate,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_VERBS = {
    LeaveStatus.approved: "approve",
    LeaveStatus.rejected: "reject",
    LeaveStatus.cancelled: "cancel",
}


# ═════════════════════════════════════════════════════════════════════
# LeaveService
# ═════════════════════════════════════════════════════════════════════


class LeaveService:
    """Async leave operations: types, balances, requests, decisions."""

    # ─────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _get_active_employee(
        db: AsyncSession,
        employee_id: uuid.UUID,
    ) -> Employee:
        result = await db.execute(
            select(Employee).where(
                Employee.id == employee_id,
                Employee.is_active.is_(True),
            )
        )
        employee = result.scalars().first()
        if employee is None:
            raise NotFoundException("Employee", str(employee_id))
        return employee

    @staticmethod
    async def _get_request(
        db: AsyncSession,
        request_id: uuid.UUID,
    ) -> LeaveRequest:
        result = await db.execute(
            select(LeaveRequest).where(LeaveRequest.id == request_id)
        )
        leave_request = result.scalars().first()
        if leave_request is None:
            raise NotFoundException("LeaveRequest", str(request_id))
        return leave_request

    @staticmethod
    async def _get_leave_type(
        db: AsyncSession,
        leave_type_id: uuid.UUID,
    ) -> LeaveType:
        result = await db.execute(
            select(LeaveType).where(LeaveType.id == leave_type_id)
        )
        leave_type = result.scalars().first()
        if leave_type is None:
            raise NotFoundException("LeaveType", str(leave_type_id))
        return leave_type

    @staticmethod
    async def _balance_for(
        db: AsyncSession,
        leave_request: LeaveRequest,
    ) -> LeaveBalance:
        """The balance a request drew its days from."""

        balance = await LeaveBalanceLedger.get(
            db,
            leave_request.employee_id,
            leave_request.leave_type_id,
            leave_request.balance_year,
        )
        if balance is None:
            raise NotFoundException(
                "LeaveBalance",
                f"{leave_request.employee_id}/{leave_request.leave_type_id}"
                f"/{leave_request.balance_year}",
            )
        return balance

    @staticmethod
    def _check_owner(
        leave_request: LeaveRequest,
        actor_id: uuid.UUID,
        is_privileged: bool,
        action: str,
    ) -> None:
        if leave_request.employee_id != actor_id and not is_privileged:
            raise ForbiddenException(
                f"You can only {action} your own leave requests."
            )

    @staticmethod
    async def _check_overlap(
        db: AsyncSession,
        employee_id: uuid.UUID,
        start_date: date,
        end_date: date,
        *,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Reject dates overlapping another pending or approved request."""

        query = select(func.count()).select_from(LeaveRequest).where(
            LeaveRequest.employee_id == employee_id,
            LeaveRequest.status.in_([LeaveStatus.pending, LeaveStatus.approved]),
            LeaveRequest.start_date <= end_date,
            LeaveRequest.end_date >= start_date,
        )
        if exclude_id is not None:
            query = query.where(LeaveRequest.id != exclude_id)

        if (await db.execute(query)).scalar_one() > 0:
            raise ValidationException(
                {"dates": [
                    "You already have a pending or approved leave request "
                    "overlapping with these dates."
                ]}
            )

    @staticmethod
    def _snapshot(leave_request: LeaveRequest) -> dict[str, Any]:
        """JSON-safe request state for audit entries."""
        return {
            "leave_type_id": str(leave_request.leave_type_id),
            "start_date": leave_request.start_date.isoformat(),
            "end_date": leave_request.end_date.isoformat(),
            "duration": str(leave_request.duration),
            "is_half_day": leave_request.is_half_day,
            "status": leave_request.status.value,
        }

    @staticmethod
    def _balance_out(balance: LeaveBalance, leave_type: LeaveType) -> LeaveBalanceOut:
        return LeaveBalanceOut(
            id=balance.id,
            employee_id=balance.employee_id,
            leave_type_id=balance.leave_type_id,
            year=balance.year,
            allocated_leaves=balance.allocated_leaves,
            carried_forward=balance.carried_forward,
            used_leaves=balance.used_leaves,
            pending_leaves=balance.pending_leaves,
            available=balance.available,
            is_virtual=False,
            leave_type=LeaveTypeBrief.model_validate(leave_type),
        )

    @staticmethod
    def _virtual_balance_out(
        employee_id: uuid.UUID,
        leave_type: LeaveType,
        year: int,
    ) -> LeaveBalanceOut:
        zero = Decimal("0")
        return LeaveBalanceOut(
            id=None,
            employee_id=employee_id,
            leave_type_id=leave_type.id,
            year=year,
            allocated_leaves=leave_type.default_annual_quota,
            carried_forward=zero,
            used_leaves=zero,
            pending_leaves=zero,
            available=leave_type.default_annual_quota,
            is_virtual=True,
            leave_type=LeaveTypeBrief.model_validate(leave_type),
        )

    # ─────────────────────────────────────────────────────────────────
    # Persistence steps (compensated by callers on failure)
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _persist_request(
        db: AsyncSession,
        leave_request: LeaveRequest,
    ) -> LeaveRequest:
        """Insert a new request inside a savepoint."""

        async with db.begin_nested():
            db.add(leave_request)
            await db.flush()
        return leave_request

    @staticmethod
    async def _compare_and_set(
        db: AsyncSession,
        leave_request: LeaveRequest,
        expected: LeaveStatus,
        values: dict[str, Any],
    ) -> bool:
        """Write *values* only if the stored status is still *expected*."""

        result = await db.execute(
            update(LeaveRequest)
            .where(
                LeaveRequest.id == leave_request.id,
                LeaveRequest.status == expected,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(leave_request)
        return result.rowcount == 1

    @staticmethod
    async def _write_request_fields(
        db: AsyncSession,
        leave_request: LeaveRequest,
        values: dict[str, Any],
    ) -> None:
        """Write edited fields of a request that must still be PENDING."""

        if not await LeaveService._compare_and_set(
            db, leave_request, LeaveStatus.pending, values,
        ):
            raise AlreadyProcessedException(leave_request.status.value)

    @staticmethod
    async def _transition(
        db: AsyncSession,
        leave_request: LeaveRequest,
        after: LeaveStatus,
        actor_id: Optional[uuid.UUID],
        ledger_step: Callable[[], Awaitable[Any]],
        **values: Any,
    ) -> LeaveStatus:
        """Move *leave_request* to *after* and apply its ledger step.

        The status is claimed first with a compare-and-set; if the ledger
        step then fails the previous status and fields are put back before
        the error propagates. Losing the claim to another writer raises
        AlreadyProcessed, or InvalidState for a cancel that can no longer
        happen. Returns the status the request came from.
        """

        before = leave_request.status
        if after not in LEAVE_TRANSITIONS[before]:
            raise InvalidStateException(before.value, _VERBS.get(after, after.value))

        now = _utcnow()
        restore = {name: getattr(leave_request, name) for name in values}
        restore["status"] = before
        restore["last_modified"] = leave_request.last_modified

        claimed = await LeaveService._compare_and_set(
            db, leave_request, before,
            {"status": after, "last_modified": now, **values},
        )
        if not claimed:
            logger.warning(
                "leave status changed concurrently: request_id=%s expected=%s now=%s",
                leave_request.id, before.value, leave_request.status.value,
            )
            current = leave_request.status
            if after == LeaveStatus.cancelled and after not in LEAVE_TRANSITIONS[current]:
                raise InvalidStateException(current.value, "cancel")
            raise AlreadyProcessedException(current.value)

        try:
            await ledger_step()
        except Exception:
            logger.warning(
                "ledger step failed, restoring status: request_id=%s status=%s",
                leave_request.id, before.value,
            )
            await LeaveService._compare_and_set(db, leave_request, after, restore)
            raise

        logger.info(
            "leave status transition: request_id=%s before=%s after=%s actor=%s",
            leave_request.id, before.value, after.value, actor_id,
        )
        return before

    @staticmethod
    async def _approve(
        db: AsyncSession,
        leave_request: LeaveRequest,
        balance: LeaveBalance,
        approver_id: Optional[uuid.UUID],
    ) -> None:
        """PENDING → APPROVED: commit the days and project them onto attendance."""

        duration = leave_request.duration
        before = await LeaveService._transition(
            db,
            leave_request,
            LeaveStatus.approved,
            approver_id,
            lambda: LeaveBalanceLedger.commit(db, balance, duration),
            approved_by=approver_id,
        )

        projected = await AttendanceProjector.apply_leave(
            db,
            leave_request.employee_id,
            leave_request.id,
            leave_request.start_date,
            leave_request.end_date,
        )

        await create_audit_entry(
            db,
            action="approve",
            entity_type="leave_request",
            entity_id=leave_request.id,
            actor_id=approver_id,
            old_values={"status": before.value},
            new_values={
                "status": LeaveStatus.approved.value,
                "approved_by": str(approver_id) if approver_id else None,
                "attendance_days": projected,
            },
        )

    # ─────────────────────────────────────────────────────────────────
    # Leave Types
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def list_leave_types(
        db: AsyncSession,
        *,
        is_active: Optional[bool] = True,
    ) -> list[LeaveTypeOut]:
        """List leave types, active ones only by default."""

        query = select(LeaveType).order_by(LeaveType.name)
        if is_active is not None:
            query = query.where(LeaveType.is_active == is_active)

        result = await db.execute(query)
        return [LeaveTypeOut.model_validate(lt) for lt in result.scalars().all()]

    @staticmethod
    async def get_leave_type(
        db: AsyncSession,
        leave_type_id: uuid.UUID,
    ) -> LeaveTypeOut:
        leave_type = await LeaveService._get_leave_type(db, leave_type_id)
        return LeaveTypeOut.model_validate(leave_type)

    @staticmethod
    async def _check_code_free(
        db: AsyncSession,
        code: str,
        *,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> None:
        query = select(LeaveType.id).where(LeaveType.code == code)
        if exclude_id is not None:
            query = query.where(LeaveType.id != exclude_id)
        if (await db.execute(query)).scalar() is not None:
            raise ConflictError("code", code)

    @staticmethod
    async def create_leave_type(
        db: AsyncSession,
        data: LeaveTypeCreate,
        actor_id: uuid.UUID,
    ) -> LeaveTypeOut:
        """Create a leave type. Codes are unique."""

        await LeaveService._check_code_free(db, data.code)

        leave_type = LeaveType(**data.model_dump())
        db.add(leave_type)
        await db.flush()

        await create_audit_entry(
            db,
            action="create",
            entity_type="leave_type",
            entity_id=leave_type.id,
            actor_id=actor_id,
            new_values={
                "code": leave_type.code,
                "name": leave_type.name,
                "default_annual_quota": str(leave_type.default_annual_quota),
                "max_consecutive_days": leave_type.max_consecutive_days,
            },
        )
        logger.info("leave type created: code=%s actor=%s", leave_type.code, actor_id)
        return LeaveTypeOut.model_validate(leave_type)

    @staticmethod
    async def update_leave_type(
        db: AsyncSession,
        leave_type_id: uuid.UUID,
        data: LeaveTypeUpdate,
        actor_id: uuid.UUID,
    ) -> LeaveTypeOut:
        """Edit a leave type. Balances that already exist keep their allocation."""

        leave_type = await LeaveService._get_leave_type(db, leave_type_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("code") and changes["code"] != leave_type.code:
            await LeaveService._check_code_free(db, changes["code"], exclude_id=leave_type.id)

        old_values: dict[str, Any] = {}
        new_values: dict[str, Any] = {}
        for field, value in changes.items():
            if value is None and field not in ("description",):
                continue
            current = getattr(leave_type, field)
            if current == value:
                continue
            old_values[field] = str(current) if current is not None else None
            new_values[field] = str(value) if value is not None else None
            setattr(leave_type, field, value)

        if new_values:
            leave_type.updated_at = _utcnow()
            await db.flush()
            await create_audit_entry(
                db,
                action="update",
                entity_type="leave_type",
                entity_id=leave_type.id,
                actor_id=actor_id,
                old_values=old_values,
                new_values=new_values,
            )

        return LeaveTypeOut.model_validate(leave_type)

    @staticmethod
    async def deactivate_leave_type(
        db: AsyncSession,
        leave_type_id: uuid.UUID,
        actor_id: uuid.UUID,
    ) -> LeaveTypeOut:
        """Soft delete: inactive types accept no new requests."""

        leave_type = await LeaveService._get_leave_type(db, leave_type_id)
        if leave_type.is_active:
            leave_type.is_active = False
            leave_type.updated_at = _utcnow()
            await db.flush()
            await create_audit_entry(
                db,
                action="deactivate",
                entity_type="leave_type",
                entity_id=leave_type.id,
                actor_id=actor_id,
                old_values={"is_active": True},
                new_values={"is_active": False},
            )
        return LeaveTypeOut.model_validate(leave_type)

    # ─────────────────────────────────────────────────────────────────
    # Balance
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_balances(
        db: AsyncSession,
        employee_id: uuid.UUID,
        year: int,
    ) -> list[LeaveBalanceOut]:
        """One balance per active leave type for *year*.

        Types the employee has no row for yet come back as virtual
        balances seeded from the type's default quota. Rows for types
        deactivated since are still listed.
        """

        emp_check = await db.execute(
            select(Employee.id).where(Employee.id == employee_id)
        )
        if emp_check.scalar() is None:
            raise NotFoundException("Employee", str(employee_id))

        stored_result = await db.execute(
            select(LeaveBalance)
            .where(
                LeaveBalance.employee_id == employee_id,
                LeaveBalance.year == year,
            )
            .options(selectinload(LeaveBalance.leave_type))
        )
        stored = {bal.leave_type_id: bal for bal in stored_result.scalars().all()}

        types_result = await db.execute(
            select(LeaveType)
            .where(LeaveType.is_active.is_(True))
            .order_by(LeaveType.name)
        )
        active_types = types_result.scalars().all()

        output: list[LeaveBalanceOut] = []
        for leave_type in active_types:
            balance = stored.pop(leave_type.id, None)
            if balance is not None:
                output.append(LeaveService._balance_out(balance, leave_type))
            else:
                output.append(
                    LeaveService._virtual_balance_out(employee_id, leave_type, year)
                )

        for balance in sorted(stored.values(), key=lambda b: b.leave_type.name):
            output.append(LeaveService._balance_out(balance, balance.leave_type))

        return output

    @staticmethod
    async def adjust_balance(
        db: AsyncSession,
        employee_id: uuid.UUID,
        data: BalanceAdjustRequest,
        actor_id: uuid.UUID,
    ) -> LeaveBalanceOut:
        """Admin override of allocated / carried-forward days."""

        await LeaveService._get_active_employee(db, employee_id)
        leave_type = await LeaveService._get_leave_type(db, data.leave_type_id)
        policy = LeaveTypePolicy.model_validate(leave_type)

        balance = await LeaveBalanceLedger.get_or_create(db, employee_id, policy, data.year)
        before = BalanceCounters.of(balance)
        await LeaveBalanceLedger.adjust(
            db,
            balance,
            allocated_leaves=data.allocated_leaves,
            carried_forward=data.carried_forward,
        )

        await create_audit_entry(
            db,
            action="adjust",
            entity_type="leave_balance",
            entity_id=balance.id,
            actor_id=actor_id,
            old_values=before.as_dict(),
            new_values=BalanceCounters.of(balance).as_dict(),
        )
        return LeaveService._balance_out(balance, leave_type)

    # ─────────────────────────────────────────────────────────────────
    # Create
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def create_leave_request(
        db: AsyncSession,
        employee_id: uuid.UUID,
        data: LeaveRequestCreate,
    ) -> LeaveRequestOut:
        """Apply for leave.

        Validation runs first (active employee and leave type, date span,
        half-day rules, max consecutive days, overlap). The days are then
        reserved on the balance; only a successful reservation leads to
        the request row being written. Leave types that need no approval
        go straight on to APPROVED.
        """

        await LeaveService._get_active_employee(db, employee_id)
        policy = await LeaveTypePolicy.load(db, data.leave_type_id)

        duration = compute_duration(data.start_date, data.end_date, data.is_half_day)
        policy.check_duration(duration)
        await LeaveService._check_overlap(db, employee_id, data.start_date, data.end_date)

        # ── Reserve, then write the request ─────────────────────────
        balance = await LeaveBalanceLedger.get_or_create(
            db, employee_id, policy, data.start_date.year,
        )
        await LeaveBalanceLedger.reserve(db, balance, duration)

        now = _utcnow()
        try:
            leave_request = await LeaveService._persist_request(
                db,
                LeaveRequest(
                    employee_id=employee_id,
                    leave_type_id=policy.id,
                    start_date=data.start_date,
                    end_date=data.end_date,
                    duration=duration,
                    is_half_day=data.is_half_day,
                    reason=data.reason,
                    contact_during_leave=data.contact_during_leave,
                    status=LeaveStatus.pending,
                    applied_date=now,
                    last_modified=now,
                ),
            )
        except Exception:
            logger.warning(
                "leave request insert failed, releasing reservation: "
                "employee_id=%s leave_type=%s days=%s",
                employee_id, policy.code, duration,
            )
            await LeaveBalanceLedger.release(db, balance, duration)
            raise

        await create_audit_entry(
            db,
            action="create",
            entity_type="leave_request",
            entity_id=leave_request.id,
            actor_id=employee_id,
            new_values=LeaveService._snapshot(leave_request),
        )
        logger.info(
            "leave status transition: request_id=%s before=%s after=%s actor=%s",
            leave_request.id, None, LeaveStatus.pending.value, employee_id,
        )

        if not policy.requires_approval:
            await LeaveService._approve(db, leave_request, balance, approver_id=None)

        return LeaveRequestOut.model_validate(leave_request)

    # ─────────────────────────────────────────────────────────────────
    # Decide (approve / reject)
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def decide_leave_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        outcome: LeaveStatus,
        approver_id: uuid.UUID,
        *,
        rejection_reason: Optional[str] = None,
    ) -> LeaveRequestOut:
        """Approve (commit + project) or reject (release) a pending request."""

        if outcome not in (LeaveStatus.approved, LeaveStatus.rejected):
            raise ValidationException(
                {"status": ["Decision must be approved or rejected."]}
            )

        leave_request = await LeaveService._get_request(db, request_id)
        if leave_request.status != LeaveStatus.pending:
            raise AlreadyProcessedException(leave_request.status.value)

        balance = await LeaveService._balance_for(db, leave_request)

        if outcome == LeaveStatus.approved:
            await LeaveService._approve(db, leave_request, balance, approver_id)
        else:
            duration = leave_request.duration
            before = await LeaveService._transition(
                db,
                leave_request,
                LeaveStatus.rejected,
                approver_id,
                lambda: LeaveBalanceLedger.release(db, balance, duration),
                rejection_reason=rejection_reason,
            )
            await create_audit_entry(
                db,
                action="reject",
                entity_type="leave_request",
                entity_id=leave_request.id,
                actor_id=approver_id,
                old_values={"status": before.value},
                new_values={
                    "status": LeaveStatus.rejected.value,
                    "rejection_reason": rejection_reason,
                },
            )

        return LeaveRequestOut.model_validate(leave_request)

    # ─────────────────────────────────────────────────────────────────
    # Cancel
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def cancel_leave_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor_id: uuid.UUID,
        is_privileged: bool,
    ) -> LeaveRequestOut:
        """Cancel a pending (release) or approved (revoke + un-project) request.

        Every attendance row tagged with this request is reverted, past
        and future days alike.
        """

        leave_request = await LeaveService._get_request(db, request_id)
        LeaveService._check_owner(leave_request, actor_id, is_privileged, "cancel")

        if leave_request.status not in (LeaveStatus.pending, LeaveStatus.approved):
            raise InvalidStateException(leave_request.status.value, "cancel")

        balance = await LeaveService._balance_for(db, leave_request)
        duration = leave_request.duration
        while True:
            if leave_request.status == LeaveStatus.pending:
                ledger_step = lambda: LeaveBalanceLedger.release(db, balance, duration)  # noqa: E731
            else:
                ledger_step = lambda: LeaveBalanceLedger.revoke(db, balance, duration)  # noqa: E731

            try:
                before = await LeaveService._transition(
                    db,
                    leave_request,
                    LeaveStatus.cancelled,
                    actor_id,
                    ledger_step,
                    cancelled_by=actor_id,
                    cancelled_at=_utcnow(),
                )
            except AlreadyProcessedException:
                # Approved while we were cancelling it as pending: revoke instead
                if leave_request.status != LeaveStatus.approved:
                    raise
                continue
            break

        reverted = 0
        if before == LeaveStatus.approved:
            reverted = await AttendanceProjector.revert_leave(
                db, leave_request.employee_id, leave_request.id,
            )

        await create_audit_entry(
            db,
            action="cancel",
            entity_type="leave_request",
            entity_id=leave_request.id,
            actor_id=actor_id,
            old_values={"status": before.value},
            new_values={
                "status": LeaveStatus.cancelled.value,
                "attendance_days_reverted": reverted,
            },
        )

        return LeaveRequestOut.model_validate(leave_request)

    # ─────────────────────────────────────────────────────────────────
    # Update
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def update_leave_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor_id: uuid.UUID,
        is_privileged: bool,
        data: LeaveRequestUpdate,
    ) -> LeaveRequestOut:
        """Edit a pending request, moving its reservation along with it.

        Same balance (type and year unchanged): the pending delta is one
        ``rebook`` write. Different balance: release the old reservation,
        reserve on the new balance, and reserve the old days again if that
        fails. If the edited fields cannot be written the ledger is put
        back the same way.
        """

        leave_request = await LeaveService._get_request(db, request_id)
        LeaveService._check_owner(leave_request, actor_id, is_privileged, "edit")
        if leave_request.status != LeaveStatus.pending:
            raise AlreadyProcessedException(leave_request.status.value)

        leave_type_id = data.leave_type_id or leave_request.leave_type_id
        start_date = data.start_date or leave_request.start_date
        end_date = data.end_date or leave_request.end_date
        is_half_day = (
            leave_request.is_half_day if data.is_half_day is None else data.is_half_day
        )

        policy = await LeaveTypePolicy.load(
            db,
            leave_type_id,
            active_only=leave_type_id != leave_request.leave_type_id,
        )
        duration = compute_duration(start_date, end_date, is_half_day)
        policy.check_duration(duration)
        await LeaveService._check_overlap(
            db, leave_request.employee_id, start_date, end_date,
            exclude_id=leave_request.id,
        )

        old_values = LeaveService._snapshot(leave_request)
        old_duration = leave_request.duration
        old_balance = await LeaveService._balance_for(db, leave_request)
        same_balance = (
            leave_type_id == leave_request.leave_type_id
            and start_date.year == leave_request.balance_year
        )

        # ── Move the reservation ────────────────────────────────────
        if same_balance:
            new_balance = old_balance
            if duration != old_duration:
                await LeaveBalanceLedger.rebook(db, old_balance, old_duration, duration)
        else:
            new_balance = await LeaveBalanceLedger.get_or_create(
                db, leave_request.employee_id, policy, start_date.year,
            )
            await LeaveBalanceLedger.release(db, old_balance, old_duration)
            try:
                await LeaveBalanceLedger.reserve(db, new_balance, duration)
            except Exception:
                await LeaveBalanceLedger.reserve(db, old_balance, old_duration)
                raise

        # ── Write the request ───────────────────────────────────────
        values: dict[str, Any] = {
            "leave_type_id": leave_type_id,
            "start_date": start_date,
            "end_date": end_date,
            "is_half_day": is_half_day,
            "duration": duration,
            "last_modified": _utcnow(),
        }
        if data.reason is not None:
            values["reason"] = data.reason
        if data.contact_during_leave is not None:
            values["contact_during_leave"] = data.contact_during_leave

        try:
            await LeaveService._write_request_fields(db, leave_request, values)
        except Exception:
            logger.warning(
                "leave request update failed, restoring reservation: request_id=%s",
                leave_request.id,
            )
            if same_balance:
                if duration != old_duration:
                    await LeaveBalanceLedger.rebook(db, old_balance, duration, old_duration)
            else:
                await LeaveBalanceLedger.release(db, new_balance, duration)
                await LeaveBalanceLedger.reserve(db, old_balance, old_duration)
            raise

        await create_audit_entry(
            db,
            action="update",
            entity_type="leave_request",
            entity_id=leave_request.id,
            actor_id=actor_id,
            old_values=old_values,
            new_values=LeaveService._snapshot(leave_request),
        )
        logger.info(
            "leave request updated: request_id=%s duration=%s->%s actor=%s",
            leave_request.id, old_duration, duration, actor_id,
        )

        return LeaveRequestOut.model_validate(leave_request)

    # ─────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_leave_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor_id: uuid.UUID,
        is_privileged: bool,
    ) -> LeaveRequestOut:
        leave_request = await LeaveService._get_request(db, request_id)
        LeaveService._check_owner(leave_request, actor_id, is_privileged, "view")
        return LeaveRequestOut.model_validate(leave_request)

    @staticmethod
    async def list_leave_requests(
        db: AsyncSession,
        actor_id: uuid.UUID,
        is_privileged: bool,
        params: PaginationParams,
        *,
        employee_id: Optional[uuid.UUID] = None,
        status: Optional[LeaveStatus] = None,
        leave_type_id: Optional[uuid.UUID] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> PaginatedResponse:
        """Paginated requests; employees only ever see their own."""

        if not is_privileged:
            if employee_id is not None and employee_id != actor_id:
                raise ForbiddenException(
                    "You can only view your own leave requests."
                )
            employee_id = actor_id

        query = select(LeaveRequest)
        if employee_id is not None:
            query = query.where(LeaveRequest.employee_id == employee_id)
        if status is not None:
            query = query.where(LeaveRequest.status == status)
        if leave_type_id is not None:
            query = query.where(LeaveRequest.leave_type_id == leave_type_id)
        if from_date is not None:
            query = query.where(LeaveRequest.end_date >= from_date)
        if to_date is not None:
            query = query.where(LeaveRequest.start_date <= to_date)

        query = query.order_by(
            LeaveRequest.start_date.desc(), LeaveRequest.applied_date.desc(),
        )
        return await paginate(
            db, query, params, serializer=LeaveRequestOut.model_validate,
        )
