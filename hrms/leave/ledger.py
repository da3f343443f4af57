"""Leave balance ledger — reserve / commit / release / revoke / adjust.

Every operation is one atomic read-modify-write against a single
``leave_balances`` row:

  1. read the row's counters and ``version``
  2. compute the new counters (pure, in ``BalanceCounters``)
  3. ``UPDATE ... WHERE id = :id AND version = :v`` bumping the version
  4. if no row matched, somebody else wrote first: re-read and retry,
     at most ``settings.LEDGER_MAX_RETRIES`` times, then raise
     ``ConcurrencyConflictException``

Counter invariant, enforced before every write:

    0 <= used_leaves
    0 <= pending_leaves
    used_leaves + pending_leaves <= allocated_leaves + carried_forward
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from hrms.common.exceptions import (
    ConcurrencyConflictException,
    InsufficientBalanceException,
    NotFoundException,
    ValidationException,
)
from hrms.config import settings
from hrms.leave.models import LeaveBalance
from hrms.leave.policy import LeaveTypePolicy

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


# ═════════════════════════════════════════════════════════════════════
# Pure counter arithmetic
# ═════════════════════════════════════════════════════════════════════


def _require_positive(days: Decimal) -> Decimal:
    if days <= ZERO:
        raise ValidationException({"days": [f"Day count must be positive, got {days}."]})
    return days


@dataclass(frozen=True)
class BalanceCounters:
    """Immutable snapshot of one balance row's counters."""

    allocated_leaves: Decimal
    carried_forward: Decimal
    used_leaves: Decimal
    pending_leaves: Decimal
    version: int = 1

    @classmethod
    def of(cls, balance: LeaveBalance) -> BalanceCounters:
        return cls(
            allocated_leaves=Decimal(balance.allocated_leaves),
            carried_forward=Decimal(balance.carried_forward),
            used_leaves=Decimal(balance.used_leaves),
            pending_leaves=Decimal(balance.pending_leaves),
            version=balance.version,
        )

    @property
    def entitlement(self) -> Decimal:
        return self.allocated_leaves + self.carried_forward

    @property
    def available(self) -> Decimal:
        return self.entitlement - self.used_leaves - self.pending_leaves

    def check_invariant(self) -> None:
        problems: list[str] = []
        if self.allocated_leaves < ZERO:
            problems.append("allocated_leaves cannot be negative.")
        if self.carried_forward < ZERO:
            problems.append("carried_forward cannot be negative.")
        if self.used_leaves < ZERO:
            problems.append("used_leaves cannot be negative.")
        if self.pending_leaves < ZERO:
            problems.append("pending_leaves cannot be negative.")
        if self.used_leaves + self.pending_leaves > self.entitlement:
            problems.append(
                f"used ({self.used_leaves}) + pending ({self.pending_leaves}) "
                f"exceeds allocated + carried forward ({self.entitlement})."
            )
        if problems:
            raise ValidationException({"balance": problems})

    # ── Transitions ─────────────────────────────────────────────────

    def reserve(self, days: Decimal) -> BalanceCounters:
        _require_positive(days)
        if days > self.available:
            raise InsufficientBalanceException(self.available, days)
        return replace(self, pending_leaves=self.pending_leaves + days)

    def commit(self, days: Decimal) -> BalanceCounters:
        _require_positive(days)
        pending = max(ZERO, self.pending_leaves - days)
        used = self.used_leaves + days
        if used + pending > self.entitlement:
            raise InsufficientBalanceException(
                self.entitlement - self.used_leaves - pending, days,
            )
        return replace(self, pending_leaves=pending, used_leaves=used)

    def release(self, days: Decimal) -> BalanceCounters:
        _require_positive(days)
        return replace(self, pending_leaves=max(ZERO, self.pending_leaves - days))

    def revoke(self, days: Decimal) -> BalanceCounters:
        _require_positive(days)
        return replace(self, used_leaves=max(ZERO, self.used_leaves - days))

    def rebook(self, old_days: Decimal, new_days: Decimal) -> BalanceCounters:
        """Swap a pending reservation of *old_days* for one of *new_days*."""
        return self.release(old_days).reserve(new_days)

    def adjust(
        self,
        *,
        allocated_leaves: Optional[Decimal] = None,
        carried_forward: Optional[Decimal] = None,
    ) -> BalanceCounters:
        adjusted = replace(
            self,
            allocated_leaves=(
                self.allocated_leaves if allocated_leaves is None else allocated_leaves
            ),
            carried_forward=(
                self.carried_forward if carried_forward is None else carried_forward
            ),
        )
        adjusted.check_invariant()
        return adjusted

    def as_dict(self) -> dict[str, str]:
        """JSON-safe representation for audit entries and logs."""
        return {
            "allocated_leaves": str(self.allocated_leaves),
            "carried_forward": str(self.carried_forward),
            "used_leaves": str(self.used_leaves),
            "pending_leaves": str(self.pending_leaves),
            "version": str(self.version),
        }


# ═════════════════════════════════════════════════════════════════════
# LeaveBalanceLedger
# ═════════════════════════════════════════════════════════════════════


class LeaveBalanceLedger:
    """Atomic balance mutations with optimistic-concurrency retry."""

    # ── Lookup ──────────────────────────────────────────────────────

    @staticmethod
    async def get(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        year: int,
    ) -> Optional[LeaveBalance]:
        result = await db.execute(
            select(LeaveBalance).where(
                LeaveBalance.employee_id == employee_id,
                LeaveBalance.leave_type_id == leave_type_id,
                LeaveBalance.year == year,
            )
        )
        return result.scalars().first()

    @staticmethod
    async def get_or_create(
        db: AsyncSession,
        employee_id: uuid.UUID,
        policy: LeaveTypePolicy,
        year: int,
    ) -> LeaveBalance:
        """Return the balance row, creating it from the policy's quota if absent."""

        balance = await LeaveBalanceLedger.get(db, employee_id, policy.id, year)
        if balance is not None:
            return balance

        try:
            async with db.begin_nested():
                balance = LeaveBalance(
                    employee_id=employee_id,
                    leave_type_id=policy.id,
                    year=year,
                    allocated_leaves=policy.initial_allocation(),
                    carried_forward=ZERO,
                    used_leaves=ZERO,
                    pending_leaves=ZERO,
                    version=1,
                )
                db.add(balance)
                await db.flush()
        except IntegrityError:
            # Lost the race on uq_leave_balance; the winner's row is the one to use.
            logger.info(
                "leave balance created concurrently: employee_id=%s leave_type=%s year=%s",
                employee_id, policy.code, year,
            )
            balance = await LeaveBalanceLedger.get(db, employee_id, policy.id, year)
            if balance is None:
                raise
            return balance

        logger.info(
            "leave balance created: employee_id=%s leave_type=%s year=%s allocated=%s",
            employee_id, policy.code, year, balance.allocated_leaves,
        )
        return balance

    # ── Read / conditional write ────────────────────────────────────

    @staticmethod
    async def _read_counters(db: AsyncSession, balance_id: uuid.UUID) -> BalanceCounters:
        result = await db.execute(
            select(LeaveBalance)
            .where(LeaveBalance.id == balance_id)
            .execution_options(populate_existing=True)
        )
        balance = result.scalars().first()
        if balance is None:
            raise NotFoundException("LeaveBalance", str(balance_id))
        return BalanceCounters.of(balance)

    @staticmethod
    async def _write_counters(
        db: AsyncSession,
        balance_id: uuid.UUID,
        before: BalanceCounters,
        after: BalanceCounters,
    ) -> bool:
        result = await db.execute(
            update(LeaveBalance)
            .where(
                LeaveBalance.id == balance_id,
                LeaveBalance.version == before.version,
            )
            .values(
                allocated_leaves=after.allocated_leaves,
                carried_forward=after.carried_forward,
                used_leaves=after.used_leaves,
                pending_leaves=after.pending_leaves,
                version=before.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def _mutate(
        db: AsyncSession,
        balance: LeaveBalance,
        operation: str,
        change: Callable[[BalanceCounters], BalanceCounters],
    ) -> LeaveBalance:
        max_attempts = max(1, settings.LEDGER_MAX_RETRIES)
        for attempt in range(1, max_attempts + 1):
            before = await LeaveBalanceLedger._read_counters(db, balance.id)
            after = change(before)
            after.check_invariant()

            if await LeaveBalanceLedger._write_counters(db, balance.id, before, after):
                await db.refresh(balance)
                logger.debug(
                    "ledger %s: balance_id=%s before=%s after=%s",
                    operation, balance.id, before.as_dict(), BalanceCounters.of(balance).as_dict(),
                )
                return balance

            logger.warning(
                "ledger conflict: balance_id=%s op=%s attempt=%d/%d version=%d",
                balance.id, operation, attempt, max_attempts, before.version,
            )

        logger.warning(
            "ledger retries exhausted: balance_id=%s op=%s attempts=%d",
            balance.id, operation, max_attempts,
        )
        raise ConcurrencyConflictException("LeaveBalance", balance.id)

    # ── Public operations ───────────────────────────────────────────

    @staticmethod
    async def reserve(db: AsyncSession, balance: LeaveBalance, days: Decimal) -> LeaveBalance:
        """pending += days, only if days <= available."""
        return await LeaveBalanceLedger._mutate(
            db, balance, "reserve", lambda c: c.reserve(days),
        )

    @staticmethod
    async def commit(db: AsyncSession, balance: LeaveBalance, days: Decimal) -> LeaveBalance:
        """Move days from pending to used (pending clamped at 0)."""
        return await LeaveBalanceLedger._mutate(
            db, balance, "commit", lambda c: c.commit(days),
        )

    @staticmethod
    async def release(db: AsyncSession, balance: LeaveBalance, days: Decimal) -> LeaveBalance:
        """pending -= days, clamped at 0."""
        return await LeaveBalanceLedger._mutate(
            db, balance, "release", lambda c: c.release(days),
        )

    @staticmethod
    async def revoke(db: AsyncSession, balance: LeaveBalance, days: Decimal) -> LeaveBalance:
        """used -= days, clamped at 0."""
        return await LeaveBalanceLedger._mutate(
            db, balance, "revoke", lambda c: c.revoke(days),
        )

    @staticmethod
    async def rebook(
        db: AsyncSession,
        balance: LeaveBalance,
        old_days: Decimal,
        new_days: Decimal,
    ) -> LeaveBalance:
        """Release *old_days* and reserve *new_days* in a single write."""
        return await LeaveBalanceLedger._mutate(
            db, balance, "rebook", lambda c: c.rebook(old_days, new_days),
        )

    @staticmethod
    async def adjust(
        db: AsyncSession,
        balance: LeaveBalance,
        *,
        allocated_leaves: Optional[Decimal] = None,
        carried_forward: Optional[Decimal] = None,
    ) -> LeaveBalance:
        """Admin override of allocation; never touches used/pending."""
        return await LeaveBalanceLedger._mutate(
            db,
            balance,
            "adjust",
            lambda c: c.adjust(
                allocated_leaves=allocated_leaves,
                carried_forward=carried_forward,
            ),
        )
