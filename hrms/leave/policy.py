"""Leave-type policy: read-only rules consulted by the request state machine.

A ``LeaveTypePolicy`` is an immutable snapshot of a ``LeaveType`` row taken
when a request is validated. Editing the leave type afterwards never
changes balances that already exist; only balances created later are
seeded from the new quota.
"""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hrms.common.constants import HALF_DAY_DURATION
from hrms.common.exceptions import NotFoundException, ValidationException
from hrms.config import settings
from hrms.leave.models import LeaveType


class LeaveTypePolicy(BaseModel):
    """Frozen view over the LeaveType fields the core needs."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: uuid.UUID
    code: str
    name: str
    default_annual_quota: Decimal = Decimal("0")
    max_consecutive_days: int = 0
    is_carry_forward: bool = False
    requires_approval: bool = True

    @property
    def has_consecutive_limit(self) -> bool:
        return self.max_consecutive_days > 0

    def initial_allocation(self) -> Decimal:
        """Allocation used to seed a balance created lazily for this type."""
        return self.default_annual_quota

    def check_duration(self, duration: Decimal) -> None:
        """Raise ``ValidationException`` if *duration* exceeds the consecutive-day cap."""
        if self.has_consecutive_limit and duration > self.max_consecutive_days:
            raise ValidationException(
                {"duration": [
                    f"{self.name} allows a maximum of "
                    f"{self.max_consecutive_days} consecutive days; "
                    f"requested {duration}."
                ]}
            )

    @classmethod
    async def load(
        cls,
        db: AsyncSession,
        leave_type_id: uuid.UUID,
        *,
        active_only: bool = True,
    ) -> LeaveTypePolicy:
        query = select(LeaveType).where(LeaveType.id == leave_type_id)
        if active_only:
            query = query.where(LeaveType.is_active.is_(True))
        leave_type = (await db.execute(query)).scalars().first()
        if leave_type is None:
            raise NotFoundException("LeaveType", str(leave_type_id))
        return cls.model_validate(leave_type)


def compute_duration(start_date: date, end_date: date, is_half_day: bool) -> Decimal:
    """Validate a request's date span and return its duration in days.

    Half-day requests count 0.5 and must cover a single date; everything
    else counts inclusive calendar days. Requests may not cross a calendar
    year because the balance they draw on is keyed by year.
    """
    if start_date > end_date:
        raise ValidationException(
            {"end_date": ["end_date must be on or after start_date."]}
        )
    if start_date.year != end_date.year:
        raise ValidationException(
            {"end_date": [
                "A leave request cannot span two leave years; "
                "split it at 31 December."
            ]}
        )

    span = (end_date - start_date).days + 1
    if span > settings.MAX_REQUEST_SPAN_DAYS:
        raise ValidationException(
            {"end_date": [
                f"A leave request cannot span more than "
                f"{settings.MAX_REQUEST_SPAN_DAYS} days."
            ]}
        )

    if is_half_day:
        if start_date != end_date:
            raise ValidationException(
                {"is_half_day": ["A half-day request must start and end on the same date."]}
            )
        return HALF_DAY_DURATION

    return Decimal(span)
