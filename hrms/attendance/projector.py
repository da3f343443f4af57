"""Projection of approved leave onto daily attendance rows.

Rows written here carry ``leave_request_id``; that tag is the only thing
``revert_leave`` looks at, so rows created by check-in or by another leave
request are never reverted on this request's behalf. Both operations are
idempotent: re-running them changes nothing.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Iterator

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hrms.attendance.models import AttendanceRecord
from hrms.attendance.service import AttendanceService
from hrms.common.constants import AttendanceStatus

logger = logging.getLogger(__name__)


def _days(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


class AttendanceProjector:
    """Writes and removes LEAVE rows for a single leave request."""

    @staticmethod
    async def apply_leave(
        db: AsyncSession,
        employee_id: uuid.UUID,
        request_id: uuid.UUID,
        start_date: date,
        end_date: date,
    ) -> int:
        """Mark every day in ``[start_date, end_date]`` as LEAVE for *request_id*.

        Existing check-in / check-out times are kept; only the status and
        leave tag are overwritten, and a taken-over row remembers its
        previous status. Days already tagged by a different request are
        left alone. Returns the number of rows written.
        """

        now = datetime.now(timezone.utc)
        result = await db.execute(
            select(AttendanceRecord).where(
                AttendanceRecord.employee_id == employee_id,
                AttendanceRecord.date >= start_date,
                AttendanceRecord.date <= end_date,
            )
        )
        existing = {record.date: record for record in result.scalars().all()}

        written = 0
        for day in _days(start_date, end_date):
            record = existing.get(day)

            if record is None:
                db.add(
                    AttendanceRecord(
                        employee_id=employee_id,
                        date=day,
                        status=AttendanceStatus.leave,
                        is_leave=True,
                        leave_request_id=request_id,
                    )
                )
                written += 1
                continue

            if record.leave_request_id is not None and record.leave_request_id != request_id:
                logger.warning(
                    "projector skipped day: employee_id=%s date=%s tagged_by=%s request_id=%s",
                    employee_id, day, record.leave_request_id, request_id,
                )
                continue

            if (
                record.leave_request_id == request_id
                and record.status == AttendanceStatus.leave
                and record.is_leave
            ):
                continue

            if record.leave_request_id is None:
                record.status_before_leave = record.status
            record.status = AttendanceStatus.leave
            record.is_leave = True
            record.leave_request_id = request_id
            record.updated_at = now
            written += 1

        await db.flush()
        logger.debug(
            "leave projected: request_id=%s employee_id=%s days=%s..%s written=%d",
            request_id, employee_id, start_date, end_date, written,
        )
        return written

    @staticmethod
    async def revert_leave(
        db: AsyncSession,
        employee_id: uuid.UUID,
        request_id: uuid.UUID,
    ) -> int:
        """Clear the leave tag from every row written for *request_id*.

        A row the leave took over gets its previous status back; a row the
        leave created falls back to what its own check-in / check-out
        times justify, or ABSENT. Returns the number of rows reverted.
        """

        now = datetime.now(timezone.utc)
        result = await db.execute(
            select(AttendanceRecord).where(
                AttendanceRecord.employee_id == employee_id,
                AttendanceRecord.leave_request_id == request_id,
            )
        )
        records = result.scalars().all()

        for record in records:
            record.leave_request_id = None
            record.is_leave = False
            record.status = record.status_before_leave or AttendanceService.neutral_status(record)
            record.status_before_leave = None
            record.updated_at = now

        await db.flush()
        logger.debug(
            "leave projection reverted: request_id=%s employee_id=%s reverted=%d",
            request_id, employee_id, len(records),
        )
        return len(records)
