"""
Slot conflict detection for appointment-enabled listings.

Ranges are half-open ``[start, end)`` wall-clock strings on one calendar day,
so touching ranges (10:00-10:30 and 10:30-11:00) do not overlap. The detector
takes no locks; callers serialize per (listing, day) with ``crud.slot_lock``
and pass the session holding that lock.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Appointment, ReservationStatus
from app.schemas import TimeRange

# Appointments in these states hold their time slot
LIVE_APPOINTMENT_STATUSES = (
    ReservationStatus.PENDING,
    ReservationStatus.CONFIRMED,
    ReservationStatus.IN_PROGRESS,
)


def ranges_overlap(start: str, end: str, other_start: str, other_end: str) -> bool:
    """Strict half-open overlap of two zero-padded ``HH:MM`` ranges."""
    return other_start < end and start < other_end


def _live_on(listing_id: UUID, day: date) -> list:
    return [
        Appointment.listing_id == listing_id,
        Appointment.appointment_date == day,
        Appointment.status.in_(LIVE_APPOINTMENT_STATUSES),
    ]


async def has_conflict(
    session: AsyncSession,
    listing_id: UUID,
    day: date,
    start: str,
    end: str,
    exclude_id: UUID | None = None,
) -> bool:
    """Return True if a live appointment on the listing overlaps ``[start, end)``."""
    conditions = _live_on(listing_id, day)
    if exclude_id is not None:
        conditions.append(Appointment.id != exclude_id)
    rows = await session.execute(
        select(Appointment.start_time, Appointment.end_time).where(*conditions)
    )
    return any(
        ranges_overlap(start, end, other_start, other_end) for other_start, other_end in rows
    )


async def booked_ranges(session: AsyncSession, listing_id: UUID, day: date) -> list[TimeRange]:
    """Time slots held by live appointments on ``day``; no user info exposed."""
    rows = await session.execute(
        select(Appointment.start_time, Appointment.end_time)
        .where(*_live_on(listing_id, day))
        .order_by(Appointment.start_time)
    )
    return [TimeRange(start_time=start, end_time=end) for start, end in rows]
