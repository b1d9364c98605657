"""
Conflict detection for supplier time commitments.

Windows are half-open, ``[start, start + duration)``: a job ending at 12:00
does not clash with one starting at 12:00. Detection is advisory; callers
decide whether a clash blocks anything (see acceptance.py).
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from uuid import UUID

from dispatch.crud import booking_crud
from dispatch.models import Booking


def intervals_overlap(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    return start_a < end_b and end_a > start_b


def window(day: date, start_time: time, duration_hours: float) -> tuple[datetime, datetime]:
    start = datetime.combine(day, start_time)
    return start, start + timedelta(hours=duration_hours)


async def find_conflicts(
    supplier_id: UUID,
    day: date,
    start_time: time,
    duration_hours: float,
    exclude_booking_id: str | None = None,
) -> list[Booking]:
    """Active bookings of `supplier_id` whose windows overlap the proposed one."""
    new_start, new_end = window(day, start_time, duration_hours)
    commitments = await booking_crud.list_supplier_commitments(
        supplier_id, day, exclude_booking_id=exclude_booking_id
    )
    return [
        b
        for b in commitments
        if intervals_overlap(new_start, new_end, b.window_start, b.window_end)
    ]


async def has_conflict(
    supplier_id: UUID,
    day: date,
    start_time: time,
    duration_hours: float,
    exclude_booking_id: str | None = None,
) -> bool:
    return bool(
        await find_conflicts(
            supplier_id, day, start_time, duration_hours, exclude_booking_id
        )
    )


async def find_booking_conflicts(supplier_id: UUID, booking: Booking) -> list[Booking]:
    """Conflicts `supplier_id` would take on by committing to `booking`."""
    return await find_conflicts(
        supplier_id,
        booking.date,
        booking.window_start.time(),
        booking.duration_hours,
        exclude_booking_id=booking.id,
    )


def describe_conflict(booking: Booking) -> dict:
    return {
        "booking_id": booking.id,
        "item_id": booking.item_id,
        "item_category": booking.item_category,
        "date": booking.date.isoformat(),
        "start_time": booking.start_time,
        "end": booking.window_end.strftime("%H:%M"),
        "status": str(booking.status),
    }
