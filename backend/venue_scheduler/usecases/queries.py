from __future__ import annotations

from datetime import date, datetime, time
from typing import List, Optional, TypedDict

from ..domain.lifecycle import ACTIVE_STATUSES
from ..domain.repositories import BookingStore
from ..domain.slots import SlotGrid
from ..models import Reservation, ReservationStatus


class TimeAvailability(TypedDict):
    time: time
    available: bool


async def list_customer_reservations(
    store: BookingStore,
    *,
    user_id: int,
    status: ReservationStatus | None = None,
) -> List[Reservation]:
    return await store.list_by_user(user_id, status)


async def get_customer_reservation(
    store: BookingStore,
    *,
    reservation_id: str,
    user_id: int,
) -> Optional[Reservation]:
    reservation = await store.get(reservation_id)
    if reservation is None or reservation.user_id != user_id:
        return None
    return reservation


async def list_reservations(
    store: BookingStore,
    *,
    start: date,
    end: date,
    status: ReservationStatus | None = None,
) -> List[Reservation]:
    if end < start:
        raise ValueError("end must not be before start")
    return await store.list_by_date_range(start, end, [status] if status is not None else None)


async def list_completed_paid(store: BookingStore, *, start: date, end: date) -> List[Reservation]:
    """Completed reservations that carry a paid amount, the basis for loyalty accrual."""
    rows = await store.list_by_date_range(start, end, [ReservationStatus.COMPLETED])
    return [r for r in rows if r.has_paid_financial_record]


async def day_availability(
    store: BookingStore,
    *,
    day: date,
    grid: SlotGrid,
    now: datetime | None = None,
) -> List[TimeAvailability]:
    """Free/taken flag per grid time on ``day``.

    Only times are reported; nothing about who holds a taken slot.
    Times at or before ``now`` on the same day are reported as taken.
    """
    active = await store.list_by_date_range(day, day, ACTIVE_STATUSES)
    occupied = {r.time for r in active}
    result: List[TimeAvailability] = []
    for slot_time in grid.times():
        passed = now is not None and (day < now.date() or (day == now.date() and slot_time <= now.time()))
        result.append({"time": slot_time, "available": slot_time not in occupied and not passed})
    return result
