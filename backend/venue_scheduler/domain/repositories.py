from __future__ import annotations

from datetime import date, time
from typing import AsyncContextManager, Callable, Collection, Protocol

from ..models import Reservation, ReservationStatus, UserRole
from .validation import ReservationDraft


class BookingStore(Protocol):
    async def create(
        self,
        draft: ReservationDraft,
        *,
        reservation_id: str,
        user_id: int | None,
        status: ReservationStatus,
    ) -> Reservation: ...

    async def get(self, reservation_id: str) -> Reservation | None: ...

    async def get_for_update(self, reservation_id: str) -> Reservation | None: ...

    async def save(self, reservation: Reservation) -> Reservation: ...

    async def list_active_at(self, day: date, at: time) -> list[Reservation]: ...

    async def list_by_date_range(
        self,
        start: date,
        end: date,
        statuses: Collection[ReservationStatus] | None = None,
    ) -> list[Reservation]: ...

    async def list_by_user(
        self,
        user_id: int,
        status: ReservationStatus | None = None,
    ) -> list[Reservation]: ...


class UserRepository(Protocol):
    async def role(self, user_id: int) -> UserRole | None: ...

    async def add_loyalty_points(self, user_id: int, points: int) -> int: ...


# Opens one unit of work: the yielded store commits when the block exits cleanly.
StoreScope = Callable[[], AsyncContextManager[BookingStore]]
