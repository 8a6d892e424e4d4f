import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime, time
from typing import Any, AsyncIterator, Collection, Optional
from zoneinfo import ZoneInfo

from venue_scheduler.domain.errors import StoreFailure
from venue_scheduler.domain.lifecycle import ACTIVE_STATUSES, NotificationEvent
from venue_scheduler.domain.slots import SlotGrid
from venue_scheduler.domain.validation import ReservationDraft
from venue_scheduler.models import Reservation, ReservationStatus, ResourceType

VENUE_TZ = ZoneInfo("Europe/Belgrade")
NOW = datetime(2025, 5, 20, 10, 0, tzinfo=VENUE_TZ)
GRID = SlotGrid(time(9, 0), time(21, 0), 30)

_COLUMNS = [c.key for c in Reservation.__table__.columns]


def clone(reservation: Reservation) -> Reservation:
    return Reservation(**{name: getattr(reservation, name) for name in _COLUMNS})


def make_reservation(
    reservation_id: str = "r1",
    *,
    day: date = date(2025, 6, 1),
    at: time = time(14, 0),
    status: ReservationStatus = ReservationStatus.REQUESTED,
    user_id: Optional[int] = 7,
    resource_type: ResourceType = ResourceType.CAFE,
    version: int = 1,
    **overrides: Any,
) -> Reservation:
    stamp = datetime(2025, 5, 1, 8, 0)
    values: dict[str, Any] = {
        "id": reservation_id,
        "user_id": user_id,
        "resource_type": resource_type,
        "date": day,
        "time": at,
        "guest_count": 4,
        "email": "parent@family.org",
        "phone": "+381 64 123 4567",
        "title": None,
        "special_requests": None,
        "admin_notes": None,
        "amount": None,
        "currency": None,
        "paid": False,
        "status": status,
        "version": version,
        "created_at": stamp,
        "updated_at": stamp,
    }
    values.update(overrides)
    return Reservation(**values)


class FakeBookingStore:
    """In-memory booking store with unit-of-work semantics.

    Writes are staged per scope and only become visible when the scope exits
    cleanly. Every call yields to the loop so concurrent callers interleave.
    ``fail_on`` / ``hang_on`` hold method names that raise StoreFailure or
    never answer.
    """

    def __init__(self, rows: Collection[Reservation] = ()) -> None:
        self.rows: dict[str, Reservation] = {r.id: clone(r) for r in rows}
        self.fail_on: set[str] = set()
        self.hang_on: set[str] = set()
        self.calls: list[str] = []
        self.commits = 0

    @asynccontextmanager
    async def scope(self) -> AsyncIterator["_FakeUnit"]:
        unit = _FakeUnit(self)
        yield unit
        await asyncio.sleep(0)
        self.rows.update(unit.staged)
        if unit.staged:
            self.commits += 1

    def scope_unit(self) -> "_FakeUnit":
        """A unit outside any scope, for read-only query tests."""
        return _FakeUnit(self)

    def active_at(self, day: date, at: time) -> list[Reservation]:
        return [r for r in self.rows.values() if r.date == day and r.time == at and r.status in ACTIVE_STATUSES]


class _FakeUnit:
    def __init__(self, owner: FakeBookingStore) -> None:
        self.owner = owner
        self.staged: dict[str, Reservation] = {}

    async def _enter(self, name: str) -> None:
        self.owner.calls.append(name)
        await asyncio.sleep(0)
        if name in self.owner.hang_on:
            await asyncio.sleep(3600)
        if name in self.owner.fail_on:
            raise StoreFailure(f"injected failure in {name}")

    def _view(self) -> dict[str, Reservation]:
        merged = dict(self.owner.rows)
        merged.update(self.staged)
        return merged

    async def create(
        self,
        draft: ReservationDraft,
        *,
        reservation_id: str,
        user_id: Optional[int],
        status: ReservationStatus,
    ) -> Reservation:
        await self._enter("create")
        reservation = make_reservation(
            reservation_id,
            day=draft.date,
            at=draft.time,
            status=status,
            user_id=user_id,
            resource_type=draft.resource_type,
            guest_count=draft.guest_count,
            email=draft.email,
            phone=draft.phone,
            title=draft.title,
            special_requests=draft.special_requests,
            amount=draft.amount,
            currency=draft.currency,
            paid=draft.paid,
        )
        self.staged[reservation_id] = reservation
        return clone(reservation)

    async def get(self, reservation_id: str) -> Optional[Reservation]:
        await self._enter("get")
        row = self._view().get(reservation_id)
        return clone(row) if row is not None else None

    async def get_for_update(self, reservation_id: str) -> Optional[Reservation]:
        await self._enter("get_for_update")
        row = self._view().get(reservation_id)
        return clone(row) if row is not None else None

    async def save(self, reservation: Reservation) -> Reservation:
        await self._enter("save")
        self.staged[reservation.id] = clone(reservation)
        return reservation

    async def list_active_at(self, day: date, at: time) -> list[Reservation]:
        await self._enter("list_active_at")
        return [
            clone(r) for r in self._view().values() if r.date == day and r.time == at and r.status in ACTIVE_STATUSES
        ]

    async def list_by_date_range(
        self,
        start: date,
        end: date,
        statuses: Optional[Collection[ReservationStatus]] = None,
    ) -> list[Reservation]:
        await self._enter("list_by_date_range")
        rows = [
            r
            for r in self._view().values()
            if start <= r.date <= end and (not statuses or r.status in statuses)
        ]
        return [clone(r) for r in sorted(rows, key=lambda r: (r.date, r.time))]

    async def list_by_user(self, user_id: int, status: Optional[ReservationStatus] = None) -> list[Reservation]:
        await self._enter("list_by_user")
        rows = [r for r in self._view().values() if r.user_id == user_id and (status is None or r.status == status)]
        return [clone(r) for r in sorted(rows, key=lambda r: (r.date, r.time), reverse=True)]


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.events: list[tuple[str, NotificationEvent]] = []
        self.fail = fail

    async def dispatch(self, reservation_id: str, event: NotificationEvent) -> None:
        self.events.append((reservation_id, event))
        if self.fail:
            raise ConnectionError("mail relay down")


class RecordingLedger:
    def __init__(self) -> None:
        self.accrued: list[str] = []

    async def accrue(self, reservation: Reservation) -> None:
        self.accrued.append(reservation.id)


def booking_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "resource_type": "CAFE",
        "date": "2025-06-01",
        "time": "14:00",
        "email": "parent@family.org",
        "phone": "+381 64 123 4567",
        "guest_count": 4,
    }
    payload.update(overrides)
    return payload
