from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date, time
from typing import AsyncIterator, Collection, List

from sqlalchemy import Select, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..domain.errors import StoreFailure
from ..domain.lifecycle import ACTIVE_STATUSES
from ..domain.repositories import BookingStore, StoreScope, UserRepository
from ..domain.validation import ReservationDraft
from ..models import Reservation, ReservationStatus, User, UserRole
from ..utils.time import utc_now_naive

ADMIN_ROLES = (UserRole.ADMIN, UserRole.SUPER_ADMIN)


class SqlAlchemyBookingStore(BookingStore):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(
        self,
        draft: ReservationDraft,
        *,
        reservation_id: str,
        user_id: int | None,
        status: ReservationStatus,
    ) -> Reservation:
        now = utc_now_naive()
        reservation = Reservation(
            id=reservation_id,
            user_id=user_id,
            resource_type=draft.resource_type,
            date=draft.date,
            time=draft.time,
            guest_count=draft.guest_count,
            email=draft.email,
            phone=draft.phone,
            title=draft.title,
            special_requests=draft.special_requests,
            amount=draft.amount,
            currency=draft.currency,
            paid=draft.paid,
            status=status,
            version=1,
            created_at=now,
            updated_at=now,
        )
        self.session.add(reservation)
        await self.session.flush()
        return reservation

    async def get(self, reservation_id: str) -> Reservation | None:
        return await self.session.get(Reservation, reservation_id)

    async def get_for_update(self, reservation_id: str) -> Reservation | None:
        result = await self.session.scalar(
            select(Reservation).where(Reservation.id == reservation_id).with_for_update()
        )
        return result if isinstance(result, Reservation) else None

    async def save(self, reservation: Reservation) -> Reservation:
        self.session.add(reservation)
        await self.session.flush()
        return reservation

    async def list_active_at(self, day: date, at: time) -> List[Reservation]:
        stmt = select(Reservation).where(
            Reservation.date == day,
            Reservation.time == at,
            Reservation.status.in_(list(ACTIVE_STATUSES)),
        )
        return list((await self.session.scalars(stmt)).all())

    async def list_by_date_range(
        self,
        start: date,
        end: date,
        statuses: Collection[ReservationStatus] | None = None,
    ) -> List[Reservation]:
        stmt: Select[tuple[Reservation]] = (
            select(Reservation)
            .where(Reservation.date >= start, Reservation.date <= end)
            .order_by(Reservation.date, Reservation.time)
        )
        if statuses:
            stmt = stmt.where(Reservation.status.in_(list(statuses)))
        return list((await self.session.scalars(stmt)).all())

    async def list_by_user(
        self,
        user_id: int,
        status: ReservationStatus | None = None,
    ) -> List[Reservation]:
        stmt: Select[tuple[Reservation]] = (
            select(Reservation)
            .where(Reservation.user_id == user_id)
            .order_by(Reservation.date.desc(), Reservation.time.desc())
        )
        if status is not None:
            stmt = stmt.where(Reservation.status == status)
        return list((await self.session.scalars(stmt)).all())


class SqlAlchemyUserRepository(UserRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def role(self, user_id: int) -> UserRole | None:
        """The user's role, or None when there is no such user."""
        return await self.session.scalar(select(User.role).where(User.id == user_id))

    async def add_loyalty_points(self, user_id: int, points: int) -> int:
        await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(loyalty_points=User.loyalty_points + points, updated_at=utc_now_naive())
        )
        total = await self.session.scalar(select(User.loyalty_points).where(User.id == user_id))
        return int(total or 0)


def sqlalchemy_store_scope(session_factory: async_sessionmaker[AsyncSession]) -> StoreScope:
    """One session and one transaction per scope; database errors surface as StoreFailure."""

    @asynccontextmanager
    async def scope() -> AsyncIterator[BookingStore]:
        try:
            async with session_factory() as session:
                async with session.begin():
                    yield SqlAlchemyBookingStore(session)
        except SQLAlchemyError as exc:
            raise StoreFailure(exc) from exc

    return scope
