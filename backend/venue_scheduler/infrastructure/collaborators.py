from __future__ import annotations

import logging
from decimal import ROUND_FLOOR, Decimal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..domain.lifecycle import NotificationEvent
from ..models import Reservation
from .repositories import SqlAlchemyUserRepository

logger = logging.getLogger(__name__)


class LoggingNotificationDispatcher:
    """Hands reservation events to the log; a mail or push sender plugs in at the same seam."""

    async def dispatch(self, reservation_id: str, event: NotificationEvent) -> None:
        logger.info("Reservation %s notification: %s", reservation_id, event.value)


def loyalty_points_for(amount: Decimal, currency_per_point: int) -> int:
    if amount <= 0:
        return 0
    return int((amount / Decimal(currency_per_point)).to_integral_value(rounding=ROUND_FLOOR))


class SqlAlchemyLoyaltyLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, currency_per_point: int) -> None:
        self.session_factory = session_factory
        self.currency_per_point = currency_per_point

    async def accrue(self, reservation: Reservation) -> None:
        if reservation.user_id is None or reservation.amount is None:
            return
        points = loyalty_points_for(reservation.amount, self.currency_per_point)
        if points == 0:
            return
        async with self.session_factory() as session:
            async with session.begin():
                total = await SqlAlchemyUserRepository(session).add_loyalty_points(reservation.user_id, points)
        logger.info(
            "Accrued %s loyalty points to user %s for reservation %s (total %s)",
            points,
            reservation.user_id,
            reservation.id,
            total,
        )
