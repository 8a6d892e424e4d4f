from __future__ import annotations

from typing import Protocol

from ..models import Reservation
from .lifecycle import NotificationEvent


class NotificationDispatcher(Protocol):
    async def dispatch(self, reservation_id: str, event: NotificationEvent) -> None: ...


class LoyaltyLedger(Protocol):
    async def accrue(self, reservation: Reservation) -> None: ...
