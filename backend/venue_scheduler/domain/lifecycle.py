from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Mapping

from ..models import Reservation, ReservationStatus
from .errors import InvalidTransition

ACTIVE_STATUSES: frozenset[ReservationStatus] = frozenset(
    {ReservationStatus.REQUESTED, ReservationStatus.APPROVED}
)
TERMINAL_STATUSES: frozenset[ReservationStatus] = frozenset(
    {ReservationStatus.REJECTED, ReservationStatus.CANCELLED, ReservationStatus.COMPLETED}
)

TRANSITIONS: Mapping[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.REQUESTED: frozenset(
        {ReservationStatus.APPROVED, ReservationStatus.REJECTED, ReservationStatus.CANCELLED}
    ),
    ReservationStatus.APPROVED: frozenset({ReservationStatus.CANCELLED, ReservationStatus.COMPLETED}),
    ReservationStatus.REJECTED: frozenset(),
    ReservationStatus.CANCELLED: frozenset(),
    ReservationStatus.COMPLETED: frozenset(),
}


class NotificationEvent(StrEnum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class SideEffects:
    notify: NotificationEvent | None = None
    accrue_loyalty: bool = False


def ensure_transition(current: ReservationStatus, target: ReservationStatus) -> None:
    if target not in TRANSITIONS[current]:
        reason = "reservation is already closed" if current in TERMINAL_STATUSES else None
        raise InvalidTransition(current, target, reason)


def ensure_timing(
    current: ReservationStatus,
    target: ReservationStatus,
    *,
    starts_at: datetime,
    now: datetime,
) -> None:
    """Cancellation only before the scheduled start, completion only after it."""
    if target == ReservationStatus.CANCELLED and now >= starts_at:
        raise InvalidTransition(current, target, "scheduled time has already passed")
    if target == ReservationStatus.COMPLETED and now < starts_at:
        raise InvalidTransition(current, target, "scheduled time has not elapsed yet")


def releases_slot(target: ReservationStatus) -> bool:
    return target not in ACTIVE_STATUSES


def side_effects(reservation: Reservation, target: ReservationStatus) -> SideEffects:
    if target == ReservationStatus.COMPLETED:
        return SideEffects(accrue_loyalty=reservation.has_paid_financial_record)
    if target in (ReservationStatus.APPROVED, ReservationStatus.REJECTED, ReservationStatus.CANCELLED):
        return SideEffects(notify=NotificationEvent(target.value))
    return SideEffects()
