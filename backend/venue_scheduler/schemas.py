import datetime as dt
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_serializer

from .models import Reservation, ReservationStatus, ResourceType


class _ClockModel(BaseModel):
    @field_serializer("time", check_fields=False)
    def _ser_time(self, value: dt.time) -> str:
        return value.strftime("%H:%M")


class ReservationRead(_ClockModel):
    reservation_id: str
    user_id: Optional[int]
    resource_type: ResourceType
    date: dt.date
    time: dt.time
    guest_count: Optional[int]
    email: str
    phone: str
    title: Optional[str]
    special_requests: Optional[str]
    admin_notes: Optional[str]
    amount: Optional[Decimal]
    currency: Optional[str]
    paid: bool
    status: ReservationStatus
    version: int

    @classmethod
    def from_db(cls, *, reservation: Reservation) -> "ReservationRead":
        return cls(
            reservation_id=reservation.id,
            user_id=reservation.user_id,
            resource_type=reservation.resource_type,
            date=reservation.date,
            time=reservation.time,
            guest_count=reservation.guest_count,
            email=reservation.email,
            phone=reservation.phone,
            title=reservation.title,
            special_requests=reservation.special_requests,
            admin_notes=reservation.admin_notes,
            amount=reservation.amount,
            currency=reservation.currency,
            paid=bool(reservation.paid),
            status=reservation.status,
            version=reservation.version,
        )


class ReservationCancel(BaseModel):
    version: Optional[int] = Field(default=None, ge=1)


class ReservationDecision(BaseModel):
    """Approve/reject body; ``notes`` is the rejection reason on reject."""

    version: Optional[int] = Field(default=None, ge=1)
    notes: Optional[str] = Field(default=None, max_length=2000)


class ReservationReschedule(BaseModel):
    # Kept as raw strings so the slot rules report errors the same way as admission
    date: str
    time: str
    version: Optional[int] = Field(default=None, ge=1)


class AvailabilitySlot(_ClockModel):
    time: dt.time
    available: bool


class DayAvailability(BaseModel):
    date: dt.date
    slots: List[AvailabilitySlot]


class ConflictDetail(_ClockModel):
    """Body of a 409 on a taken slot. Carries no data about the competing booking."""

    message: str
    date: dt.date
    time: dt.time
    suggested_times: List[str]
