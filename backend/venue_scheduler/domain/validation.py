from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

from ..models import ResourceType
from .errors import FieldError
from .slots import Slot, SlotGrid, SlotKey, parse_time

_PHONE_CHARS = re.compile(r"^\+?[0-9\s\-.()]+$")
MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15
MIN_TITLE_LENGTH = 3


@dataclass(frozen=True)
class ReservationDraft:
    resource_type: ResourceType
    date: dt.date
    time: dt.time
    email: str
    phone: str
    guest_count: Optional[int] = None
    title: Optional[str] = None
    special_requests: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    paid: bool = False

    @property
    def slot(self) -> Slot:
        return Slot(self.resource_type, self.date, self.time)

    @property
    def key(self) -> SlotKey:
        return SlotKey(self.date, self.time)


@dataclass(frozen=True)
class ValidationOutcome:
    draft: Optional[ReservationDraft] = None
    errors: tuple[FieldError, ...] = ()

    @property
    def ok(self) -> bool:
        return self.draft is not None and not self.errors


# Slot checks shared by new bookings and reschedules. They read today/grid from
# the validation context so the models stay pure.


def _not_in_past(value: dt.date, info: ValidationInfo) -> dt.date:
    today = (info.context or {}).get("today")
    if today is not None and value < today:
        raise PydanticCustomError("date_in_past", "in the past")
    return value


def _parse_clock(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return parse_time(value)
        except ValueError:
            raise PydanticCustomError("time_format", "Invalid time format (HH:MM)") from None
    return value


def _on_grid(value: dt.time, info: ValidationInfo) -> dt.time:
    grid: SlotGrid | None = (info.context or {}).get("grid")
    if grid is not None and not grid.contains(value):
        raise PydanticCustomError("time_off_grid", "Time is not an available booking slot")
    return value


class BookingRequest(BaseModel):
    """Raw booking form. Each field is checked on its own so all errors surface together."""

    # Both snake_case and the web form's camelCase names are accepted; anything else is an error.
    model_config = ConfigDict(
        str_strip_whitespace=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
        loc_by_alias=False,
    )

    title: Optional[str] = None
    email: EmailStr
    phone: str
    date: dt.date
    time: dt.time
    guest_count: Optional[int] = None
    resource_type: ResourceType
    special_requests: Optional[str] = None
    amount: Optional[Decimal] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    paid: bool = False

    _check_date = field_validator("date")(_not_in_past)
    _parse_time = field_validator("time", mode="before")(_parse_clock)
    _check_time = field_validator("time")(_on_grid)

    @field_validator("title")
    @classmethod
    def _title_length(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        if len(value) < MIN_TITLE_LENGTH:
            raise PydanticCustomError(
                "title_too_short", "Title must be at least {min_length} characters", {"min_length": MIN_TITLE_LENGTH}
            )
        return value

    @field_validator("phone")
    @classmethod
    def _phone_digits(cls, value: str) -> str:
        if not _PHONE_CHARS.match(value):
            raise PydanticCustomError("phone_invalid", "Invalid phone number")
        digits = re.sub(r"\D", "", value)
        # 00 is the dialling prefix of an international number, not part of it
        if not value.startswith("+") and digits.startswith("00"):
            digits = digits[2:]
        if len(digits) < MIN_PHONE_DIGITS:
            raise PydanticCustomError(
                "phone_too_short", "Phone number must have at least {digits} digits", {"digits": MIN_PHONE_DIGITS}
            )
        if len(digits) > MAX_PHONE_DIGITS:
            raise PydanticCustomError(
                "phone_too_long", "Phone number must have at most {digits} digits", {"digits": MAX_PHONE_DIGITS}
            )
        return value

    @field_validator("guest_count", mode="before")
    @classmethod
    def _reject_bool(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise PydanticCustomError("int_type", "Input should be a valid integer")
        return value

    @field_validator("guest_count")
    @classmethod
    def _guest_range(cls, value: Optional[int], info: ValidationInfo) -> Optional[int]:
        if value is None:
            return None
        maximum = (info.context or {}).get("max_guest_count", 100)
        if value < 1:
            raise PydanticCustomError("guest_count_min", "At least 1 guest required")
        if value > maximum:
            raise PydanticCustomError("guest_count_max", "Maximum {maximum} guests", {"maximum": maximum})
        return value

    def to_draft(self) -> ReservationDraft:
        return ReservationDraft(
            resource_type=self.resource_type,
            date=self.date,
            time=self.time,
            email=str(self.email),
            phone=self.phone,
            guest_count=self.guest_count,
            title=self.title,
            special_requests=self.special_requests or None,
            amount=self.amount,
            currency=self.currency.upper() if self.currency else None,
            paid=self.paid,
        )


class SlotChange(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    date: dt.date
    time: dt.time

    _check_date = field_validator("date")(_not_in_past)
    _parse_time = field_validator("time", mode="before")(_parse_clock)
    _check_time = field_validator("time")(_on_grid)

    @property
    def key(self) -> SlotKey:
        return SlotKey(self.date, self.time)


def _field_errors(exc: ValidationError) -> tuple[FieldError, ...]:
    errors: list[FieldError] = []
    for error in exc.errors():
        loc = error.get("loc") or ("request",)
        message = "Unknown field" if error["type"] == "extra_forbidden" else error["msg"]
        errors.append(FieldError(field=str(loc[0]), message=message))
    return tuple(errors)


def validate_booking_request(
    raw: Mapping[str, Any],
    *,
    today: dt.date,
    grid: SlotGrid,
    max_guest_count: int = 100,
) -> ValidationOutcome:
    """Normalize a raw booking request or collect every field-level error. Never raises for bad input."""
    if not isinstance(raw, Mapping):
        return ValidationOutcome(errors=(FieldError("request", "Booking request must be an object"),))
    try:
        request = BookingRequest.model_validate(
            dict(raw),
            context={"today": today, "grid": grid, "max_guest_count": max_guest_count},
        )
    except ValidationError as exc:
        return ValidationOutcome(errors=_field_errors(exc))
    return ValidationOutcome(draft=request.to_draft())


def validate_slot_change(
    new_date: Any,
    new_time: Any,
    *,
    today: dt.date,
    grid: SlotGrid,
) -> tuple[SlotKey | None, tuple[FieldError, ...]]:
    try:
        change = SlotChange.model_validate({"date": new_date, "time": new_time}, context={"today": today, "grid": grid})
    except ValidationError as exc:
        return None, _field_errors(exc)
    return change.key, ()
