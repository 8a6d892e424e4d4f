from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterator
from zoneinfo import ZoneInfo

from ..models import ResourceType

_TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")


@dataclass(frozen=True, order=True)
class SlotKey:
    """Conflict identity of a reservation.

    Every resource type shares one timeline, so the key is only (date, time).
    """

    date: date
    time: time

    def starts_at(self, tz: ZoneInfo) -> datetime:
        return datetime.combine(self.date, self.time, tzinfo=tz)

    def __str__(self) -> str:
        return f"{self.date.isoformat()} {self.time.strftime('%H:%M')}"


@dataclass(frozen=True)
class Slot:
    resource_type: ResourceType
    date: date
    time: time

    @property
    def key(self) -> SlotKey:
        return SlotKey(self.date, self.time)

    def __str__(self) -> str:
        return f"{self.resource_type} {self.key}"


def parse_time(value: str) -> time:
    """Parse ``H:MM`` / ``HH:MM``. Raises ValueError on anything else."""
    match = _TIME_PATTERN.match(value.strip())
    if match is None:
        raise ValueError(f"invalid time {value!r}")
    return time(int(match.group(1)), int(match.group(2)))


@dataclass(frozen=True)
class SlotGrid:
    """Bookable start times: ``opening`` inclusive to ``closing`` exclusive."""

    opening: time
    closing: time
    interval_minutes: int = 30

    def __post_init__(self) -> None:
        if self.interval_minutes <= 0:
            raise ValueError("interval_minutes must be positive")
        if self.opening >= self.closing:
            raise ValueError("opening must be earlier than closing")

    def times(self) -> Iterator[time]:
        anchor = date(2000, 1, 1)
        current = datetime.combine(anchor, self.opening)
        end = datetime.combine(anchor, self.closing)
        step = timedelta(minutes=self.interval_minutes)
        while current < end:
            yield current.time()
            current += step

    def contains(self, value: time) -> bool:
        if value.second or value.microsecond:
            return False
        if not (self.opening <= value < self.closing):
            return False
        offset = (value.hour * 60 + value.minute) - (self.opening.hour * 60 + self.opening.minute)
        return offset % self.interval_minutes == 0
