from dataclasses import dataclass
from datetime import time
from typing import Collection, Union

from .availability import AvailabilityIndex
from .slots import SlotGrid, SlotKey


@dataclass(frozen=True)
class Admit:
    key: SlotKey


@dataclass(frozen=True)
class Conflict:
    key: SlotKey
    reservation_id: str


Decision = Union[Admit, Conflict]


def resolve(candidate: SlotKey, index: AvailabilityIndex, *, exclude: str | None = None) -> Decision:
    """Pure conflict decision for a requested (date, time).

    Any active occupant of the same (date, time) other than ``exclude`` rejects the
    candidate; which occupant is named is unspecified. A resubmission of the
    requester's own pending booking is a conflict too, nothing is merged.
    """
    occupants = sorted(index.occupants(candidate) - {exclude})
    if occupants:
        return Conflict(key=candidate, reservation_id=occupants[0])
    return Admit(key=candidate)


def suggest_alternatives(
    candidate: SlotKey,
    occupied: Collection[time],
    grid: SlotGrid,
    *,
    limit: int = 3,
) -> list[time]:
    """Free grid times on the candidate's date, nearest after the request first, then before it."""
    taken = set(occupied)
    later: list[time] = []
    earlier: list[time] = []
    for slot_time in grid.times():
        if slot_time == candidate.time or slot_time in taken:
            continue
        (later if slot_time > candidate.time else earlier).append(slot_time)
    ordered = later + list(reversed(earlier))
    return ordered[:limit]
