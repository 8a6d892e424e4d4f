from __future__ import annotations

from dataclasses import dataclass
from datetime import time
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from ..models import ReservationStatus
    from .slots import SlotKey


class SchedulingError(Exception):
    """Base class for scheduling-engine errors."""

    retryable = False


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


class ValidationFailed(SchedulingError):
    def __init__(self, field_errors: Sequence[FieldError]) -> None:
        self.field_errors = tuple(field_errors)
        super().__init__("; ".join(f"{e.field}: {e.message}" for e in self.field_errors))

    def as_dict(self) -> dict[str, str]:
        """First message per field, in check order."""
        result: dict[str, str] = {}
        for error in self.field_errors:
            result.setdefault(error.field, error.message)
        return result


class SlotConflict(SchedulingError):
    """The requested (date, time) is already held by another active reservation.

    Only the key and the occupant's id are carried; contact data of the
    competing reservation never leaves the engine.
    """

    def __init__(
        self,
        conflicting_reservation_id: str,
        key: "SlotKey",
        suggested_times: Sequence[time] = (),
    ) -> None:
        self.conflicting_reservation_id = conflicting_reservation_id
        self.key = key
        self.suggested_times = tuple(suggested_times)
        super().__init__(f"slot {key.date.isoformat()} {key.time.strftime('%H:%M')} is already booked")


class InvalidTransition(SchedulingError):
    def __init__(self, current: "ReservationStatus", target: "ReservationStatus", reason: str | None = None) -> None:
        self.current = current
        self.target = target
        self.reason = reason
        message = f"cannot move reservation from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class VersionConflict(SchedulingError):
    """``expected`` is None when the caller sent no version and the row kept changing under it."""

    def __init__(self, expected: int | None, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        if expected is None:
            super().__init__(f"reservation kept changing while being updated (now at version {actual})")
        else:
            super().__init__(f"version mismatch (expected {expected}, found {actual})")


class ReservationNotFound(SchedulingError):
    def __init__(self, reservation_id: str) -> None:
        self.reservation_id = reservation_id
        super().__init__(f"reservation {reservation_id} not found")


class StoreFailure(SchedulingError):
    retryable = True

    def __init__(self, cause: BaseException | str) -> None:
        self.cause = cause
        super().__init__(f"booking store failure: {cause}")


class AdmissionTimeout(SchedulingError):
    retryable = True

    def __init__(self, stage: str) -> None:
        self.stage = stage
        super().__init__(f"timed out while waiting for {stage}")
