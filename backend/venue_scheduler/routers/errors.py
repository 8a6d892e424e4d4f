from typing import Any, Optional

from fastapi import HTTPException, status

from ..domain.errors import (
    AdmissionTimeout,
    InvalidTransition,
    ReservationNotFound,
    SchedulingError,
    SlotConflict,
    StoreFailure,
    ValidationFailed,
    VersionConflict,
)
from ..schemas import ConflictDetail

REFRESH_AND_RETRY = "reservation changed; refresh and retry"


def to_http(exc: SchedulingError) -> HTTPException:
    """Map an engine error to the HTTP response the client sees."""
    if isinstance(exc, ValidationFailed):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": "validation failed", "errors": exc.as_dict()},
        )
    if isinstance(exc, SlotConflict):
        body = ConflictDetail(
            message="slot already booked",
            date=exc.key.date,
            time=exc.key.time,
            suggested_times=[t.strftime("%H:%M") for t in exc.suggested_times],
        )
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=body.model_dump(mode="json"))
    if isinstance(exc, InvalidTransition):
        detail: dict[str, Any] = {"message": REFRESH_AND_RETRY, "status": str(exc.current)}
        if exc.reason:
            detail["reason"] = exc.reason
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(exc, VersionConflict):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail={"message": REFRESH_AND_RETRY})
    if isinstance(exc, ReservationNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="reservation not found")
    if isinstance(exc, (StoreFailure, AdmissionTimeout)):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="booking temporarily unavailable, try again",
            headers={"Retry-After": "1"},
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="scheduling error")


def extract_version(if_match: Optional[str], payload: Optional[Any]) -> Optional[int]:
    """Expected version from ``If-Match`` (``"3"`` or ``W/"3"``), else from the body.

    None when neither carries one. Malformed or non-positive values are a 400.
    """
    if if_match:
        raw = if_match.strip()
        if raw.startswith("W/"):
            raw = raw[2:]
        raw = raw.strip('"')
        try:
            value = int(raw)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid If-Match header")
        if value < 1:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="version must be >= 1")
        return value
    version = getattr(payload, "version", None)
    if version is None:
        return None
    if version < 1:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="version must be >= 1")
    return int(version)

