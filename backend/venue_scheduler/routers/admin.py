from datetime import date, timedelta
from typing import Any, Awaitable, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Path, Query, status

from ..deps import get_admin_user_id, get_admission_service, get_booking_store
from ..domain.errors import SchedulingError
from ..infrastructure.repositories import SqlAlchemyBookingStore
from ..models import Reservation, ReservationStatus
from ..schemas import ReservationCancel, ReservationDecision, ReservationRead, ReservationReschedule
from ..usecases import queries
from ..usecases.admission import AdmissionService
from ..utils.audit_log import AuditAction, emit_audit_log
from .errors import extract_version, to_http

router = APIRouter(prefix="/admin", tags=["admin"])

DEFAULT_WINDOW_DAYS = 30

_ACTIONS: dict[ReservationStatus, AuditAction] = {
    ReservationStatus.APPROVED: "reservation.approved",
    ReservationStatus.REJECTED: "reservation.rejected",
    ReservationStatus.CANCELLED: "reservation.cancelled",
    ReservationStatus.COMPLETED: "reservation.completed",
}


def _audit(**kwargs: Any) -> None:
    try:
        emit_audit_log(**kwargs)
    except RuntimeError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="failed to record audit log")


async def _apply(
    call: Awaitable[tuple[Reservation, ReservationStatus]],
    *,
    admin_id: int,
    message: Optional[str] = None,
) -> ReservationRead:
    try:
        updated, previous = await call
    except SchedulingError as exc:
        raise to_http(exc) from exc

    _audit(
        action=_ACTIONS[updated.status],
        initiator="admin",
        reservation_id=updated.id,
        user_id=updated.user_id,
        actor_id=admin_id,
        resource_type=updated.resource_type,
        date=updated.date,
        time=updated.time,
        status_from=previous,
        status_to=updated.status,
        version=updated.version,
        message=message,
    )
    return ReservationRead.from_db(reservation=updated)


@router.get("/reservations", response_model=List[ReservationRead])
async def list_reservations(
    status_filter: Optional[ReservationStatus] = Query(default=None, alias="status"),
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    store: SqlAlchemyBookingStore = Depends(get_booking_store),
    service: AdmissionService = Depends(get_admission_service),
    admin_id: int = Depends(get_admin_user_id),
) -> list[ReservationRead]:
    start = start or service.today()
    end = end or start + timedelta(days=DEFAULT_WINDOW_DAYS)
    try:
        rows = await queries.list_reservations(store, start=start, end=end, status=status_filter)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return [ReservationRead.from_db(reservation=r) for r in rows]


@router.get("/reports/completed-paid", response_model=List[ReservationRead])
async def list_completed_paid(
    start: date = Query(...),
    end: date = Query(...),
    store: SqlAlchemyBookingStore = Depends(get_booking_store),
    admin_id: int = Depends(get_admin_user_id),
) -> list[ReservationRead]:
    if end < start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end must not be before start")
    rows = await queries.list_completed_paid(store, start=start, end=end)
    return [ReservationRead.from_db(reservation=r) for r in rows]


@router.post("/reservations/{reservation_id}/approve", response_model=ReservationRead)
async def approve_reservation(
    reservation_id: str = Path(..., min_length=1, max_length=32),
    payload: Optional[ReservationDecision] = Body(default=None),
    if_match: Optional[str] = Header(default=None, alias="If-Match"),
    admin_id: int = Depends(get_admin_user_id),
    service: AdmissionService = Depends(get_admission_service),
) -> ReservationRead:
    version = extract_version(if_match, payload)
    notes = payload.notes if payload else None
    return await _apply(service.approve(reservation_id, notes=notes, version=version), admin_id=admin_id)


@router.post("/reservations/{reservation_id}/reject", response_model=ReservationRead)
async def reject_reservation(
    reservation_id: str = Path(..., min_length=1, max_length=32),
    payload: Optional[ReservationDecision] = Body(default=None),
    if_match: Optional[str] = Header(default=None, alias="If-Match"),
    admin_id: int = Depends(get_admin_user_id),
    service: AdmissionService = Depends(get_admission_service),
) -> ReservationRead:
    version = extract_version(if_match, payload)
    reason = payload.notes if payload else None
    return await _apply(
        service.reject(reservation_id, reason=reason, version=version),
        admin_id=admin_id,
        message=reason,
    )


@router.post("/reservations/{reservation_id}/cancel", response_model=ReservationRead)
async def cancel_reservation(
    reservation_id: str = Path(..., min_length=1, max_length=32),
    payload: Optional[ReservationCancel] = Body(default=None),
    if_match: Optional[str] = Header(default=None, alias="If-Match"),
    admin_id: int = Depends(get_admin_user_id),
    service: AdmissionService = Depends(get_admission_service),
) -> ReservationRead:
    version = extract_version(if_match, payload)
    return await _apply(service.cancel(reservation_id, version=version), admin_id=admin_id)


@router.post("/reservations/{reservation_id}/complete", response_model=ReservationRead)
async def complete_reservation(
    reservation_id: str = Path(..., min_length=1, max_length=32),
    payload: Optional[ReservationCancel] = Body(default=None),
    if_match: Optional[str] = Header(default=None, alias="If-Match"),
    admin_id: int = Depends(get_admin_user_id),
    service: AdmissionService = Depends(get_admission_service),
) -> ReservationRead:
    version = extract_version(if_match, payload)
    return await _apply(service.complete(reservation_id, version=version), admin_id=admin_id)


@router.post("/reservations/{reservation_id}/reschedule", response_model=ReservationRead)
async def reschedule_reservation(
    payload: ReservationReschedule,
    reservation_id: str = Path(..., min_length=1, max_length=32),
    if_match: Optional[str] = Header(default=None, alias="If-Match"),
    admin_id: int = Depends(get_admin_user_id),
    service: AdmissionService = Depends(get_admission_service),
) -> ReservationRead:
    version = extract_version(if_match, payload)
    try:
        updated, previous_key = await service.reschedule(reservation_id, payload.date, payload.time, version=version)
    except SchedulingError as exc:
        raise to_http(exc) from exc

    _audit(
        action="reservation.rescheduled",
        initiator="admin",
        reservation_id=updated.id,
        user_id=updated.user_id,
        actor_id=admin_id,
        resource_type=updated.resource_type,
        date=updated.date,
        time=updated.time,
        status_from=updated.status,
        status_to=updated.status,
        version=updated.version,
        extra={"date_from": str(previous_key.date), "time_from": previous_key.time.strftime("%H:%M")},
    )
    return ReservationRead.from_db(reservation=updated)


@router.post("/reservations/complete-elapsed", response_model=List[ReservationRead])
async def complete_elapsed_reservations(
    lookback_days: int = Query(default=DEFAULT_WINDOW_DAYS, ge=1, le=365),
    admin_id: int = Depends(get_admin_user_id),
    service: AdmissionService = Depends(get_admission_service),
) -> list[ReservationRead]:
    try:
        completed = await service.complete_elapsed(lookback_days=lookback_days)
    except SchedulingError as exc:
        raise to_http(exc) from exc

    for reservation in completed:
        _audit(
            action="reservation.completed",
            initiator="system",
            reservation_id=reservation.id,
            user_id=reservation.user_id,
            actor_id=admin_id,
            resource_type=reservation.resource_type,
            date=reservation.date,
            time=reservation.time,
            status_from=ReservationStatus.APPROVED,
            status_to=reservation.status,
            version=reservation.version,
        )
    return [ReservationRead.from_db(reservation=r) for r in completed]
