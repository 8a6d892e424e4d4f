from typing import Any, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Path, Query, status

from ..deps import get_admission_service, get_booking_store, get_current_user_id
from ..domain.errors import SchedulingError
from ..infrastructure.repositories import SqlAlchemyBookingStore
from ..models import ReservationStatus
from ..schemas import ReservationCancel, ReservationRead
from ..usecases import queries
from ..usecases.admission import AdmissionService
from ..utils.audit_log import emit_audit_log
from .errors import extract_version, to_http

router = APIRouter(prefix="", tags=["reservations"])


def _audit(**kwargs: Any) -> None:
    try:
        emit_audit_log(**kwargs)
    except RuntimeError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="failed to record audit log")


@router.post("/reservations", response_model=ReservationRead, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    payload: dict[str, Any] = Body(...),
    user_id: int = Depends(get_current_user_id),
    service: AdmissionService = Depends(get_admission_service),
) -> ReservationRead:
    try:
        reservation = await service.admit(payload, user_id=user_id)
    except SchedulingError as exc:
        raise to_http(exc) from exc

    _audit(
        action="reservation.requested",
        initiator="customer",
        reservation_id=reservation.id,
        user_id=user_id,
        actor_id=user_id,
        resource_type=reservation.resource_type,
        date=reservation.date,
        time=reservation.time,
        status_to=reservation.status,
        version=reservation.version,
    )
    return ReservationRead.from_db(reservation=reservation)


@router.get("/me/reservations", response_model=List[ReservationRead])
async def list_my_reservations(
    status_filter: Optional[ReservationStatus] = Query(default=None, alias="status"),
    store: SqlAlchemyBookingStore = Depends(get_booking_store),
    user_id: int = Depends(get_current_user_id),
) -> list[ReservationRead]:
    rows = await queries.list_customer_reservations(store, user_id=user_id, status=status_filter)
    return [ReservationRead.from_db(reservation=r) for r in rows]


@router.get("/me/reservations/{reservation_id}", response_model=ReservationRead)
async def get_my_reservation(
    reservation_id: str = Path(..., min_length=1, max_length=32),
    store: SqlAlchemyBookingStore = Depends(get_booking_store),
    user_id: int = Depends(get_current_user_id),
) -> ReservationRead:
    reservation = await queries.get_customer_reservation(store, reservation_id=reservation_id, user_id=user_id)
    if reservation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="reservation not found")
    return ReservationRead.from_db(reservation=reservation)


@router.post("/me/reservations/{reservation_id}/cancel", response_model=ReservationRead)
async def cancel_reservation(
    reservation_id: str = Path(..., min_length=1, max_length=32),
    payload: Optional[ReservationCancel] = Body(default=None),
    if_match: Optional[str] = Header(default=None, alias="If-Match"),
    user_id: int = Depends(get_current_user_id),
    service: AdmissionService = Depends(get_admission_service),
) -> ReservationRead:
    version = extract_version(if_match, payload)
    try:
        updated, previous = await service.cancel(reservation_id, owner_id=user_id, version=version)
    except SchedulingError as exc:
        raise to_http(exc) from exc

    _audit(
        action="reservation.cancelled",
        initiator="customer",
        reservation_id=updated.id,
        user_id=updated.user_id,
        actor_id=user_id,
        resource_type=updated.resource_type,
        date=updated.date,
        time=updated.time,
        status_from=previous,
        status_to=updated.status,
        version=updated.version,
    )
    return ReservationRead.from_db(reservation=updated)
