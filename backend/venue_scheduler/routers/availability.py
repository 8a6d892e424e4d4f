from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError

from ..deps import get_admission_service, get_booking_store
from ..infrastructure.repositories import SqlAlchemyBookingStore
from ..schemas import AvailabilitySlot, DayAvailability
from ..usecases import queries
from ..usecases.admission import AdmissionService

router = APIRouter(prefix="", tags=["availability"])


@router.get("/availability", response_model=DayAvailability)
async def get_availability(
    day: date = Query(..., alias="date", description="Venue-local date (YYYY-MM-DD)"),
    store: SqlAlchemyBookingStore = Depends(get_booking_store),
    service: AdmissionService = Depends(get_admission_service),
) -> DayAvailability:
    now = service.now()
    if day < now.date():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="date is in the past")
    try:
        rows = await queries.day_availability(store, day=day, grid=service.grid, now=now)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="availability unavailable") from exc
    return DayAvailability(
        date=day,
        slots=[AvailabilitySlot(time=row["time"], available=row["available"]) for row in rows],
    )
