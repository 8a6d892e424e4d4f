import asyncio
import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import Callable

import pytest
from support import VENUE_TZ, FakeBookingStore, RecordingLedger, RecordingNotifier, booking_payload, make_reservation
from venue_scheduler.domain.errors import (
    AdmissionTimeout,
    InvalidTransition,
    ReservationNotFound,
    SlotConflict,
    StoreFailure,
    VersionConflict,
)
from venue_scheduler.domain.lifecycle import NotificationEvent
from venue_scheduler.domain.slots import SlotKey
from venue_scheduler.models import ReservationStatus
from venue_scheduler.usecases.admission import MAX_STALE_RETRIES, AdmissionService, _SlotMoved

KEY = SlotKey(date(2025, 6, 1), time(14, 0))
AFTER_START = datetime(2025, 6, 1, 16, 0, tzinfo=VENUE_TZ)

ServiceFactory = Callable[..., AdmissionService]


@pytest.mark.asyncio
async def test_approve_records_notes_and_bumps_version(
    store: FakeBookingStore, make_service: ServiceFactory, notifier: RecordingNotifier
) -> None:
    service = make_service(store)
    reservation = await service.admit(booking_payload())
    updated, previous = await service.approve(reservation.id, notes="table by the window", version=1)
    assert previous == ReservationStatus.REQUESTED
    assert updated.status == ReservationStatus.APPROVED
    assert updated.admin_notes == "table by the window"
    assert updated.version == 2
    assert store.rows[reservation.id].status == ReservationStatus.APPROVED
    assert notifier.events == [(reservation.id, NotificationEvent.APPROVED)]
    # approved still holds the slot
    assert service.index.occupants(KEY) == frozenset({reservation.id})


@pytest.mark.asyncio
async def test_stale_version_is_rejected(store: FakeBookingStore, make_service: ServiceFactory) -> None:
    service = make_service(store)
    reservation = await service.admit(booking_payload())
    await service.approve(reservation.id)
    with pytest.raises(VersionConflict) as excinfo:
        await service.cancel(reservation.id, version=1)
    assert excinfo.value.actual == 2
    assert store.rows[reservation.id].status == ReservationStatus.APPROVED


@pytest.mark.asyncio
async def test_approve_rechecks_slot(make_service: ServiceFactory) -> None:
    # Two active rows on one key can only come from outside this process
    store = FakeBookingStore(
        [
            make_reservation("first", status=ReservationStatus.APPROVED),
            make_reservation("second", status=ReservationStatus.REQUESTED),
        ]
    )
    service = make_service(store)
    with pytest.raises(SlotConflict) as excinfo:
        await service.approve("second")
    assert excinfo.value.conflicting_reservation_id == "first"
    assert store.rows["second"].status == ReservationStatus.REQUESTED


@pytest.mark.asyncio
@pytest.mark.parametrize("target", [ReservationStatus.REJECTED, ReservationStatus.CANCELLED])
async def test_closing_transitions_release_slot(
    target: ReservationStatus, store: FakeBookingStore, make_service: ServiceFactory
) -> None:
    service = make_service(store)
    reservation = await service.admit(booking_payload())
    await service.transition(reservation.id, target)
    assert service.index.is_free(KEY)
    again = await service.admit(booking_payload(resource_type="SENSORY_ROOM"))
    assert again.status == ReservationStatus.REQUESTED


@pytest.mark.asyncio
async def test_terminal_state_cannot_be_reopened(store: FakeBookingStore, make_service: ServiceFactory) -> None:
    service = make_service(store)
    reservation = await service.admit(booking_payload())
    await service.reject(reservation.id, reason="closed for private event")
    assert store.rows[reservation.id].admin_notes == "closed for private event"
    with pytest.raises(InvalidTransition) as excinfo:
        await service.approve(reservation.id)
    assert excinfo.value.reason == "reservation is already closed"


@pytest.mark.asyncio
async def test_complete_requires_approval(
    store: FakeBookingStore, make_service: ServiceFactory, clock: dict[str, datetime]
) -> None:
    service = make_service(store)
    reservation = await service.admit(booking_payload())
    clock["now"] = AFTER_START
    with pytest.raises(InvalidTransition):
        await service.complete(reservation.id)


@pytest.mark.asyncio
async def test_complete_waits_for_scheduled_time(
    store: FakeBookingStore, make_service: ServiceFactory, clock: dict[str, datetime]
) -> None:
    service = make_service(store)
    reservation = await service.admit(booking_payload())
    await service.approve(reservation.id)
    with pytest.raises(InvalidTransition) as excinfo:
        await service.complete(reservation.id)
    assert excinfo.value.reason == "scheduled time has not elapsed yet"

    clock["now"] = AFTER_START
    updated, previous = await service.complete(reservation.id)
    assert previous == ReservationStatus.APPROVED
    assert updated.status == ReservationStatus.COMPLETED
    assert service.index.is_free(KEY)


@pytest.mark.asyncio
async def test_cancel_after_start_is_refused(
    store: FakeBookingStore, make_service: ServiceFactory, clock: dict[str, datetime]
) -> None:
    service = make_service(store)
    reservation = await service.admit(booking_payload())
    clock["now"] = AFTER_START
    with pytest.raises(InvalidTransition) as excinfo:
        await service.cancel(reservation.id)
    assert excinfo.value.reason == "scheduled time has already passed"


@pytest.mark.asyncio
async def test_customer_cancels_only_own_reservation(store: FakeBookingStore, make_service: ServiceFactory) -> None:
    service = make_service(store)
    reservation = await service.admit(booking_payload(), user_id=7)
    with pytest.raises(ReservationNotFound):
        await service.cancel(reservation.id, owner_id=8)
    updated, _ = await service.cancel(reservation.id, owner_id=7)
    assert updated.status == ReservationStatus.CANCELLED


@pytest.mark.asyncio
async def test_unknown_reservation(store: FakeBookingStore, make_service: ServiceFactory) -> None:
    service = make_service(store)
    with pytest.raises(ReservationNotFound):
        await service.approve("missing")


@pytest.mark.asyncio
async def test_completion_accrues_loyalty_for_paid_booking(
    store: FakeBookingStore,
    make_service: ServiceFactory,
    ledger: RecordingLedger,
    clock: dict[str, datetime],
) -> None:
    service = make_service(store)
    paid = await service.admit(booking_payload(amount="3000", currency="RSD", paid=True))
    unpaid = await service.admit(booking_payload(time="15:00"))
    await service.approve(paid.id)
    await service.approve(unpaid.id)
    clock["now"] = AFTER_START
    await service.complete(paid.id)
    await service.complete(unpaid.id)
    assert ledger.accrued == [paid.id]
    assert store.rows[paid.id].amount == Decimal("3000")


@pytest.mark.asyncio
async def test_side_effect_failure_does_not_undo_transition(
    store: FakeBookingStore,
    make_service: ServiceFactory,
    caplog: pytest.LogCaptureFixture,
) -> None:
    service = make_service(store, notifier=RecordingNotifier(fail=True))
    reservation = await service.admit(booking_payload())
    with caplog.at_level(logging.ERROR):
        updated, _ = await service.approve(reservation.id)
    assert updated.status == ReservationStatus.APPROVED
    assert store.rows[reservation.id].status == ReservationStatus.APPROVED
    assert any("Notification" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_failed_write_keeps_state_and_slot(store: FakeBookingStore, make_service: ServiceFactory) -> None:
    service = make_service(store)
    reservation = await service.admit(booking_payload())
    store.fail_on.add("save")
    with pytest.raises(StoreFailure):
        await service.reject(reservation.id)
    assert store.rows[reservation.id].status == ReservationStatus.REQUESTED
    assert service.index.occupants(KEY) == frozenset({reservation.id})


@pytest.mark.asyncio
async def test_timed_out_write_forces_reload(store: FakeBookingStore, make_service: ServiceFactory) -> None:
    service = make_service(store, store_timeout=0.05)
    reservation = await service.admit(booking_payload())
    store.hang_on.add("save")
    with pytest.raises(AdmissionTimeout):
        await service.reject(reservation.id)
    assert not service.index.is_loaded(KEY)

    store.hang_on.clear()
    with pytest.raises(SlotConflict):
        await service.admit(booking_payload(resource_type="PARTY"))


@pytest.mark.asyncio
async def test_concurrent_approve_and_cancel_apply_in_order(
    store: FakeBookingStore, make_service: ServiceFactory
) -> None:
    service = make_service(store)
    reservation = await service.admit(booking_payload())
    results = await asyncio.gather(
        service.approve(reservation.id, version=1),
        service.cancel(reservation.id, version=1),
        return_exceptions=True,
    )
    successes = [r for r in results if not isinstance(r, BaseException)]
    failures = [r for r in results if isinstance(r, VersionConflict)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert store.rows[reservation.id].version == 2


@pytest.mark.asyncio
async def test_complete_elapsed_sweeps_past_approved(
    store: FakeBookingStore, make_service: ServiceFactory, clock: dict[str, datetime]
) -> None:
    service = make_service(store)
    early = await service.admit(booking_payload(time="10:00"))
    late = await service.admit(booking_payload(time="18:00"))
    pending = await service.admit(booking_payload(time="11:00"))
    await service.approve(early.id)
    await service.approve(late.id)

    clock["now"] = AFTER_START
    completed = await service.complete_elapsed(lookback_days=7)
    assert [r.id for r in completed] == [early.id]
    assert store.rows[late.id].status == ReservationStatus.APPROVED
    assert store.rows[pending.id].status == ReservationStatus.REQUESTED


@pytest.mark.asyncio
async def test_sweep_forgets_past_days_in_index(
    store: FakeBookingStore, make_service: ServiceFactory, clock: dict[str, datetime]
) -> None:
    service = make_service(store)
    pending = await service.admit(booking_payload())
    assert service.index.is_loaded(KEY)

    clock["now"] = datetime(2025, 6, 2, 9, 0, tzinfo=VENUE_TZ)
    assert await service.complete_elapsed() == []
    assert not service.index.is_loaded(KEY)
    assert len(service.index) == 0

    # a later transition reloads the key from the store
    updated, _ = await service.reject(pending.id)
    assert updated.status == ReservationStatus.REJECTED
    assert service.index.is_free(KEY)


@pytest.mark.asyncio
async def test_row_that_keeps_moving_reports_latest_version(
    store: FakeBookingStore, make_service: ServiceFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    service = make_service(store)
    reservation = await service.admit(booking_payload())

    async def moved_by_someone_else(*args: object, **kwargs: object) -> None:
        store.rows[reservation.id].version += 1
        raise _SlotMoved()

    monkeypatch.setattr(service, "_locked_row", moved_by_someone_else)
    with pytest.raises(VersionConflict) as excinfo:
        await service.cancel(reservation.id, version=1)
    assert excinfo.value.expected == 1
    assert excinfo.value.actual == 1 + MAX_STALE_RETRIES

    with pytest.raises(VersionConflict) as excinfo:
        await service.approve(reservation.id)
    assert excinfo.value.expected is None
    assert "-1" not in str(excinfo.value)
    assert str(1 + 2 * MAX_STALE_RETRIES) in str(excinfo.value)
