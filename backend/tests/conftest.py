from datetime import datetime
from typing import Any, Callable

import pytest
from support import GRID, NOW, VENUE_TZ, FakeBookingStore, RecordingLedger, RecordingNotifier
from venue_scheduler.usecases.admission import AdmissionService


@pytest.fixture
def store() -> FakeBookingStore:
    return FakeBookingStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def ledger() -> RecordingLedger:
    return RecordingLedger()


@pytest.fixture
def clock() -> dict[str, datetime]:
    """Mutable "now" shared with the service under test."""
    return {"now": NOW}


@pytest.fixture
def make_service(
    notifier: RecordingNotifier,
    ledger: RecordingLedger,
    clock: dict[str, datetime],
) -> Callable[..., AdmissionService]:
    counter = {"n": 0}

    def next_id() -> str:
        counter["n"] += 1
        return f"res{counter['n']:03d}"

    def factory(store: FakeBookingStore, **kwargs: Any) -> AdmissionService:
        options: dict[str, Any] = {
            "grid": GRID,
            "tz": VENUE_TZ,
            "max_guest_count": 100,
            "lock_timeout": 1.0,
            "store_timeout": 1.0,
            "notifier": notifier,
            "loyalty": ledger,
            "clock": lambda: clock["now"],
            "id_factory": next_id,
        }
        options.update(kwargs)
        return AdmissionService(store.scope, **options)

    return factory
