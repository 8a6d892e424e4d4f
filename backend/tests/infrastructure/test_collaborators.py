import logging
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy.exc import OperationalError
from support import make_reservation
from venue_scheduler.domain.errors import StoreFailure
from venue_scheduler.domain.lifecycle import NotificationEvent
from venue_scheduler.infrastructure.collaborators import (
    LoggingNotificationDispatcher,
    SqlAlchemyLoyaltyLedger,
    loyalty_points_for,
)
from venue_scheduler.infrastructure.repositories import sqlalchemy_store_scope


@pytest.mark.parametrize(
    "amount,points",
    [(Decimal("0"), 0), (Decimal("99.99"), 0), (Decimal("100"), 1), (Decimal("2599.50"), 25)],
)
def test_loyalty_points_are_floored(amount: Decimal, points: int) -> None:
    assert loyalty_points_for(amount, 100) == points


@pytest.mark.asyncio
async def test_notification_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="venue_scheduler.infrastructure.collaborators"):
        await LoggingNotificationDispatcher().dispatch("res001", NotificationEvent.REJECTED)
    assert "res001" in caplog.text
    assert "REJECTED" in caplog.text


class _Untouchable:
    def __call__(self) -> Any:
        raise AssertionError("no session expected")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"user_id": None, "amount": Decimal("500"), "paid": True},
        {"amount": Decimal("50"), "paid": True},
    ],
)
async def test_ledger_skips_when_nothing_to_accrue(overrides: dict[str, Any]) -> None:
    ledger = SqlAlchemyLoyaltyLedger(_Untouchable(), currency_per_point=100)  # type: ignore[arg-type]
    await ledger.accrue(make_reservation(**overrides))


class _BrokenSession:
    async def __aenter__(self) -> "_BrokenSession":
        return self

    async def __aexit__(self, *exc: object) -> bool:
        return False

    def begin(self) -> "_BrokenBegin":
        return _BrokenBegin()


class _BrokenBegin:
    async def __aenter__(self) -> None:
        raise OperationalError("BEGIN", None, Exception("server has gone away"))

    async def __aexit__(self, *exc: object) -> bool:
        return False


@pytest.mark.asyncio
async def test_store_scope_wraps_database_errors() -> None:
    scope = sqlalchemy_store_scope(lambda: _BrokenSession())  # type: ignore[arg-type,return-value]
    with pytest.raises(StoreFailure) as excinfo:
        async with scope():
            pass
    assert isinstance(excinfo.value.cause, OperationalError)
    assert excinfo.value.retryable
