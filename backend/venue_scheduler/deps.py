import logging
from functools import lru_cache
from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import async_session
from .infrastructure.collaborators import LoggingNotificationDispatcher, SqlAlchemyLoyaltyLedger
from .infrastructure.repositories import (
    ADMIN_ROLES,
    SqlAlchemyBookingStore,
    SqlAlchemyUserRepository,
    sqlalchemy_store_scope,
)
from .models import UserRole
from .usecases.admission import AdmissionService
from .utils.auth import decode_access_token, parse_bearer

logger = logging.getLogger(__name__)

_BEARER = {"WWW-Authenticate": "Bearer"}


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


async def get_booking_store(session: AsyncSession = Depends(get_session)) -> SqlAlchemyBookingStore:
    return SqlAlchemyBookingStore(session)


@lru_cache
def get_admission_service() -> AdmissionService:
    """Process-wide service: the availability index and slot locks live here."""
    settings = get_settings()
    return AdmissionService.from_settings(
        settings,
        sqlalchemy_store_scope(async_session),
        notifier=LoggingNotificationDispatcher(),
        loyalty=SqlAlchemyLoyaltyLedger(async_session, currency_per_point=settings.loyalty_currency_per_point),
    )


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail, headers=_BEARER)


async def _user_role(session: AsyncSession, user_id: int) -> UserRole | None:
    try:
        return await SqlAlchemyUserRepository(session).role(user_id)
    except ProgrammingError as exc:
        await session.rollback()
        logger.error("users table is not available: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="user store unavailable") from exc


async def get_current_user_id(
    authorization: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> int:
    settings = get_settings()
    try:
        token = parse_bearer(authorization)
        user_id = decode_access_token(token, secret=settings.auth_secret, algorithms=[settings.auth_algorithm])
    except ValueError as exc:
        raise _unauthorized("invalid or missing bearer token") from exc
    if await _user_role(session, user_id) is None:
        raise _unauthorized("user not found")
    return user_id


async def get_admin_user_id(
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> int:
    if await _user_role(session, user_id) not in ADMIN_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin role required")
    return user_id
