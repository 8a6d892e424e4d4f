from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import date, datetime, time, timedelta
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar
from zoneinfo import ZoneInfo

from ..config import Settings
from ..domain.availability import AvailabilityIndex
from ..domain.collaborators import LoyaltyLedger, NotificationDispatcher
from ..domain.conflicts import Conflict, resolve, suggest_alternatives
from ..domain.errors import (
    AdmissionTimeout,
    InvalidTransition,
    ReservationNotFound,
    SlotConflict,
    StoreFailure,
    ValidationFailed,
    VersionConflict,
)
from ..domain.lifecycle import (
    ACTIVE_STATUSES,
    ensure_timing,
    ensure_transition,
    releases_slot,
    side_effects,
)
from ..domain.repositories import BookingStore, StoreScope
from ..domain.slots import SlotGrid, SlotKey
from ..domain.validation import ReservationDraft, ValidationOutcome, validate_booking_request, validate_slot_change
from ..models import Reservation, ReservationStatus
from ..utils.keyed_lock import KeyedLock
from ..utils.time import utc_now_naive, venue_now, venue_zone

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]

MAX_STALE_RETRIES = 3


class _SlotMoved(Exception):
    """The row's (date, time) changed between the unlocked read and the locked one."""


class AdmissionService:
    """Single writer of the shared calendar.

    Admissions, reschedules and lifecycle transitions all take the exclusive
    section of the (date, time) keys they touch before reading occupancy, and
    keep it until the booking store has committed. Keys that do not overlap
    proceed in parallel.
    """

    def __init__(
        self,
        store_scope: StoreScope,
        *,
        grid: SlotGrid,
        tz: ZoneInfo,
        max_guest_count: int = 100,
        lock_timeout: float | None = 5.0,
        store_timeout: float | None = 10.0,
        notifier: NotificationDispatcher | None = None,
        loyalty: LoyaltyLedger | None = None,
        clock: Clock | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._store_scope = store_scope
        self.grid = grid
        self.tz = tz
        self.max_guest_count = max_guest_count
        self._lock_timeout = lock_timeout
        self._store_timeout = store_timeout
        self._notifier = notifier
        self._loyalty = loyalty
        self._clock = clock or (lambda: venue_now(tz))
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)
        self._index = AvailabilityIndex()
        self._locks: KeyedLock[SlotKey] = KeyedLock()

    @classmethod
    def from_settings(cls, settings: Settings, store_scope: StoreScope, **kwargs: Any) -> "AdmissionService":
        return cls(
            store_scope,
            grid=SlotGrid(settings.opening_time, settings.closing_time, settings.slot_interval_minutes),
            tz=venue_zone(settings.venue_timezone),
            max_guest_count=settings.max_guest_count,
            lock_timeout=settings.lock_timeout_seconds,
            store_timeout=settings.store_timeout_seconds,
            **kwargs,
        )

    @property
    def index(self) -> AvailabilityIndex:
        return self._index

    def now(self) -> datetime:
        return self._clock()

    def today(self) -> date:
        return self.now().date()

    def validate(self, raw: Mapping[str, Any]) -> ValidationOutcome:
        return validate_booking_request(
            raw,
            today=self.today(),
            grid=self.grid,
            max_guest_count=self.max_guest_count,
        )

    # -- admission ---------------------------------------------------------

    async def admit(self, raw: Mapping[str, Any], *, user_id: int | None = None) -> Reservation:
        """Validate, check and persist a booking request as REQUESTED.

        Raises ValidationFailed, SlotConflict, StoreFailure or AdmissionTimeout.
        """
        outcome = self.validate(raw)
        if not outcome.ok or outcome.draft is None:
            logger.info("Booking request failed validation on %s", sorted({e.field for e in outcome.errors}))
            raise ValidationFailed(outcome.errors)
        draft = outcome.draft
        return await self._exclusive([draft.key], lambda: self._admit_locked(draft, user_id))

    async def _admit_locked(self, draft: ReservationDraft, user_id: int | None) -> Reservation:
        key = draft.key
        await self._ensure_loaded(key)
        decision = resolve(key, self._index)
        if isinstance(decision, Conflict):
            raise await self._conflict(decision)

        reservation_id = self._new_id()
        self._index.occupy(key, reservation_id)
        try:
            reservation = await self._in_store(
                lambda store: store.create(
                    draft,
                    reservation_id=reservation_id,
                    user_id=user_id,
                    status=ReservationStatus.REQUESTED,
                )
            )
        except AdmissionTimeout:
            # The commit may or may not have landed; reload the key from the store next time.
            self._index.invalidate(key)
            raise
        except BaseException:
            # Nothing was committed
            self._index.release(key, reservation_id)
            raise
        logger.info("Reservation %s requested for %s", reservation.id, draft.slot)
        return reservation

    async def reschedule(
        self,
        reservation_id: str,
        new_date: Any,
        new_time: Any,
        *,
        version: int | None = None,
    ) -> tuple[Reservation, SlotKey]:
        """Move an active reservation to another slot. Returns the reservation and its previous key."""
        new_key, errors = validate_slot_change(new_date, new_time, today=self.today(), grid=self.grid)
        if errors or new_key is None:
            raise ValidationFailed(errors)

        for _ in range(MAX_STALE_RETRIES):
            current = await self._peek(reservation_id)
            old_key = SlotKey(current.date, current.time)
            if old_key == new_key:
                return current, old_key
            try:
                reservation = await self._exclusive(
                    [old_key, new_key],
                    lambda: self._reschedule_locked(reservation_id, old_key, new_key, version),
                )
            except _SlotMoved:
                continue
            return reservation, old_key
        raise await self._still_moving(reservation_id, version)

    async def _reschedule_locked(
        self,
        reservation_id: str,
        old_key: SlotKey,
        new_key: SlotKey,
        version: int | None,
    ) -> Reservation:
        await self._ensure_loaded(old_key)
        await self._ensure_loaded(new_key)
        decision = resolve(new_key, self._index, exclude=reservation_id)
        if isinstance(decision, Conflict):
            raise await self._conflict(decision)

        async def move(store: BookingStore) -> Reservation:
            reservation = await self._locked_row(store, reservation_id, old_key, version)
            if reservation.status not in ACTIVE_STATUSES:
                raise InvalidTransition(reservation.status, reservation.status, "only active reservations can be moved")
            reservation.date = new_key.date
            reservation.time = new_key.time
            self._bump(reservation)
            return await store.save(reservation)

        self._index.occupy(new_key, reservation_id)
        try:
            reservation = await self._in_store(move)
        except AdmissionTimeout:
            self._index.invalidate(old_key)
            self._index.invalidate(new_key)
            raise
        except BaseException:
            self._index.release(new_key, reservation_id)
            raise
        self._index.release(old_key, reservation_id)
        logger.info("Reservation %s moved from %s to %s", reservation_id, old_key, new_key)
        return reservation

    # -- lifecycle ---------------------------------------------------------

    async def approve(
        self,
        reservation_id: str,
        *,
        notes: str | None = None,
        version: int | None = None,
    ) -> tuple[Reservation, ReservationStatus]:
        return await self.transition(reservation_id, ReservationStatus.APPROVED, notes=notes, version=version)

    async def reject(
        self,
        reservation_id: str,
        *,
        reason: str | None = None,
        version: int | None = None,
    ) -> tuple[Reservation, ReservationStatus]:
        return await self.transition(reservation_id, ReservationStatus.REJECTED, notes=reason, version=version)

    async def cancel(
        self,
        reservation_id: str,
        *,
        owner_id: int | None = None,
        version: int | None = None,
    ) -> tuple[Reservation, ReservationStatus]:
        return await self.transition(reservation_id, ReservationStatus.CANCELLED, owner_id=owner_id, version=version)

    async def complete(
        self,
        reservation_id: str,
        *,
        version: int | None = None,
    ) -> tuple[Reservation, ReservationStatus]:
        return await self.transition(reservation_id, ReservationStatus.COMPLETED, version=version)

    async def transition(
        self,
        reservation_id: str,
        target: ReservationStatus,
        *,
        owner_id: int | None = None,
        notes: str | None = None,
        version: int | None = None,
    ) -> tuple[Reservation, ReservationStatus]:
        """Apply one lifecycle step. Returns the updated reservation and its previous status.

        ``owner_id`` restricts the call to that customer's own reservation.
        """
        for _ in range(MAX_STALE_RETRIES):
            current = await self._peek(reservation_id)
            if owner_id is not None and current.user_id != owner_id:
                raise ReservationNotFound(reservation_id)
            key = SlotKey(current.date, current.time)
            try:
                return await self._exclusive(
                    [key],
                    lambda: self._transition_locked(reservation_id, key, target, notes, version),
                    then=lambda result: self._after_transition(result[0], target),
                )
            except _SlotMoved:
                continue
        raise await self._still_moving(reservation_id, version)

    async def complete_elapsed(self, *, lookback_days: int = 30) -> list[Reservation]:
        """Complete every APPROVED reservation whose start has passed within the lookback window.

        Also drops past days from the availability index; a key in use is left alone.
        """
        now = self.now()
        forgotten = self._index.forget_before(now.date(), keep=self._locks.locked)
        if forgotten:
            logger.debug("Dropped %d past slot keys from the availability index", forgotten)
        start = now.date() - timedelta(days=lookback_days)
        approved = await self._in_store(
            lambda store: store.list_by_date_range(start, now.date(), [ReservationStatus.APPROVED])
        )
        completed: list[Reservation] = []
        for reservation in approved:
            if SlotKey(reservation.date, reservation.time).starts_at(self.tz) > now:
                continue
            try:
                updated, _ = await self.complete(reservation.id)
            except (InvalidTransition, ReservationNotFound) as exc:
                logger.info("Skipped completing reservation %s: %s", reservation.id, exc)
                continue
            completed.append(updated)
        return completed

    async def _transition_locked(
        self,
        reservation_id: str,
        key: SlotKey,
        target: ReservationStatus,
        notes: str | None,
        version: int | None,
    ) -> tuple[Reservation, ReservationStatus]:
        await self._ensure_loaded(key)

        async def apply(store: BookingStore) -> tuple[Reservation, ReservationStatus]:
            reservation = await self._locked_row(store, reservation_id, key, version)
            previous = reservation.status
            ensure_transition(previous, target)
            ensure_timing(previous, target, starts_at=key.starts_at(self.tz), now=self.now())
            if target == ReservationStatus.APPROVED:
                # The slot may have been taken by someone else since admission.
                decision = resolve(key, self._index, exclude=reservation.id)
                if isinstance(decision, Conflict):
                    raise SlotConflict(decision.reservation_id, key)
            reservation.status = target
            if notes:
                reservation.admin_notes = notes
            self._bump(reservation)
            return await store.save(reservation), previous

        try:
            reservation, previous = await self._in_store(apply)
        except AdmissionTimeout:
            self._index.invalidate(key)
            raise
        if releases_slot(target):
            self._index.release(key, reservation.id)
        logger.info("Reservation %s moved %s -> %s", reservation.id, previous, target)
        return reservation, previous

    async def _after_transition(self, reservation: Reservation, target: ReservationStatus) -> None:
        """Side effects run once the transition is durable; their failures never undo it."""
        effects = side_effects(reservation, target)
        if effects.notify is not None and self._notifier is not None:
            try:
                await self._notifier.dispatch(reservation.id, effects.notify)
            except Exception:
                logger.exception("Notification %s for reservation %s failed", effects.notify, reservation.id)
        if effects.accrue_loyalty and self._loyalty is not None:
            try:
                await self._loyalty.accrue(reservation)
            except Exception:
                logger.exception("Loyalty accrual for reservation %s failed", reservation.id)

    # -- plumbing ----------------------------------------------------------

    async def _exclusive(
        self,
        keys: list[SlotKey],
        operation: Callable[[], Awaitable[T]],
        *,
        then: Optional[Callable[[T], Awaitable[None]]] = None,
    ) -> T:
        """Run ``operation`` holding every key in ``keys``.

        Waiting for the keys can be cancelled or time out with nothing held.
        Once held, the operation runs in its own task and always finishes and
        releases the keys, even if the caller goes away.
        """
        try:
            held = await self._locks.acquire_many(keys, timeout=self._lock_timeout)
        except TimeoutError:
            logger.warning("Timed out waiting for slot lock on %s", ", ".join(str(k) for k in keys))
            raise AdmissionTimeout("slot lock") from None

        async def run() -> T:
            try:
                result = await operation()
            finally:
                self._locks.release_many(held)
            if then is not None:
                await then(result)
            return result

        task = asyncio.ensure_future(run())
        task.add_done_callback(_retrieve_exception)
        return await asyncio.shield(task)

    async def _in_store(self, work: Callable[[BookingStore], Awaitable[T]]) -> T:
        async def unit() -> T:
            async with self._store_scope() as store:
                return await work(store)

        try:
            if self._store_timeout is None:
                return await unit()
            return await asyncio.wait_for(unit(), self._store_timeout)
        except TimeoutError:
            logger.warning("Booking store did not answer within %ss", self._store_timeout)
            raise AdmissionTimeout("booking store") from None
        except StoreFailure as exc:
            logger.warning("Booking store failure: %s", exc.cause)
            raise

    async def _ensure_loaded(self, key: SlotKey) -> None:
        """Load ``key`` from the store. Caller must hold the key."""
        if self._index.is_loaded(key):
            return
        active = await self._in_store(lambda store: store.list_active_at(key.date, key.time))
        self._index.load(key, [r.id for r in active])

    async def _peek(self, reservation_id: str) -> Reservation:
        reservation = await self._in_store(lambda store: store.get(reservation_id))
        if reservation is None:
            raise ReservationNotFound(reservation_id)
        return reservation

    async def _still_moving(self, reservation_id: str, version: int | None) -> VersionConflict:
        latest = await self._peek(reservation_id)
        logger.warning("Reservation %s kept moving; gave up after %d attempts", reservation_id, MAX_STALE_RETRIES)
        return VersionConflict(version, latest.version)

    async def _locked_row(
        self,
        store: BookingStore,
        reservation_id: str,
        key: SlotKey,
        version: int | None,
    ) -> Reservation:
        reservation = await store.get_for_update(reservation_id)
        if reservation is None:
            raise ReservationNotFound(reservation_id)
        if SlotKey(reservation.date, reservation.time) != key:
            raise _SlotMoved()
        if version is not None and reservation.version != version:
            raise VersionConflict(version, reservation.version)
        return reservation

    async def _conflict(self, decision: Conflict) -> SlotConflict:
        logger.info("Slot %s already held by reservation %s", decision.key, decision.reservation_id)
        return SlotConflict(decision.reservation_id, decision.key, await self._suggestions(decision.key))

    async def _suggestions(self, key: SlotKey) -> list[time]:
        try:
            active = await self._in_store(
                lambda store: store.list_by_date_range(key.date, key.date, ACTIVE_STATUSES)
            )
        except (StoreFailure, AdmissionTimeout):
            logger.warning("Could not compute alternative times for %s", key)
            return []
        occupied = {r.time for r in active}
        occupied.update(k.time for k in self._index.occupied_keys(key.date))
        today = self.now()
        if key.date == today.date():
            occupied.update(t for t in self.grid.times() if t <= today.time())
        return suggest_alternatives(key, occupied, self.grid)

    @staticmethod
    def _bump(reservation: Reservation) -> None:
        reservation.version += 1
        reservation.updated_at = utc_now_naive()


def _retrieve_exception(task: "asyncio.Future[Any]") -> None:
    # Marks the exception as retrieved when the caller was cancelled while shielded.
    if not task.cancelled():
        task.exception()
