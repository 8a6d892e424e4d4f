from __future__ import annotations

from datetime import date
from typing import Callable, Iterable

from .slots import SlotKey


class AvailabilityIndex:
    """In-memory occupancy of the shared calendar.

    Maps a SlotKey to the ids of REQUESTED/APPROVED reservations holding it.
    Buckets are loaded lazily from the booking store, one key at a time, by
    whoever holds that key's exclusive section. A key that has never been
    loaded (or was invalidated) must not be trusted for a conflict decision.
    """

    def __init__(self) -> None:
        self._buckets: dict[SlotKey, set[str]] = {}
        self._loaded: set[SlotKey] = set()

    def is_loaded(self, key: SlotKey) -> bool:
        return key in self._loaded

    def load(self, key: SlotKey, reservation_ids: Iterable[str]) -> None:
        """Replace the bucket for ``key`` with the store's view of it."""
        ids = set(reservation_ids)
        if ids:
            self._buckets[key] = ids
        else:
            self._buckets.pop(key, None)
        self._loaded.add(key)

    def invalidate(self, key: SlotKey) -> None:
        self._buckets.pop(key, None)
        self._loaded.discard(key)

    def occupy(self, key: SlotKey, reservation_id: str) -> None:
        self._buckets.setdefault(key, set()).add(reservation_id)

    def release(self, key: SlotKey, reservation_id: str) -> None:
        bucket = self._buckets.get(key)
        if bucket is None:
            return
        bucket.discard(reservation_id)
        if not bucket:
            del self._buckets[key]

    def occupants(self, key: SlotKey) -> frozenset[str]:
        return frozenset(self._buckets.get(key, ()))

    def is_free(self, key: SlotKey, *, exclude: str | None = None) -> bool:
        return not (self.occupants(key) - {exclude})

    def occupied_keys(self, day: date) -> list[SlotKey]:
        return sorted(key for key, ids in self._buckets.items() if key.date == day and ids)

    def forget_before(self, day: date, *, keep: Callable[[SlotKey], bool] | None = None) -> int:
        """Drop every key dated before ``day`` unless ``keep`` says otherwise. Returns how many went."""
        stale = [key for key in self._loaded.union(self._buckets) if key.date < day and not (keep and keep(key))]
        for key in stale:
            self.invalidate(key)
        return len(stale)

    def __len__(self) -> int:
        return sum(len(ids) for ids in self._buckets.values())
