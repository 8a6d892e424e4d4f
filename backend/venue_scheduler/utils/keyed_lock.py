from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Generic, Hashable, TypeVar

K = TypeVar("K", bound=Hashable)


@dataclass
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0  # holder plus waiters


class KeyedLock(Generic[K]):
    """One FIFO asyncio lock per key, created on demand and dropped when idle.

    Requests for different keys never wait on each other.
    """

    def __init__(self) -> None:
        self._entries: dict[K, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def locked(self, key: K) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    async def acquire(self, key: K, *, timeout: float | None = None) -> None:
        """Wait for ``key``. Raises TimeoutError after ``timeout`` seconds; nothing is held then."""
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            if timeout is None:
                await entry.lock.acquire()
            else:
                await asyncio.wait_for(entry.lock.acquire(), timeout)
        except BaseException:
            entry.users -= 1
            self._drop_if_idle(key, entry)
            raise

    def release(self, key: K) -> None:
        entry = self._entries[key]
        entry.lock.release()
        entry.users -= 1
        self._drop_if_idle(key, entry)

    async def acquire_many(self, keys: list[K], *, timeout: float | None = None) -> list[K]:
        """Acquire distinct keys in sorted order so two multi-key holders cannot deadlock."""
        ordered = sorted(set(keys))  # type: ignore[type-var]
        held: list[K] = []
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        try:
            for key in ordered:
                remaining = None if deadline is None else max(deadline - loop.time(), 0)
                await self.acquire(key, timeout=remaining)
                held.append(key)
        except BaseException:
            for key in reversed(held):
                self.release(key)
            raise
        return ordered

    def release_many(self, keys: list[K]) -> None:
        for key in reversed(keys):
            self.release(key)

    def _drop_if_idle(self, key: K, entry: _Entry) -> None:
        if entry.users == 0 and not entry.lock.locked() and self._entries.get(key) is entry:
            del self._entries[key]
