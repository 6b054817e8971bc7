"""
Gateway State Store Abstraction.

Provides a base class `StateStore` and an in-process implementation:
- `InMemoryStateStore`: dict-backed store for a single gateway process

Sessions, pending device authorizations, step-ups and guest carts all live
behind this interface, so a shared cache can replace the in-process map
without touching the orchestration code.

`KeyedLock` serialises read-then-write sequences per checkout session.
"""

from __future__ import annotations

import abc
import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class StateStore(abc.ABC, Generic[T]):
    """Abstract key/value store with optional per-entry expiry."""

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[T]:
        """Return the live value for `key`, or None."""
        ...

    @abc.abstractmethod
    async def set(self, key: str, value: T, expires_at: Optional[float] = None) -> None:
        """Insert or replace `key`; `expires_at` is an absolute epoch time."""
        ...

    @abc.abstractmethod
    async def update(self, key: str, value: T) -> bool:
        """Replace `key` only if it is still present. Keeps the existing expiry."""
        ...

    @abc.abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abc.abstractmethod
    async def take(self, key: str) -> Optional[T]:
        """Atomically get and remove `key`."""
        ...

    @abc.abstractmethod
    async def sweep_expired(self, now: Optional[float] = None) -> int:
        """Remove expired entries. Returns the number removed."""
        ...


class InMemoryStateStore(StateStore[T]):
    """
    Dict-backed store. No method awaits internally, so each call completes
    without yielding to the event loop and is atomic for other tasks.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: dict[str, tuple[T, Optional[float]]] = {}
        self._clock = clock

    def _live(self, key: str) -> Optional[tuple[T, Optional[float]]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[T]:
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: T, expires_at: Optional[float] = None) -> None:
        self._entries[key] = (value, expires_at)

    async def update(self, key: str, value: T) -> bool:
        entry = self._live(key)
        if entry is None:
            return False
        self._entries[key] = (value, entry[1])
        return True

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def take(self, key: str) -> Optional[T]:
        entry = self._live(key)
        if entry is None:
            return None
        del self._entries[key]
        return entry[0]

    async def sweep_expired(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        expired = [
            key for key, (_, expires_at) in self._entries.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class KeyedLock:
    """One asyncio.Lock per key, discarded once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._locks
