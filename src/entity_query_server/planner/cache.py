"""Expiring key/value cache owned by a registry instance."""

import time
from collections.abc import Callable
from typing import Generic, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Dictionary whose entries expire after a fixed time-to-live.

    Writes replace entries wholesale, so a concurrent double load simply
    leaves the last writer's value.
    """

    def __init__(self, ttl_ms: int, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize the cache.

        Args:
            ttl_ms: Entry lifetime in milliseconds.
            clock: Monotonic clock returning seconds.
        """
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._entries: dict[str, tuple[float, V]] = {}

    def get(self, key: str) -> V | None:
        """Return the cached value, or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: V) -> None:
        self._entries[key] = (self._clock() + self.ttl_ms / 1000, value)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
