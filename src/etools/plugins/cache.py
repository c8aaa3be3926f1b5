"""Single-value TTL cache with an injectable clock."""

from __future__ import annotations

import threading
import time
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


class TTLCache(Generic[T]):
    """Holds one value and the time it was captured; valid while now - captured < ttl.

    Every ``set`` and ``invalidate`` bumps ``generation``. A reader that
    computed its value from a snapshot taken at generation *g* passes
    ``generation=g`` to ``set`` so a write that landed in the meantime is
    not overwritten with the older value.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._value: T | None = None
        self._captured: float | None = None
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self) -> T | None:
        with self._lock:
            if self._captured is None or self._clock() - self._captured >= self.ttl:
                return None
            return self._value

    def set(self, value: T, generation: int | None = None) -> bool:
        """Store *value*; with *generation*, only if nothing changed since it was read."""
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._value = value
            self._captured = self._clock()
            self._generation += 1
            return True

    def invalidate(self) -> None:
        with self._lock:
            self._value = None
            self._captured = None
            self._generation += 1

    @property
    def is_valid(self) -> bool:
        return self.get() is not None
