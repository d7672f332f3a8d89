"""Process-wide keyed state shared by the admission gates."""

from __future__ import annotations

import threading
from typing import Callable, Generic, Hashable, Iterator, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")
R = TypeVar("R")


class AdmissionTable(Generic[K, V]):
    """Thread-safe key/value table with atomic read-modify-write helpers.

    Upload handlers may run on the event loop or on worker threads, so every
    mutation of a key happens under one lock. Values should be immutable;
    callers replace them instead of mutating in place.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: dict[K, V] = {}

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            return self._values.get(key)

    def compute(self, key: K, fn: Callable[[Optional[V]], tuple[Optional[V], R]]) -> R:
        """Apply ``fn`` to the current value and store what it returns.

        ``fn`` receives the current value (or ``None``) and returns a pair of
        ``(new_value, result)``. A ``new_value`` of ``None`` removes the key.
        The whole call is atomic with respect to other table operations.
        """
        with self._lock:
            current = self._values.get(key)
            new_value, result = fn(current)
            if new_value is None:
                self._values.pop(key, None)
            else:
                self._values[key] = new_value
            return result

    def compare_and_swap(self, key: K, expected: Optional[V], new: Optional[V]) -> bool:
        """Replace the value for ``key`` only when it currently equals ``expected``."""
        with self._lock:
            current = self._values.get(key)
            if current != expected:
                return False
            if new is None:
                self._values.pop(key, None)
            else:
                self._values[key] = new
            return True

    def pop(self, key: K) -> Optional[V]:
        with self._lock:
            return self._values.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def __iter__(self) -> Iterator[K]:
        with self._lock:
            return iter(list(self._values))


__all__ = ["AdmissionTable"]
