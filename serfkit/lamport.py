"""A thread-safe Lamport clock."""

from __future__ import annotations

import threading


class LamportClock:
    """Logical clock that orders events across cluster members."""

    def __init__(self) -> None:
        self._counter = 0
        self._lock = threading.Lock()

    def time(self) -> int:
        """Return the current value of the clock."""
        with self._lock:
            return self._counter

    def increment(self) -> int:
        """Advance the clock by one and return the new value."""
        with self._lock:
            self._counter += 1
            return self._counter

    def witness(self, v: int) -> None:
        """Move the clock past a value seen from another process, if needed."""
        with self._lock:
            if v < self._counter:
                return
            self._counter = v + 1

    def __repr__(self) -> str:
        return f"LamportClock(time={self.time()})"