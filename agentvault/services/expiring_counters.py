"""Thread-safe sliding-window and cumulative counters with idle eviction.

Used by the security monitor to count events per (user, connection,
event type) key. Increments are atomic under one lock and return the
post-increment value, so a threshold is crossed by exactly one caller.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field


@dataclass
class _Counter:
    window: float | None
    hits: deque[float] = field(default_factory=deque)
    total: int = 0
    last_touched: float = 0.0


class ExpiringCounterArena:
    """Arena of named counters.

    A counter with a ``window`` counts hits within the trailing window.
    A counter with ``window=None`` is cumulative until evicted for being
    idle longer than ``idle_ttl``.

    Args:
        clock: Monotonic time source (tests inject a fake).
        idle_ttl: Seconds without a hit after which sweep() drops a counter.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        idle_ttl: float = 86400.0,
    ) -> None:
        self._clock = clock
        self._idle_ttl = idle_ttl
        self._lock = threading.Lock()
        self._counters: dict[Hashable, _Counter] = {}

    @staticmethod
    def _prune(counter: _Counter, now: float) -> None:
        if counter.window is None:
            return
        cutoff = now - counter.window
        while counter.hits and counter.hits[0] <= cutoff:
            counter.hits.popleft()

    @staticmethod
    def _value(counter: _Counter) -> int:
        return counter.total if counter.window is None else len(counter.hits)

    def increment(self, key: Hashable, window: float | None) -> tuple[int, int]:
        """Record one hit.

        Args:
            key: Counter identity.
            window: Sliding window in seconds, or None for cumulative.

        Returns:
            (value before this hit, value after this hit).
        """
        now = self._clock()
        with self._lock:
            counter = self._counters.get(key)
            if counter is None or counter.window != window:
                counter = _Counter(window=window)
                self._counters[key] = counter
            self._prune(counter, now)
            before = self._value(counter)
            if window is None:
                counter.total += 1
            else:
                counter.hits.append(now)
            counter.last_touched = now
            return before, self._value(counter)

    def count(self, key: Hashable) -> int:
        """Current value of a counter (0 if absent)."""
        now = self._clock()
        with self._lock:
            counter = self._counters.get(key)
            if counter is None:
                return 0
            self._prune(counter, now)
            return self._value(counter)

    def reset(self, key: Hashable) -> None:
        with self._lock:
            self._counters.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()

    def sweep(self) -> int:
        """Drop idle and empty counters. Returns the number removed."""
        now = self._clock()
        with self._lock:
            stale = []
            for key, counter in self._counters.items():
                self._prune(counter, now)
                idle = now - counter.last_touched >= self._idle_ttl
                empty = counter.window is not None and not counter.hits
                if idle or empty:
                    stale.append(key)
            for key in stale:
                del self._counters[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)
