"""Tests for sliding-window and cumulative counters."""

import threading

from agentvault.services.expiring_counters import ExpiringCounterArena
from tests.fakes import FakeClock


class TestWindowedCounter:
    def test_increment_returns_before_and_after(self):
        arena = ExpiringCounterArena(clock=FakeClock())
        assert arena.increment("k", window=60) == (0, 1)
        assert arena.increment("k", window=60) == (1, 2)

    def test_hits_leave_window(self):
        clock = FakeClock()
        arena = ExpiringCounterArena(clock=clock)
        arena.increment("k", window=60)
        clock.advance(30)
        arena.increment("k", window=60)
        clock.advance(30)
        # First hit is exactly one window old and no longer counts.
        assert arena.count("k") == 1
        clock.advance(31)
        assert arena.count("k") == 0

    def test_keys_are_independent(self):
        arena = ExpiringCounterArena(clock=FakeClock())
        arena.increment(("u1", "c1"), window=60)
        assert arena.count(("u1", "c2")) == 0


class TestCumulativeCounter:
    def test_never_decays(self):
        clock = FakeClock()
        arena = ExpiringCounterArena(clock=clock)
        arena.increment("k", window=None)
        clock.advance(10_000)
        assert arena.increment("k", window=None) == (1, 2)

    def test_reset(self):
        arena = ExpiringCounterArena(clock=FakeClock())
        arena.increment("k", window=None)
        arena.reset("k")
        assert arena.count("k") == 0


class TestSweep:
    def test_idle_counters_evicted(self):
        clock = FakeClock()
        arena = ExpiringCounterArena(clock=clock, idle_ttl=100)
        arena.increment("cumulative", window=None)
        clock.advance(100)
        assert arena.sweep() == 1
        assert len(arena) == 0

    def test_empty_window_evicted(self):
        clock = FakeClock()
        arena = ExpiringCounterArena(clock=clock, idle_ttl=10_000)
        arena.increment("w", window=5)
        clock.advance(6)
        assert arena.sweep() == 1

    def test_active_counters_kept(self):
        clock = FakeClock()
        arena = ExpiringCounterArena(clock=clock)
        arena.increment("w", window=60)
        arena.increment("c", window=None)
        assert arena.sweep() == 0
        assert len(arena) == 2


class TestConcurrency:
    def test_threshold_crossed_exactly_once(self):
        """Concurrent increments: exactly one caller sees the crossing."""
        arena = ExpiringCounterArena()
        threshold = 50
        crossings = []
        lock = threading.Lock()

        def worker():
            for _ in range(10):
                before, after = arena.increment("k", window=3600)
                if before < threshold <= after:
                    with lock:
                        crossings.append(after)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert arena.count("k") == 100
        assert crossings == [threshold]
