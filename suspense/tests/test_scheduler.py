"""
Tests for the event scheduler and clocks.
"""

import pytest

from suspense.audio.scheduler import EventScheduler, ManualClock, MonotonicClock
from suspense.core.exceptions import SchedulerError


class TestClocks:
    """Test clock implementations."""

    def test_manual_clock(self):
        """Test the manual clock."""
        clock = ManualClock()
        assert clock.now_ms() == 0.0
        clock.advance(250)
        assert clock() == 250.0
        clock.set(1000)
        assert clock.now_ms() == 1000.0

    def test_manual_clock_never_goes_back(self):
        """Test that a manual clock refuses to move backwards."""
        clock = ManualClock(500)
        with pytest.raises(ValueError):
            clock.advance(-1)
        with pytest.raises(ValueError):
            clock.set(100)

    def test_monotonic_clock(self):
        """Test the monotonic clock."""
        clock = MonotonicClock()
        first = clock.now_ms()
        assert clock() >= first


class TestEventScheduler:
    """Test periodic timer scheduling."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def scheduler(self, clock):
        return EventScheduler(clock)

    def test_first_fire_after_one_interval(self, clock, scheduler):
        """Test that the first fire comes one interval after arming."""
        fired = []
        scheduler.every("tick", 100, lambda: fired.append(clock.now_ms()))

        clock.advance(99)
        assert scheduler.run_pending() == 0
        clock.advance(1)
        assert scheduler.run_pending() == 1
        assert fired == [100.0]
        assert scheduler.next_fire_ms("tick") == 200.0

    def test_stall_fires_once_and_drops_missed_ticks(self, clock, scheduler):
        """Test that a stall fires a timer once and drops missed ticks."""
        fired = []
        scheduler.every("tick", 100, lambda: fired.append(clock.now_ms()))

        clock.advance(350)
        assert scheduler.run_pending() == 1
        assert fired == [350.0]
        # re-armed on the original grid, after now
        assert scheduler.next_fire_ms("tick") == 400.0

        clock.advance(50)
        assert scheduler.run_pending() == 1
        assert scheduler.get("tick").fire_count == 2

    def test_long_stall_does_not_burst(self, clock, scheduler):
        """Test that a long stall fires each timer once."""
        fired = []
        scheduler.every("texture", 1300, lambda: fired.append("texture"))
        scheduler.every("pulse", 420, lambda: fired.append("pulse"))

        clock.advance(13000)
        assert scheduler.run_pending() == 2
        assert sorted(fired) == ["pulse", "texture"]
        assert scheduler.next_fire_ms("texture") == 14300.0
        assert scheduler.next_fire_ms("pulse") == 13020.0

    def test_fires_in_time_order(self, clock, scheduler):
        """Test that due timers fire in time order."""
        order = []
        scheduler.every("slow", 300, lambda: order.append("slow"))
        scheduler.every("fast", 100, lambda: order.append("fast"))

        clock.advance(300)
        scheduler.run_pending()
        assert order == ["fast", "slow"]

        clock.advance(100)
        scheduler.run_pending()
        assert order == ["fast", "slow", "fast"]

    def test_equal_fire_times_go_in_arming_order(self, clock, scheduler):
        """Test that equal fire times go in arming order."""
        order = []
        scheduler.every("b", 100, lambda: order.append("b"))
        scheduler.every("a", 100, lambda: order.append("a"))

        clock.advance(100)
        scheduler.run_pending()
        assert order == ["b", "a"]

    def test_cancel_from_callback_skips_due_event(self, clock, scheduler):
        """Test that a timer cancelled by a callback does not fire."""
        fired = []

        def first():
            fired.append("first")
            scheduler.cancel("second")

        scheduler.every("first", 100, first)
        scheduler.every("second", 100, lambda: fired.append("second"))

        clock.advance(100)
        assert scheduler.run_pending() == 1
        assert fired == ["first"]

    def test_set_interval_applies_from_next_rearm(self, clock, scheduler):
        """Test that a new interval applies from the next re-arm."""
        scheduler.every("pulse", 1600, lambda: None)
        scheduler.set_interval("pulse", 420)

        assert scheduler.next_fire_ms("pulse") == 1600.0
        clock.advance(1600)
        scheduler.run_pending()
        assert scheduler.next_fire_ms("pulse") == 2020.0

    def test_set_interval_unknown(self, scheduler):
        """Test changing the interval of an unknown timer."""
        with pytest.raises(SchedulerError):
            scheduler.set_interval("missing", 10)

    def test_duplicate_name_rejected(self, scheduler):
        """Test that a live timer name cannot be reused."""
        scheduler.every("pulse", 100, lambda: None)
        with pytest.raises(SchedulerError):
            scheduler.every("pulse", 200, lambda: None)

    def test_invalid_interval(self, scheduler):
        """Test that a non-positive interval is rejected."""
        with pytest.raises(ValueError):
            scheduler.every("zero", 0, lambda: None)

    def test_cancel(self, clock, scheduler):
        """Test cancelling one timer."""
        fired = []
        scheduler.every("a", 100, lambda: fired.append("a"))
        scheduler.every("b", 100, lambda: fired.append("b"))

        assert scheduler.cancel("a")
        assert not scheduler.cancel("a")
        clock.advance(100)
        scheduler.run_pending()
        assert fired == ["b"]
        assert scheduler.pending == ["b"]

    def test_cancel_all(self, clock, scheduler):
        """Test cancelling every timer."""
        fired = []
        scheduler.every("a", 100, lambda: fired.append("a"))
        scheduler.every("b", 150, lambda: fired.append("b"))

        scheduler.cancel_all()
        clock.advance(1000)
        assert scheduler.run_pending() == 0
        assert fired == []
        assert scheduler.pending == []

    def test_reschedule_after_cancel(self, clock, scheduler):
        """Test reusing a cancelled timer name."""
        fired = []
        scheduler.every("a", 100, lambda: fired.append("old"))
        scheduler.cancel("a")
        scheduler.every("a", 100, lambda: fired.append("new"))

        clock.advance(100)
        scheduler.run_pending()
        assert fired == ["new"]

    def test_shutdown(self, clock, scheduler):
        """Test that shutdown stops timers and refuses new ones."""
        fired = []
        scheduler.every("a", 100, lambda: fired.append("a"))
        scheduler.shutdown()

        clock.advance(1000)
        assert scheduler.run_pending() == 0
        assert fired == []
        assert scheduler.is_shutdown
        with pytest.raises(SchedulerError):
            scheduler.every("b", 100, lambda: None)

    def test_shutdown_from_callback_stops_run(self, clock, scheduler):
        """Test that shutdown inside a callback stops the run."""
        fired = []

        def first():
            fired.append("first")
            scheduler.shutdown()

        scheduler.every("first", 100, first)
        scheduler.every("second", 100, lambda: fired.append("second"))

        clock.advance(500)
        scheduler.run_pending()
        assert fired == ["first"]

    def test_callback_error_keeps_timer(self, clock, scheduler):
        """Test that a failing callback keeps its timer."""
        calls = []

        def flaky():
            calls.append(1)
            raise RuntimeError("boom")

        scheduler.every("flaky", 100, flaky)
        clock.advance(100)
        assert scheduler.run_pending() == 1
        clock.advance(100)
        assert scheduler.run_pending() == 1
        assert len(calls) == 2
        assert scheduler.pending == ["flaky"]
