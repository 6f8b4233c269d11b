"""
Event scheduler for periodic triggers.

Timers are kept in a heap ordered by their next fire time and are fired
explicitly by ``run_pending()`` against an injectable millisecond clock.
The live engine drives it from its driver thread with a monotonic clock;
tests and offline renders use a ManualClock and advance time by hand.
"""

import heapq
import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from suspense.core.exceptions import SchedulerError
from suspense.core.logging import get_logger

logger = get_logger(__name__)


class MonotonicClock:
    """Wall clock in milliseconds, immune to system time changes."""

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0

    def __call__(self) -> float:
        return self.now_ms()


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start_ms: float = 0.0):
        self._now = float(start_ms)

    def now_ms(self) -> float:
        return self._now

    def advance(self, ms: float) -> float:
        if ms < 0:
            raise ValueError("cannot move a clock backwards")
        self._now += ms
        return self._now

    def set(self, ms: float) -> float:
        if ms < self._now:
            raise ValueError("cannot move a clock backwards")
        self._now = float(ms)
        return self._now

    def __call__(self) -> float:
        return self._now


@dataclass
class ScheduledEvent:
    """A periodic timer."""
    name: str
    interval_ms: float
    next_fire_ms: float
    callback: Callable[[], None] = field(repr=False)
    cancelled: bool = False
    fire_count: int = 0


class EventScheduler:
    """
    Cooperative periodic scheduler.

    ``run_pending`` fires every due event once, in fire-time order, then
    re-arms it on its own grid at the first ``next_fire_ms + k * interval_ms``
    later than now. Ticks missed during a stall are dropped, never
    replayed. Callback errors are logged and do not stop the timer.

    Usage::

        clock = ManualClock()
        scheduler = EventScheduler(clock)
        scheduler.every("pulse", 1600, on_pulse)
        clock.advance(1600)
        scheduler.run_pending()  # fires on_pulse once
    """

    def __init__(self, clock=None):
        self.clock = clock or MonotonicClock()
        self._heap: List[Tuple[float, int, ScheduledEvent]] = []
        self._events: Dict[str, ScheduledEvent] = {}
        self._order = itertools.count()
        self._lock = threading.RLock()
        self._shutdown = False

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    @property
    def pending(self) -> List[str]:
        """Names of live timers."""
        with self._lock:
            return sorted(self._events)

    def get(self, name: str) -> Optional[ScheduledEvent]:
        return self._events.get(name)

    def next_fire_ms(self, name: str) -> Optional[float]:
        event = self._events.get(name)
        return None if event is None else event.next_fire_ms

    def every(self, name: str, interval_ms: float, callback: Callable[[], None]) -> ScheduledEvent:
        """
        Register a periodic timer; the first fire is one interval from now.

        Raises:
            SchedulerError: After shutdown, or if ``name`` is already live
            ValueError: If the interval is not positive
        """
        if interval_ms <= 0:
            raise ValueError("interval must be positive")
        with self._lock:
            if self._shutdown:
                raise SchedulerError(f"cannot register {name!r}: scheduler is shut down")
            if name in self._events:
                raise SchedulerError(f"timer {name!r} is already scheduled")
            event = ScheduledEvent(
                name=name,
                interval_ms=float(interval_ms),
                next_fire_ms=self.clock.now_ms() + interval_ms,
                callback=callback
            )
            self._events[name] = event
            self._push(event)

        logger.debug("timer_scheduled", timer=name, interval_ms=interval_ms)
        return event

    def set_interval(self, name: str, interval_ms: float):
        """Change a timer's period from its next re-arm on."""
        if interval_ms <= 0:
            raise ValueError("interval must be positive")
        with self._lock:
            event = self._events.get(name)
            if event is None:
                raise SchedulerError(f"no timer named {name!r}")
            event.interval_ms = float(interval_ms)

    def cancel(self, name: str) -> bool:
        """Cancel one timer. Returns False if it was not live."""
        with self._lock:
            event = self._events.pop(name, None)
            if event is None:
                return False
            event.cancelled = True
            return True

    def cancel_all(self):
        with self._lock:
            for event in self._events.values():
                event.cancelled = True
            self._events.clear()
            self._heap.clear()

    def shutdown(self):
        """Cancel everything and refuse new registrations."""
        with self._lock:
            self._shutdown = True
            self.cancel_all()
        logger.debug("scheduler_shutdown")

    def run_pending(self) -> int:
        """
        Fire all events due at the current clock time.

        Returns:
            Number of callbacks fired
        """
        now = self.clock.now_ms()
        with self._lock:
            due = self._pop_due(now)

        fired = 0
        for event in due:
            # an earlier callback may have cancelled this one
            if event.cancelled or self._shutdown:
                continue

            try:
                event.callback()
            except Exception as e:
                logger.exception("timer_callback_failed", timer=event.name, error=str(e))
            event.fire_count += 1
            fired += 1

            with self._lock:
                if not event.cancelled and not self._shutdown:
                    self._rearm(event, now)
        return fired

    def _push(self, event: ScheduledEvent):
        heapq.heappush(self._heap, (event.next_fire_ms, next(self._order), event))

    def _rearm(self, event: ScheduledEvent, now: float):
        missed = int((now - event.next_fire_ms) // event.interval_ms)
        if missed > 0:
            logger.debug("timer_ticks_dropped", timer=event.name, dropped=missed)
        event.next_fire_ms += (missed + 1) * event.interval_ms
        self._push(event)

    def _pop_due(self, now: float) -> List[ScheduledEvent]:
        due = []
        if self._shutdown:
            return due
        while self._heap and self._heap[0][0] <= now:
            event = heapq.heappop(self._heap)[2]
            if not event.cancelled:
                due.append(event)
        return due
