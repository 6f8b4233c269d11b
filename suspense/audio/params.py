"""
Automatable audio parameters.

An AudioParam holds a timeline of automation events expressed in audio
clock seconds. Each render block turns the timeline into one value per
sample, so envelopes and sweeps land on the sample they were scheduled
for no matter when the scheduling call was made.
"""

import bisect
import math
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

if TYPE_CHECKING:
    from suspense.audio.context import RenderBlock
    from suspense.audio.nodes import AudioNode


class AutomationKind(Enum):
    SET_VALUE = "set_value"
    LINEAR_RAMP = "linear_ramp"
    EXPONENTIAL_RAMP = "exponential_ramp"
    SET_TARGET = "set_target"


RAMP_KINDS = (AutomationKind.LINEAR_RAMP, AutomationKind.EXPONENTIAL_RAMP)


@dataclass
class AutomationEvent:
    """One point on a parameter timeline."""
    kind: AutomationKind
    time: float
    value: float
    time_constant: float = 0.0


class AudioParam:
    """
    A node parameter driven by automation events and modulation inputs.

    Modulation sources connected with ``node.connect(param)`` are summed
    on top of the automated value, the way an LFO sweeps a filter cutoff.
    """

    def __init__(
        self,
        name: str,
        default_value: float,
        min_value: float = -math.inf,
        max_value: float = math.inf
    ):
        self.name = name
        self.default_value = float(default_value)
        self.min_value = min_value
        self.max_value = max_value
        self.inputs: List["AudioNode"] = []

        self._value = float(default_value)
        self._events: List[AutomationEvent] = []
        self._origin: Tuple[float, float] = (0.0, self._value)
        self._target: Optional[AutomationEvent] = None
        self._target_start_value = self._value
        self._rendered_until = 0.0
        self._cache_index = -1
        self._cache: Optional[NDArray[np.float64]] = None

    def __repr__(self) -> str:
        return f"AudioParam({self.name}, value={self._value:.4g})"

    @property
    def value(self) -> float:
        """Current intrinsic value (end of the last rendered block)."""
        return self._value

    @value.setter
    def value(self, value: float):
        self._value = float(value)
        self._target = None
        self._origin = (self._rendered_until, self._value)

    @property
    def events(self) -> List[AutomationEvent]:
        """Pending automation events, in time order."""
        return list(self._events)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _insert(self, event: AutomationEvent) -> "AudioParam":
        times = [e.time for e in self._events]
        self._events.insert(bisect.bisect_right(times, event.time), event)
        return self

    def set_value_at_time(self, value: float, time: float) -> "AudioParam":
        return self._insert(AutomationEvent(AutomationKind.SET_VALUE, time, float(value)))

    def linear_ramp_to_value_at_time(self, value: float, end_time: float) -> "AudioParam":
        return self._insert(AutomationEvent(AutomationKind.LINEAR_RAMP, end_time, float(value)))

    def exponential_ramp_to_value_at_time(self, value: float, end_time: float) -> "AudioParam":
        if value == 0:
            raise ValueError("exponential ramp target must be non-zero")
        return self._insert(AutomationEvent(AutomationKind.EXPONENTIAL_RAMP, end_time, float(value)))

    def set_target_at_time(
        self,
        target: float,
        start_time: float,
        time_constant: float
    ) -> "AudioParam":
        """Approach ``target`` exponentially from ``start_time``."""
        if time_constant < 0:
            raise ValueError("time constant must be non-negative")
        if time_constant == 0:
            return self.set_value_at_time(target, start_time)
        return self._insert(
            AutomationEvent(AutomationKind.SET_TARGET, start_time, float(target), time_constant)
        )

    def cancel_scheduled_values(self, cancel_time: float) -> "AudioParam":
        """Drop every event scheduled at or after ``cancel_time``."""
        self._events = [e for e in self._events if e.time < cancel_time]
        if self._target is not None and self._target.time >= cancel_time:
            self._target = None
        return self

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render(self, block: "RenderBlock") -> NDArray[np.float64]:
        """
        Compute per-sample values for a block.

        Must advance the timeline once per block, so the result is
        memoized on the block index.
        """
        if self._cache_index == block.index and self._cache is not None:
            return self._cache

        values = self._automate(block)
        for node in self.inputs:
            values = values + node.pull(block)
        if self.min_value != -math.inf or self.max_value != math.inf:
            values = np.clip(values, self.min_value, self.max_value)

        self._cache_index = block.index
        self._cache = values
        return values

    def _automate(self, block: "RenderBlock") -> NDArray[np.float64]:
        n = block.n_frames
        self._rendered_until = block.end_time
        if not self._events and self._target is None:
            return np.full(n, self._value)

        times = block.times()
        out = np.empty(n)
        k = 0
        while k < n:
            nxt = self._events[0] if self._events else None

            if nxt is not None and nxt.kind in RAMP_KINDS:
                if self._target is not None:
                    # Ramp picks up wherever the target curve has got to
                    self._origin = (float(times[k]), self._value)
                    self._target = None
                end = k + int(np.searchsorted(times[k:], nxt.time, side="left"))
                if end > k:
                    out[k:end] = self._ramp(nxt, times[k:end])
                    self._value = float(out[end - 1])
                if end < n:
                    self._events.pop(0)
                    self._value = nxt.value
                    self._origin = (nxt.time, nxt.value)
                k = end
                continue

            end = n if nxt is None else k + int(np.searchsorted(times[k:], nxt.time, side="left"))
            if end > k:
                if self._target is not None:
                    out[k:end] = self._target_curve(times[k:end])
                else:
                    out[k:end] = self._value
                self._value = float(out[end - 1])

            if nxt is not None and end < n:
                self._events.pop(0)
                if nxt.kind is AutomationKind.SET_VALUE:
                    self._value = nxt.value
                    self._target = None
                else:
                    self._target = nxt
                    self._target_start_value = self._value
                self._origin = (nxt.time, self._value)
            k = end

        return out

    def _ramp(self, event: AutomationEvent, times: NDArray[np.float64]) -> NDArray[np.float64]:
        t0, v0 = self._origin
        v1 = event.value
        duration = event.time - t0
        if duration <= 0:
            return np.full(len(times), v1)
        frac = np.clip((times - t0) / duration, 0.0, 1.0)
        if event.kind is AutomationKind.LINEAR_RAMP:
            return v0 + (v1 - v0) * frac
        if v0 * v1 <= 0:
            # No exponential path through zero; hold until the end point
            return np.full(len(times), v0)
        return v0 * (v1 / v0) ** frac

    def _target_curve(self, times: NDArray[np.float64]) -> NDArray[np.float64]:
        target = self._target
        elapsed = np.maximum(times - target.time, 0.0)
        decay = np.exp(-elapsed / target.time_constant)
        return target.value + (self._target_start_value - target.value) * decay
