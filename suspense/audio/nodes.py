"""
Signal graph nodes.

Every node declares how many input and output ports it has, so wiring
mistakes surface as GraphError at build time instead of silence at
render time. Nodes are pulled once per render block and memoize their
output for the rest of that block.
"""

import math
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray
from scipy import signal

from suspense.audio.params import AudioParam
from suspense.core.exceptions import GraphError, InvalidStateError

if TYPE_CHECKING:
    from suspense.audio.context import AudioContext, RenderBlock

Destination = Union["AudioNode", AudioParam]


class AudioNode:
    """
    Base class for all signal graph nodes.

    Subclasses implement ``process`` which returns one mono block.
    """

    kind = "node"
    number_of_inputs = 1
    number_of_outputs = 1

    def __init__(self, context: "AudioContext", name: Optional[str] = None):
        self.context = context
        self.name = name or context.unique_name(self.kind)
        self.inputs: List["AudioNode"] = []
        self.outputs: List[Destination] = []
        self._cache_index = -1
        self._cache: Optional[NDArray[np.float64]] = None
        self._evaluating = False
        context.register(self)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name})"

    def _param(self, param_name: str, default_value: float, **limits) -> AudioParam:
        return AudioParam(f"{self.name}.{param_name}", default_value, **limits)

    @property
    def params(self) -> Dict[str, AudioParam]:
        """Automatable parameters owned by this node."""
        return {}

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def connect(self, destination: Destination) -> Destination:
        """
        Route this node's output into a node input or a parameter.

        Returns the destination so connections can be chained.
        """
        if self.number_of_outputs == 0:
            raise GraphError(f"{self.name} has no output port")

        if isinstance(destination, AudioParam):
            owner_ok = any(
                destination in node.params.values()
                for node in self.context.nodes
            )
            if not owner_ok:
                raise GraphError(f"{destination.name} does not belong to this context")
        else:
            if destination.context is not self.context:
                raise GraphError(
                    f"cannot connect {self.name} to {destination.name}: different contexts"
                )
            if destination.number_of_inputs == 0:
                raise GraphError(f"{destination.name} has no input port")

        if self not in destination.inputs:
            destination.inputs.append(self)
            self.outputs.append(destination)
        return destination

    def disconnect(self, destination: Optional[Destination] = None):
        """Remove one outgoing connection, or all of them."""
        targets = list(self.outputs) if destination is None else [destination]
        for target in targets:
            if target not in self.outputs:
                raise GraphError(f"{self.name} is not connected to {target.name}")
            self.outputs.remove(target)
            if self in target.inputs:
                target.inputs.remove(self)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def pull(self, block: "RenderBlock") -> NDArray[np.float64]:
        """Return this node's output for ``block``, computing it once."""
        if self._cache_index == block.index and self._cache is not None:
            return self._cache
        if self._evaluating:
            raise GraphError(f"feedback cycle through {self.name} without a delay line")

        self._evaluating = True
        try:
            out = self.process(block)
        finally:
            self._evaluating = False

        self._cache_index = block.index
        self._cache = out
        return out

    def mix_inputs(self, block: "RenderBlock") -> NDArray[np.float64]:
        """Sum of all connected inputs."""
        mixed = np.zeros(block.n_frames)
        for node in self.inputs:
            mixed += node.pull(block)
        return mixed

    def process(self, block: "RenderBlock") -> NDArray[np.float64]:
        raise NotImplementedError


class GainNode(AudioNode):
    """Multiplies its input by an automatable gain (also used for envelopes)."""

    kind = "gain"

    def __init__(self, context, gain: float = 1.0, name: Optional[str] = None):
        super().__init__(context, name)
        self.gain = self._param("gain", gain)

    @property
    def params(self) -> Dict[str, AudioParam]:
        return {"gain": self.gain}

    def process(self, block):
        return self.mix_inputs(block) * self.gain.render(block)


class ScheduledSourceNode(AudioNode):
    """
    Source node with one-shot start/stop scheduling.

    A source can be started once. Once past its stop frame it reports
    itself ended to the context, which runs ``on_ended`` callbacks after
    the block completes.
    """

    number_of_inputs = 0

    def __init__(self, context, name: Optional[str] = None):
        super().__init__(context, name)
        self.start_frame: Optional[int] = None
        self.stop_frame: Optional[int] = None
        self.ended = False
        self._ended_callbacks: List[Callable[[], None]] = []

    @property
    def started(self) -> bool:
        return self.start_frame is not None

    def start(self, when: float = 0.0):
        self.context.ensure_open()
        if self.started:
            raise InvalidStateError(f"{self.name} already started")
        self.start_frame = self.context.time_to_frame(max(when, self.context.current_time))

    def stop(self, when: float = 0.0):
        self.context.ensure_open()
        if not self.started:
            raise InvalidStateError(f"{self.name} stopped before start")
        frame = self.context.time_to_frame(max(when, self.context.current_time))
        self.stop_frame = max(frame, self.start_frame)

    def on_ended(self, callback: Callable[[], None]):
        self._ended_callbacks.append(callback)

    def natural_end_frame(self) -> Optional[int]:
        """Frame where the source runs out on its own (None = never)."""
        return None

    def end_frame(self) -> Optional[int]:
        ends = [f for f in (self.stop_frame, self.natural_end_frame()) if f is not None]
        return min(ends) if ends else None

    def active_mask(self, block) -> NDArray[np.bool_]:
        frames = block.frames()
        if not self.started:
            return np.zeros(block.n_frames, dtype=bool)
        mask = frames >= self.start_frame
        end = self.end_frame()
        if end is not None:
            mask &= frames < end
            if block.frame + block.n_frames >= end and not self.ended:
                self.ended = True
                self.context.notify_ended(self)
        return mask

    def fire_ended(self):
        for callback in self._ended_callbacks:
            callback()
        self._ended_callbacks.clear()


class OscillatorNode(ScheduledSourceNode):
    """
    Periodic waveform source with phase accumulation.

    Frequency and detune (cents) are automatable per sample.
    """

    kind = "oscillator"
    WAVEFORMS = ("sine", "square", "sawtooth", "triangle")

    def __init__(
        self,
        context,
        waveform: str = "sine",
        frequency: float = 440.0,
        detune: float = 0.0,
        name: Optional[str] = None
    ):
        if waveform not in self.WAVEFORMS:
            raise GraphError(f"unknown oscillator waveform: {waveform}")
        super().__init__(context, name)
        self.waveform = waveform
        self.frequency = self._param("frequency", frequency)
        self.detune = self._param("detune", detune)
        self._phase = 0.0

    @property
    def params(self) -> Dict[str, AudioParam]:
        return {"frequency": self.frequency, "detune": self.detune}

    def process(self, block):
        freq = self.frequency.render(block) * 2.0 ** (self.detune.render(block) / 1200.0)
        mask = self.active_mask(block)
        if not mask.any():
            return np.zeros(block.n_frames)

        # Phase in cycles, accumulated only while running
        inc = np.where(mask, freq / block.sample_rate, 0.0)
        phase = (self._phase + np.concatenate(([0.0], np.cumsum(inc[:-1])))) % 1.0
        self._phase = float((self._phase + inc.sum()) % 1.0)

        return render_waveform(self.waveform, phase) * mask


def render_waveform(waveform: str, phase: NDArray[np.float64]) -> NDArray[np.float64]:
    """Evaluate a waveform at phases given in cycles."""
    if waveform == "sine":
        return np.sin(2 * np.pi * phase)
    if waveform == "square":
        return np.where(phase < 0.5, 1.0, -1.0)
    if waveform == "sawtooth":
        return 2 * (phase - np.floor(phase + 0.5))
    # triangle
    return 2 * np.abs(2 * (phase - np.floor(phase + 0.5))) - 1


class BufferSourceNode(ScheduledSourceNode):
    """Plays a prepared sample buffer once from its start time."""

    kind = "buffer_source"

    def __init__(self, context, buffer: NDArray[np.float64], name: Optional[str] = None):
        super().__init__(context, name)
        self.buffer = buffer

    def natural_end_frame(self):
        if self.start_frame is None:
            return None
        return self.start_frame + len(self.buffer)

    def process(self, block):
        mask = self.active_mask(block)
        out = np.zeros(block.n_frames)
        if mask.any():
            idx = block.frames()[mask] - self.start_frame
            out[mask] = self.buffer[idx]
        return out


class BiquadFilterNode(AudioNode):
    """
    Second-order IIR filter (lowpass, highpass, bandpass).

    Coefficients follow the RBJ audio EQ cookbook and are recomputed at
    block rate from the frequency and Q parameters; filter state carries
    over between blocks.
    """

    kind = "biquad"
    TYPES = ("lowpass", "highpass", "bandpass")

    def __init__(
        self,
        context,
        filter_type: str = "lowpass",
        frequency: float = 350.0,
        Q: float = 1.0 / math.sqrt(2.0),
        name: Optional[str] = None
    ):
        if filter_type not in self.TYPES:
            raise GraphError(f"unknown filter type: {filter_type}")
        super().__init__(context, name)
        self.filter_type = filter_type
        self.frequency = self._param("frequency", frequency)
        self.Q = self._param("Q", Q, min_value=1e-4)
        self._coefficients: Optional[Tuple[NDArray, NDArray]] = None
        self._design_key: Optional[Tuple[float, float]] = None
        self._zi = np.zeros(2)

    @property
    def params(self) -> Dict[str, AudioParam]:
        return {"frequency": self.frequency, "Q": self.Q}

    def _design_filter(self, frequency: float, q: float) -> Tuple[NDArray, NDArray]:
        """Design the filter coefficients."""
        nyquist = self.context.sample_rate / 2
        frequency = float(np.clip(frequency, 10.0, nyquist * 0.99))
        key = (frequency, q)
        if key == self._design_key:
            return self._coefficients

        w0 = 2 * np.pi * frequency / self.context.sample_rate
        cos_w0 = np.cos(w0)
        alpha = np.sin(w0) / (2 * q)

        if self.filter_type == "lowpass":
            b = np.array([(1 - cos_w0) / 2, 1 - cos_w0, (1 - cos_w0) / 2])
        elif self.filter_type == "highpass":
            b = np.array([(1 + cos_w0) / 2, -(1 + cos_w0), (1 + cos_w0) / 2])
        else:  # bandpass, 0 dB peak gain
            b = np.array([alpha, 0.0, -alpha])
        a = np.array([1 + alpha, -2 * cos_w0, 1 - alpha])

        self._coefficients = (b / a[0], a / a[0])
        self._design_key = key
        return self._coefficients

    def process(self, block):
        frequency = self.frequency.render(block)
        q = self.Q.render(block)
        b, a = self._design_filter(float(frequency[0]), float(q[0]))
        out, self._zi = signal.lfilter(b, a, self.mix_inputs(block), zi=self._zi)
        return out


class DelayNode(AudioNode):
    """
    Delay line over a ring buffer.

    Delay lines are the only nodes allowed inside feedback cycles: the
    context reads their output from history before the block (``prepare``)
    and writes their input after it (``commit``). The effective delay is
    therefore never shorter than one render quantum.
    """

    kind = "delay"

    def __init__(
        self,
        context,
        max_delay_time: float = 1.0,
        delay_time: float = 0.0,
        name: Optional[str] = None
    ):
        super().__init__(context, name)
        self.max_delay_time = max_delay_time
        self.delay_time = self._param(
            "delay_time", min(delay_time, max_delay_time),
            min_value=0.0, max_value=max_delay_time
        )
        capacity = int(math.ceil(max_delay_time * context.sample_rate)) + context.render_quantum
        self._history = np.zeros(capacity)
        self._write = 0
        self._prepared: Optional[NDArray[np.float64]] = None
        self._prepared_index = -1

    @property
    def params(self) -> Dict[str, AudioParam]:
        return {"delay_time": self.delay_time}

    def prepare(self, block):
        n = block.n_frames
        delay = int(round(float(self.delay_time.render(block)[0]) * block.sample_rate))
        delay = min(max(delay, n), len(self._history) - n)
        idx = (self._write - delay + np.arange(n)) % len(self._history)
        self._prepared = self._history[idx]
        self._prepared_index = block.index

    def commit(self, block):
        n = block.n_frames
        idx = (self._write + np.arange(n)) % len(self._history)
        self._history[idx] = self.mix_inputs(block)
        self._write = (self._write + n) % len(self._history)

    def pull(self, block):
        if self._prepared_index != block.index:
            self.prepare(block)
        return self._prepared

    def process(self, block):
        return self.pull(block)


class WaveShaperNode(AudioNode):
    """Maps input samples in [-1, 1] through a lookup curve."""

    kind = "wave_shaper"

    def __init__(self, context, curve: NDArray[np.float64], name: Optional[str] = None):
        super().__init__(context, name)
        self.curve = np.asarray(curve, dtype=np.float64)
        self._grid = np.linspace(-1.0, 1.0, len(self.curve))

    def process(self, block):
        return np.interp(self.mix_inputs(block), self._grid, self.curve)


def make_saturation_curve(amount: float = 400, n_samples: int = 44100) -> NDArray[np.float64]:
    """Soft saturation transfer curve; larger ``amount`` drives harder."""
    k = float(amount)
    x = np.arange(n_samples) * 2 / n_samples - 1
    deg = np.pi / 180
    return ((3 + k) * x * 20 * deg) / (np.pi + k * np.abs(x))


class DynamicsCompressorNode(AudioNode):
    """
    Feed-forward compressor with a soft knee.

    Levels are tracked with separate attack and release smoothing; gain
    reduction is computed in decibels.
    """

    kind = "compressor"

    def __init__(
        self,
        context,
        threshold: float = -24.0,
        knee: float = 30.0,
        ratio: float = 12.0,
        attack: float = 0.003,
        release: float = 0.25,
        name: Optional[str] = None
    ):
        super().__init__(context, name)
        self.threshold = threshold
        self.knee = knee
        self.ratio = ratio
        self.attack = attack
        self.release = release

        # Calculate attack/release coefficients
        self.attack_coeff = np.exp(-1.0 / (attack * context.sample_rate))
        self.release_coeff = np.exp(-1.0 / (release * context.sample_rate))

        self.envelope = 0.0
        self.reduction = 0.0  # most recent gain reduction in dB

    def gain_db(self, level_db: NDArray[np.float64]) -> NDArray[np.float64]:
        """Static curve: output level in dB for an input level in dB."""
        over = level_db - self.threshold
        slope = 1.0 / self.ratio - 1.0
        out = level_db.copy()
        if self.knee > 0:
            in_knee = np.abs(over) <= self.knee / 2
            out[in_knee] += slope * (over[in_knee] + self.knee / 2) ** 2 / (2 * self.knee)
        above = over > self.knee / 2
        out[above] = self.threshold + over[above] / self.ratio
        return out

    def process(self, block):
        samples = self.mix_inputs(block)
        levels = np.empty_like(samples)

        envelope = self.envelope
        for i, sample in enumerate(np.abs(samples)):
            coeff = self.attack_coeff if sample > envelope else self.release_coeff
            envelope = coeff * envelope + (1 - coeff) * sample
            levels[i] = envelope
        self.envelope = envelope

        level_db = 20 * np.log10(np.maximum(levels, 1e-9))
        reduction = self.gain_db(level_db) - level_db
        self.reduction = float(reduction[-1]) if len(reduction) else 0.0
        return samples * 10 ** (reduction / 20)


class DestinationNode(AudioNode):
    """Final sink of the graph; whatever reaches it goes to the output device."""

    kind = "destination"
    number_of_outputs = 0

    def process(self, block):
        return self.mix_inputs(block)
