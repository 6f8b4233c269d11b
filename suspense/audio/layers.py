"""
Sound layers of the soundscape.

Two families share one interface:

- continuous layers (drone, pulse carrier) run from ``start()`` until
  ``stop()``
- triggered layers (texture, pluck) build a short-lived voice per
  ``trigger()`` call that disposes itself once it has rung out

All layers accept ``set_parameter(name, value)`` and route their output
to both the dry and the wet (reverb) side of the signal bus.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numpy as np

from suspense.audio.context import AudioContext
from suspense.audio.mapping import (
    control,
    drone_cutoff,
    drone_gain,
    pluck_decay,
    pluck_peak,
    texture_center,
    texture_decay,
    texture_peak,
    texture_q,
)
from suspense.audio.mixer import SignalBus
from suspense.audio.nodes import AudioNode, ScheduledSourceNode, make_saturation_curve
from suspense.core.exceptions import ContextClosedError, InvalidStateError
from suspense.core.logging import get_logger

logger = get_logger(__name__)

SILENCE = 0.0001  # exponential ramps cannot reach zero
VOICE_LENGTH = 2.0  # seconds before a triggered source is stopped


class LayerKind(Enum):
    CONTINUOUS = "continuous"
    TRIGGERED = "triggered"


class Layer(ABC):
    """Base class for all layers."""

    name = "layer"
    kind: LayerKind

    def __init__(self, context: AudioContext, bus: SignalBus):
        self.context = context
        self.bus = bus

    def _route(self, node: AudioNode):
        node.connect(self.bus.dry_input)
        node.connect(self.bus.wet_input)

    def _now(self, time: Optional[float]) -> float:
        return self.context.current_time if time is None else time

    @abstractmethod
    def set_parameter(self, name: str, value: float):
        """Update a named control (currently only ``tension``)."""
        pass


class ContinuousLayer(Layer):
    """Layer whose sources run for the whole session."""

    kind = LayerKind.CONTINUOUS

    def __init__(self, context, bus):
        super().__init__(context, bus)
        self.is_running = False

    @property
    @abstractmethod
    def sources(self) -> List[ScheduledSourceNode]:
        pass

    def start(self):
        """Start all sources. No-op if already running."""
        if self.is_running:
            return
        self.is_running = True
        for source in self.sources:
            source.start()
        logger.debug("layer_started", layer=self.name)

    def stop(self):
        """Stop all sources. Safe on a stopped layer or a closed context."""
        if not self.is_running:
            return
        self.is_running = False
        for source in self.sources:
            try:
                source.stop()
            except (InvalidStateError, ContextClosedError):
                pass
        logger.debug("layer_stopped", layer=self.name)


@dataclass
class Voice:
    """One triggered sound event and the nodes it owns."""
    layer: str
    started_at: float
    frequency: float
    peak: float
    decay: float
    waveform: str = "noise"
    nodes: List[AudioNode] = field(default_factory=list, repr=False)
    disposed: bool = False


class TriggeredLayer(Layer):
    """Layer that spawns independent one-shot voices."""

    kind = LayerKind.TRIGGERED

    def __init__(self, context, bus, rng: np.random.Generator, tension: float = 0.0):
        super().__init__(context, bus)
        self.rng = rng
        self.tension = control(tension)
        self.voices: List[Voice] = []
        self.trigger_count = 0

    def set_parameter(self, name: str, value: float):
        if name != "tension":
            raise KeyError(f"{self.name} has no parameter {name!r}")
        self.tension = control(value)

    @abstractmethod
    def trigger(self, time: Optional[float] = None, tension: Optional[float] = None) -> Voice:
        pass

    def _launch(self, voice: Voice, source: ScheduledSourceNode, at: float):
        source.start(at)
        source.stop(at + VOICE_LENGTH)
        source.on_ended(lambda: self._dispose(voice))
        self.voices.append(voice)
        self.trigger_count += 1

    def _dispose(self, voice: Voice):
        for node in voice.nodes:
            self.context.remove(node)
        voice.disposed = True
        self.voices.remove(voice)

    @property
    def active_voices(self) -> int:
        return len(self.voices)


# ----------------------------------------------------------------------
# Drone
# ----------------------------------------------------------------------

DRONE_ROOT = 55.0  # A1
# (waveform, semitones above root, detune in cents)
DRONE_VOICES = (
    ("sawtooth", 0, -7.0),
    ("triangle", 1, 3.0),   # minor second: the tense interval
    ("sawtooth", 7, 7.0),   # fifth
)
DRONE_LFO_RATE = 0.07
DRONE_LFO_DEPTH = 220.0
DRONE_SMOOTHING = 0.5


class DroneLayer(ContinuousLayer):
    """
    Sustained three-oscillator tone under a slowly sweeping low-pass.

    Tension opens the filter and raises the level.
    """

    name = "drone"

    def __init__(self, context, bus, tension: float = 0.0):
        super().__init__(context, bus)
        tension = control(tension)

        self.oscillators = [
            context.create_oscillator(
                waveform,
                DRONE_ROOT * 2 ** (semitones / 12),
                detune=cents,
                name=f"drone.osc{i}"
            )
            for i, (waveform, semitones, cents) in enumerate(DRONE_VOICES)
        ]
        self.filter = context.create_biquad_filter(
            "lowpass", frequency=drone_cutoff(tension), name="drone.lpf"
        )
        self.lfo = context.create_oscillator("sine", DRONE_LFO_RATE, name="drone.lfo")
        self.lfo_depth = context.create_gain(DRONE_LFO_DEPTH, name="drone.lfo_depth")
        self.output = context.create_gain(drone_gain(tension), name="drone.out")

        self.lfo.connect(self.lfo_depth).connect(self.filter.frequency)
        for osc in self.oscillators:
            osc.connect(self.filter)
        self.filter.connect(self.output)
        self._route(self.output)

    @property
    def sources(self):
        return [*self.oscillators, self.lfo]

    def set_tension(self, tension: float):
        """Glide cutoff and level toward the values for ``tension``."""
        tension = control(tension)
        now = self.context.current_time
        self.filter.frequency.set_target_at_time(drone_cutoff(tension), now, DRONE_SMOOTHING)
        self.output.gain.set_target_at_time(drone_gain(tension), now, DRONE_SMOOTHING)

    def set_parameter(self, name: str, value: float):
        if name != "tension":
            raise KeyError(f"drone has no parameter {name!r}")
        self.set_tension(value)


# ----------------------------------------------------------------------
# Pulse
# ----------------------------------------------------------------------

PULSE_FREQUENCY = 50.0
PULSE_DRIVE = 400
PULSE_SWEEP = (60.0, 40.0, 0.09)  # start Hz, end Hz, seconds
PULSE_PEAK = 0.6
PULSE_ATTACK = 0.01
PULSE_DECAY = 0.6


class PulseLayer(ContinuousLayer):
    """
    Heartbeat thump.

    A saturated low sine runs continuously behind a gain held at zero;
    each trigger sweeps the pitch down and opens a short envelope. A new
    trigger replaces whatever automation is still pending.
    """

    name = "pulse"

    def __init__(self, context, bus, drive: float = PULSE_DRIVE):
        super().__init__(context, bus)
        self.oscillator = context.create_oscillator("sine", PULSE_FREQUENCY, name="pulse.osc")
        self.shaper = context.create_wave_shaper(make_saturation_curve(drive), name="pulse.shaper")
        self.envelope = context.create_gain(0.0, name="pulse.env")
        self.trigger_count = 0

        self.oscillator.connect(self.shaper).connect(self.envelope)
        self._route(self.envelope)

    @property
    def sources(self):
        return [self.oscillator]

    def trigger(self, time: Optional[float] = None):
        now = self._now(time)
        start_hz, end_hz, sweep = PULSE_SWEEP

        frequency = self.oscillator.frequency
        frequency.cancel_scheduled_values(now)
        frequency.set_value_at_time(start_hz, now)
        frequency.exponential_ramp_to_value_at_time(end_hz, now + sweep)

        gain = self.envelope.gain
        gain.cancel_scheduled_values(now)
        gain.set_value_at_time(0.0, now)
        gain.linear_ramp_to_value_at_time(PULSE_PEAK, now + PULSE_ATTACK)
        gain.exponential_ramp_to_value_at_time(SILENCE, now + PULSE_DECAY)

        self.trigger_count += 1

    def set_parameter(self, name: str, value: float):
        # Pulse rate lives in the scheduler; the thump itself has no controls
        raise KeyError(f"pulse has no parameter {name!r}")


# ----------------------------------------------------------------------
# Texture
# ----------------------------------------------------------------------

NOISE_SECONDS = 2.0
NOISE_LEVEL = 0.8
TEXTURE_JITTER = 0.3  # total span, i.e. +/-15%
TEXTURE_ATTACK = 0.02


class TextureLayer(TriggeredLayer):
    """
    Band-passed noise swells.

    The noise buffer is generated once; each trigger only adds a play-head,
    a filter and an envelope over it.
    """

    name = "texture"

    def __init__(self, context, bus, rng, tension: float = 0.0):
        super().__init__(context, bus, rng, tension)
        n_samples = int(context.sample_rate * NOISE_SECONDS)
        self.noise = (rng.random(n_samples) * 2 - 1) * NOISE_LEVEL

    def trigger(self, time=None, tension=None) -> Voice:
        now = self._now(time)
        tension = self.tension if tension is None else control(tension)

        center = texture_center(tension) * (1 + (self.rng.random() - 0.5) * TEXTURE_JITTER)
        peak = texture_peak(tension)
        decay = texture_decay(tension)

        source = self.context.create_buffer_source(self.noise)
        band = self.context.create_biquad_filter("bandpass", frequency=center, Q=texture_q(tension))
        envelope = self.context.create_gain(0.0)
        source.connect(band).connect(envelope)
        self._route(envelope)

        envelope.gain.set_value_at_time(0.0, now)
        envelope.gain.linear_ramp_to_value_at_time(peak, now + TEXTURE_ATTACK)
        envelope.gain.exponential_ramp_to_value_at_time(SILENCE, now + decay)

        voice = Voice(self.name, now, center, peak, decay, nodes=[source, band, envelope])
        self._launch(voice, source, now)
        return voice


# ----------------------------------------------------------------------
# Pluck
# ----------------------------------------------------------------------

PLUCK_WAVEFORMS = ("square", "triangle")
PLUCK_BASE = 440.0
PLUCK_OCTAVES = (0, 1, 2)
PLUCK_INTERVALS = (1, 2, 6, 10)  # semitones: m2, M2, tritone, m7
PLUCK_HIGHPASS = 600.0
PLUCK_ATTACK = 0.005


class PluckLayer(TriggeredLayer):
    """Sparse, high, dissonant pings."""

    name = "pluck"

    def trigger(self, time=None, tension=None) -> Voice:
        now = self._now(time)
        tension = self.tension if tension is None else control(tension)

        waveform = PLUCK_WAVEFORMS[self.rng.integers(len(PLUCK_WAVEFORMS))]
        octave = PLUCK_OCTAVES[self.rng.integers(len(PLUCK_OCTAVES))]
        interval = PLUCK_INTERVALS[self.rng.integers(len(PLUCK_INTERVALS))]
        frequency = PLUCK_BASE * 2 ** octave * 2 ** (interval / 12)
        peak = pluck_peak(tension)
        decay = pluck_decay(tension)

        osc = self.context.create_oscillator(waveform, frequency)
        highpass = self.context.create_biquad_filter("highpass", frequency=PLUCK_HIGHPASS)
        envelope = self.context.create_gain(0.0)
        osc.connect(highpass).connect(envelope)
        self._route(envelope)

        envelope.gain.set_value_at_time(0.0, now)
        envelope.gain.linear_ramp_to_value_at_time(peak, now + PLUCK_ATTACK)
        envelope.gain.exponential_ramp_to_value_at_time(SILENCE, now + decay)

        voice = Voice(self.name, now, frequency, peak, decay, waveform, nodes=[osc, highpass, envelope])
        self._launch(voice, osc, now)
        return voice
