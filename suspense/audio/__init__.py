"""
Audio engine for the Suspense soundscape generator.

Provides a block-rendered signal graph, the soundscape layers and the
session lifecycle that drives them.
"""

from suspense.audio.params import AudioParam
from suspense.audio.nodes import (
    AudioNode,
    GainNode,
    OscillatorNode,
    BufferSourceNode,
    BiquadFilterNode,
    DelayNode,
    WaveShaperNode,
    DynamicsCompressorNode,
    DestinationNode,
    make_saturation_curve
)
from suspense.audio.context import AudioContext, RenderBlock
from suspense.audio.output import AudioOutput, NullOutput
from suspense.audio.reverb import ReverbNetwork
from suspense.audio.mixer import SignalBus
from suspense.audio.layers import (
    LayerKind,
    DroneLayer,
    PulseLayer,
    TextureLayer,
    PluckLayer
)
from suspense.audio.scheduler import EventScheduler, ScheduledEvent, ManualClock, MonotonicClock
from suspense.audio.engine import EngineConfig, EngineSession, SoundscapeEngine

__all__ = [
    'AudioParam',
    'AudioNode',
    'GainNode',
    'OscillatorNode',
    'BufferSourceNode',
    'BiquadFilterNode',
    'DelayNode',
    'WaveShaperNode',
    'DynamicsCompressorNode',
    'DestinationNode',
    'make_saturation_curve',
    'AudioContext',
    'RenderBlock',
    'AudioOutput',
    'NullOutput',
    'ReverbNetwork',
    'SignalBus',
    'LayerKind',
    'DroneLayer',
    'PulseLayer',
    'TextureLayer',
    'PluckLayer',
    'EventScheduler',
    'ScheduledEvent',
    'ManualClock',
    'MonotonicClock',
    'EngineConfig',
    'EngineSession',
    'SoundscapeEngine'
]
