"""
Signal bus: dry/wet routing, compression and master level.
"""

from typing import Dict

from suspense.audio.context import AudioContext
from suspense.audio.mapping import master_gain, wet_gain
from suspense.audio.nodes import GainNode
from suspense.audio.reverb import ReverbNetwork
from suspense.core.logging import get_logger

logger = get_logger(__name__)

DRY_GAIN = 1.0
VOLUME_SMOOTHING = 0.05  # seconds
REVERB_SMOOTHING = 0.1

COMPRESSOR_SETTINGS = {
    'threshold': -24.0,
    'knee': 20.0,
    'ratio': 3.0,
    'attack': 0.003,
    'release': 0.25,
}


class SignalBus:
    """
    Shared downstream of every layer.

    Layers connect to ``dry_input`` and ``wet_input``; the reverb output
    passes through the wet gain, both paths meet in the compressor, then
    the master gain feeds the context destination.
    """

    def __init__(self, context: AudioContext, reverb: float = 0.0, volume: float = 0.0):
        """
        Build the bus into ``context``.

        Args:
            context: Audio context to build into
            reverb: Initial reverb control (0-100)
            volume: Initial volume control (0-100)
        """
        self.context = context

        self.dry: GainNode = context.create_gain(DRY_GAIN, name="bus.dry")
        self.reverb = ReverbNetwork(context)
        self.wet: GainNode = context.create_gain(wet_gain(reverb), name="bus.wet")
        self.compressor = context.create_dynamics_compressor(
            name="bus.compressor", **COMPRESSOR_SETTINGS
        )
        self.master: GainNode = context.create_gain(master_gain(volume), name="bus.master")

        self.reverb.output.connect(self.wet)
        self.wet.connect(self.compressor)
        self.dry.connect(self.compressor)
        self.compressor.connect(self.master)
        self.master.connect(context.destination)

        logger.info(
            "signal_bus_built",
            wet_gain=self.wet.gain.value,
            master_gain=self.master.gain.value
        )

    @property
    def dry_input(self) -> GainNode:
        return self.dry

    @property
    def wet_input(self) -> GainNode:
        return self.reverb.input

    def set_volume(self, volume: float):
        """Glide the master gain toward the level for ``volume``."""
        self.master.gain.set_target_at_time(
            master_gain(volume), self.context.current_time, VOLUME_SMOOTHING
        )

    def set_reverb(self, reverb: float):
        """Glide the wet gain toward the level for ``reverb``."""
        self.wet.gain.set_target_at_time(
            wet_gain(reverb), self.context.current_time, REVERB_SMOOTHING
        )

    def get_levels(self) -> Dict[str, float]:
        """Current gain stage values."""
        return {
            'dry': self.dry.gain.value,
            'wet': self.wet.gain.value,
            'master': self.master.gain.value,
            'gain_reduction_db': self.compressor.reduction,
        }
