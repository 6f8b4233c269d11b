"""
Audio processing context.

The context owns the audio clock, the node registry and (optionally) an
output device. It is a session-scoped resource: created when a session
starts and released exactly once when it stops.
"""

import itertools
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from suspense.audio.nodes import (
    AudioNode,
    BiquadFilterNode,
    BufferSourceNode,
    DelayNode,
    DestinationNode,
    DynamicsCompressorNode,
    GainNode,
    OscillatorNode,
    ScheduledSourceNode,
    WaveShaperNode,
)
from suspense.core.config import settings
from suspense.core.exceptions import ContextClosedError
from suspense.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RenderBlock:
    """One render quantum on the audio clock."""
    index: int
    frame: int
    n_frames: int
    sample_rate: int

    @property
    def start_time(self) -> float:
        return self.frame / self.sample_rate

    @property
    def end_time(self) -> float:
        return (self.frame + self.n_frames) / self.sample_rate

    def frames(self) -> NDArray[np.int64]:
        return self.frame + np.arange(self.n_frames)

    def times(self) -> NDArray[np.float64]:
        return self.frames() / self.sample_rate


class AudioContext:
    """
    Audio processing context.

    Builds and renders a signal graph. With an output attached, ``pump``
    renders ahead into the device buffer; without one the context renders
    offline on demand.

    Usage::

        ctx = AudioContext(sample_rate=44100)
        osc = ctx.create_oscillator("sine", 440.0)
        osc.connect(ctx.destination)
        osc.start()
        audio = ctx.render(4410)
        ctx.close()
    """

    def __init__(
        self,
        sample_rate: Optional[int] = None,
        render_quantum: Optional[int] = None,
        output=None
    ):
        """
        Initialize audio context.

        Args:
            sample_rate: Audio sample rate in Hz
            render_quantum: Frames per graph evaluation
            output: AudioOutput-like sink (None = offline)

        Raises:
            AudioDeviceError: If the output cannot be opened
        """
        self.sample_rate = sample_rate or settings.sample_rate
        self.render_quantum = render_quantum or settings.render_quantum
        self.output = output
        self.lock = threading.RLock()
        self.state = "running"

        self.nodes: List[AudioNode] = []
        self._names = itertools.count()
        self._frame = 0
        self._block_index = 0
        self._ended: List[ScheduledSourceNode] = []

        self.destination = DestinationNode(self, name="destination")

        if self.output is not None:
            self.output.start()

        logger.info(
            "audio_context_opened",
            sample_rate=self.sample_rate,
            render_quantum=self.render_quantum,
            offline=self.output is None
        )

    # ------------------------------------------------------------------
    # Clock
    # ------------------------------------------------------------------

    @property
    def current_time(self) -> float:
        """Audio clock in seconds (frames rendered so far)."""
        return self._frame / self.sample_rate

    @property
    def frames_rendered(self) -> int:
        return self._frame

    def time_to_frame(self, time: float) -> int:
        return int(round(time * self.sample_rate))

    @property
    def closed(self) -> bool:
        return self.state == "closed"

    def ensure_open(self):
        if self.closed:
            raise ContextClosedError("audio context has been closed")

    # ------------------------------------------------------------------
    # Graph registry
    # ------------------------------------------------------------------

    def unique_name(self, kind: str) -> str:
        return f"{kind}-{next(self._names)}"

    def register(self, node: AudioNode):
        self.ensure_open()
        self.nodes.append(node)

    def remove(self, node: AudioNode):
        """Disconnect a node on both sides and drop it from the registry."""
        if node.outputs:
            node.disconnect()
        for upstream in list(node.inputs):
            upstream.disconnect(node)
        for param in node.params.values():
            for upstream in list(param.inputs):
                upstream.disconnect(param)
        if node in self.nodes:
            self.nodes.remove(node)

    def edges(self) -> List[Tuple[str, str]]:
        """All connections as (source name, destination name) pairs."""
        return [
            (node.name, target.name)
            for node in self.nodes
            for target in node.outputs
        ]

    def find(self, name: str) -> Optional[AudioNode]:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def notify_ended(self, node: ScheduledSourceNode):
        self._ended.append(node)

    # ------------------------------------------------------------------
    # Node factories
    # ------------------------------------------------------------------

    def create_gain(self, gain: float = 1.0, name: Optional[str] = None) -> GainNode:
        return GainNode(self, gain=gain, name=name)

    def create_oscillator(
        self,
        waveform: str = "sine",
        frequency: float = 440.0,
        detune: float = 0.0,
        name: Optional[str] = None
    ) -> OscillatorNode:
        return OscillatorNode(self, waveform=waveform, frequency=frequency, detune=detune, name=name)

    def create_buffer_source(self, buffer: NDArray[np.float64], name: Optional[str] = None) -> BufferSourceNode:
        return BufferSourceNode(self, buffer, name=name)

    def create_biquad_filter(
        self,
        filter_type: str = "lowpass",
        frequency: float = 350.0,
        Q: Optional[float] = None,
        name: Optional[str] = None
    ) -> BiquadFilterNode:
        kwargs = {} if Q is None else {"Q": Q}
        return BiquadFilterNode(self, filter_type=filter_type, frequency=frequency, name=name, **kwargs)

    def create_delay(
        self,
        max_delay_time: float = 1.0,
        delay_time: float = 0.0,
        name: Optional[str] = None
    ) -> DelayNode:
        return DelayNode(self, max_delay_time=max_delay_time, delay_time=delay_time, name=name)

    def create_wave_shaper(self, curve: NDArray[np.float64], name: Optional[str] = None) -> WaveShaperNode:
        return WaveShaperNode(self, curve, name=name)

    def create_dynamics_compressor(self, name: Optional[str] = None, **kwargs) -> DynamicsCompressorNode:
        return DynamicsCompressorNode(self, name=name, **kwargs)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render(self, n_frames: int) -> NDArray[np.float64]:
        """
        Render ``n_frames`` of mono audio and advance the clock.

        Args:
            n_frames: Number of frames to render

        Returns:
            Rendered samples as float64
        """
        with self.lock:
            self.ensure_open()
            out = np.empty(n_frames)
            done = 0
            while done < n_frames:
                n = min(self.render_quantum, n_frames - done)
                out[done:done + n] = self._render_quantum(n)
                done += n
            return out

    def _render_quantum(self, n_frames: int) -> NDArray[np.float64]:
        block = RenderBlock(self._block_index, self._frame, n_frames, self.sample_rate)
        delays = [node for node in self.nodes if isinstance(node, DelayNode)]

        # Delay outputs come from history, which breaks feedback cycles
        for delay in delays:
            delay.prepare(block)
        out = self.destination.pull(block)
        for delay in delays:
            delay.commit(block)

        self._frame += n_frames
        self._block_index += 1

        ended, self._ended = self._ended, []
        for node in ended:
            node.fire_ended()

        return out

    def pump(self) -> int:
        """
        Render into the output while it has room.

        Returns:
            Number of frames written
        """
        if self.output is None:
            return 0
        written = 0
        with self.lock:
            while not self.closed and self.output.has_capacity():
                block = self.render(self.output.block_size)
                self.output.write(block)
                written += len(block)
        return written

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def close(self):
        """Release the output and dismantle the graph. Safe to call twice."""
        with self.lock:
            if self.closed:
                return
            self.state = "closed"
            try:
                if self.output is not None:
                    self.output.stop()
            finally:
                for node in self.nodes:
                    node.outputs.clear()
                    node.inputs.clear()
                    for param in node.params.values():
                        param.inputs.clear()
                self.nodes.clear()
                self._ended.clear()

        logger.info("audio_context_closed", frames_rendered=self._frame)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
