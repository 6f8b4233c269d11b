"""
Multi-tap feedback reverb.
"""

from typing import List, Sequence, Tuple

from suspense.audio.context import AudioContext
from suspense.audio.nodes import BiquadFilterNode, DelayNode, GainNode
from suspense.core.logging import get_logger

logger = get_logger(__name__)

DELAY_TIMES = (0.011, 0.017, 0.019, 0.029)  # seconds
MAX_DELAY_TIME = 0.25
FEEDBACK_GAIN = 0.35
DAMPING_CUTOFF = 4500.0


class ReverbNetwork:
    """
    Small feedback delay network producing a diffuse wet signal.

    The input is broadcast to four short delay lines. Each line feeds the
    shared damping low-pass (the wet output) and its own feedback gain,
    which loops back into that same line only. There is no cross-coupling
    matrix between lines.
    """

    def __init__(
        self,
        context: AudioContext,
        delay_times: Sequence[float] = DELAY_TIMES,
        feedback: float = FEEDBACK_GAIN,
        damping_cutoff: float = DAMPING_CUTOFF,
        max_delay_time: float = MAX_DELAY_TIME
    ):
        """
        Build the network into ``context``.

        Args:
            context: Audio context to build into
            delay_times: Delay line lengths in seconds
            feedback: Per-line feedback gain
            damping_cutoff: Low-pass cutoff of the shared damping stage (Hz)
            max_delay_time: Capacity of each line; longer times are capped
        """
        self.context = context
        self.input: GainNode = context.create_gain(1.0, name="reverb.in")
        self.output: GainNode = context.create_gain(1.0, name="reverb.out")
        self.damping: BiquadFilterNode = context.create_biquad_filter(
            "lowpass", frequency=damping_cutoff, name="reverb.damp"
        )
        self.lines: List[Tuple[DelayNode, GainNode]] = []

        for i, delay_time in enumerate(delay_times):
            delay = context.create_delay(
                max_delay_time=max_delay_time,
                delay_time=min(delay_time, max_delay_time),
                name=f"reverb.delay{i}"
            )
            loop = context.create_gain(feedback, name=f"reverb.feedback{i}")

            self.input.connect(delay)
            delay.connect(self.damping)
            delay.connect(loop)
            loop.connect(delay)
            self.lines.append((delay, loop))

        self.damping.connect(self.output)

        logger.debug(
            "reverb_network_built",
            lines=len(self.lines),
            feedback=feedback,
            damping_cutoff=damping_cutoff
        )

    @property
    def delay_times(self) -> List[float]:
        return [delay.delay_time.value for delay, _ in self.lines]
