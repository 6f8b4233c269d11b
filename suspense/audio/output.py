"""AudioOutput: sounddevice OutputStream wrapper."""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING, Callable, Optional

import numpy as np

from suspense.core.exceptions import AudioDeviceError
from suspense.core.logging import get_logger

if TYPE_CHECKING:
    import sounddevice as sd

logger = get_logger(__name__)


class AudioOutput:
    """Wraps a sounddevice OutputStream with a simple write() interface.

    Uses a callback-based stream fed from a bounded deque of rendered
    blocks. The engine renders ahead while ``has_capacity()`` is true; the
    device callback only copies, and plays silence on underrun.

    Usage::

        out = AudioOutput(sample_rate=44100, block_size=1024)
        out.start()
        if out.has_capacity():
            out.write(audio_block)  # numpy float64 array
        ...
        out.stop()
    """

    def __init__(
        self,
        sample_rate: int = 44100,
        block_size: int = 1024,
        channels: int = 1,
        buffer_blocks: int = 4,
        device: Optional[str] = None,
    ):
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.channels = channels
        self.buffer_blocks = buffer_blocks
        self.device = device
        self.underruns = 0
        self._buffer: deque[np.ndarray] = deque()
        self._stream: "sd.OutputStream | None" = None

    @property
    def active(self) -> bool:
        return self._stream is not None

    def _callback(
        self,
        outdata: np.ndarray,
        frames: int,
        time_info: object,
        status: "sd.CallbackFlags",
    ) -> None:
        if self._buffer:
            block = self._buffer.popleft()
            n = min(len(block), frames)
            outdata[:n, :] = block[:n, None]
            if n < frames:
                outdata[n:, :] = 0.0
        else:
            self.underruns += 1
            outdata[:, :] = 0.0

    def start(self) -> None:
        """Open and start the audio stream.

        Raises:
            AudioDeviceError: If no output device or stream is available
        """
        if self._stream is not None:
            return
        try:
            # PortAudio is loaded on import; either may be missing on the host
            import sounddevice as sd
        except (ImportError, OSError) as e:
            logger.error("portaudio_unavailable", error=str(e))
            raise AudioDeviceError(f"sounddevice or PortAudio unavailable: {e}") from e

        try:
            stream = sd.OutputStream(
                samplerate=self.sample_rate,
                blocksize=self.block_size,
                channels=self.channels,
                dtype="float32",
                device=self.device,
                callback=self._callback,
            )
            stream.start()
        except (sd.PortAudioError, OSError, ValueError) as e:
            logger.error("audio_output_unavailable", device=self.device, error=str(e))
            raise AudioDeviceError(f"Audio output unavailable: {e}") from e
        self._stream = stream
        logger.info(
            "audio_output_started",
            sample_rate=self.sample_rate,
            block_size=self.block_size,
            device=self.device,
        )

    def has_capacity(self) -> bool:
        """True while fewer than ``buffer_blocks`` blocks are queued."""
        return self._stream is not None and len(self._buffer) < self.buffer_blocks

    def write(self, audio: np.ndarray) -> None:
        """Queue an audio block for playback."""
        self._buffer.append(audio.astype(np.float32))

    def stop(self) -> None:
        """Stop and close the audio stream."""
        if self._stream is not None:
            stream, self._stream = self._stream, None
            try:
                stream.stop()
            finally:
                stream.close()
            logger.info("audio_output_stopped", underruns=self.underruns)
        self._buffer.clear()


class NullOutput:
    """Device-less stand-in for AudioOutput.

    Consumes audio at the pace of a millisecond clock, so a manual clock
    drives rendering deterministically in tests and offline renders.
    Written blocks are kept when ``keep`` is set.
    """

    def __init__(
        self,
        clock: Callable[[], float],
        sample_rate: int = 44100,
        block_size: int = 1024,
        buffer_blocks: int = 1,
        keep: bool = False,
    ):
        self.clock = clock
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.buffer_blocks = buffer_blocks
        self.keep = keep
        self.blocks: list[np.ndarray] = []
        self.frames_written = 0
        self._started_ms: float | None = None

    @property
    def active(self) -> bool:
        return self._started_ms is not None

    def start(self) -> None:
        if self._started_ms is None:
            self._started_ms = self.clock()

    def frames_consumed(self) -> int:
        if self._started_ms is None:
            return 0
        elapsed = max(self.clock() - self._started_ms, 0.0)
        return int(elapsed * self.sample_rate / 1000.0)

    def has_capacity(self) -> bool:
        if self._started_ms is None:
            return False
        ahead = self.frames_written - self.frames_consumed()
        return ahead < self.buffer_blocks * self.block_size

    def write(self, audio: np.ndarray) -> None:
        self.frames_written += len(audio)
        if self.keep:
            self.blocks.append(audio.astype(np.float32))

    def stop(self) -> None:
        self._started_ms = None

    def audio(self) -> np.ndarray:
        """Everything written so far, concatenated."""
        if not self.blocks:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(self.blocks)
