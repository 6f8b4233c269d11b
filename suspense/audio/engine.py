"""
Soundscape engine for the Suspense generator.

Turns four control values into a running session: an audio context with
the signal bus, reverb and layers built into it, three periodic timers
and a driver thread that fires the timers and renders ahead into the
output device.
"""

import threading
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional

import numpy as np

from suspense.audio.context import AudioContext
from suspense.audio.layers import DroneLayer, Layer, PluckLayer, PulseLayer, TextureLayer
from suspense.audio.mapping import (
    control,
    pluck_probability,
    pulse_interval_ms,
    texture_interval_ms,
)
from suspense.audio.mixer import SignalBus
from suspense.audio.output import AudioOutput
from suspense.audio.scheduler import EventScheduler, ManualClock, MonotonicClock
from suspense.core.config import Settings, get_settings
from suspense.core.logging import get_logger

logger = get_logger(__name__)

PLUCK_INTERVAL_MS = 2000.0


@dataclass(frozen=True)
class EngineConfig:
    """The four user controls, each nominally in [0, 100]."""
    tension: float = 70.0
    pulse: float = 60.0
    reverb: float = 65.0
    volume: float = 75.0

    def clamped(self) -> "EngineConfig":
        """Copy with every control bounded to [0, 100] and NaN mapped to 0."""
        return EngineConfig(
            tension=control(self.tension),
            pulse=control(self.pulse),
            reverb=control(self.reverb),
            volume=control(self.volume)
        )


class EngineSession:
    """
    One start-to-stop lifetime of the engine.

    Owns the audio context and everything built into it. ``teardown``
    releases it all exactly once.
    """

    def __init__(
        self,
        config: EngineConfig,
        settings: Settings,
        rng: np.random.Generator,
        output=None,
        clock=None
    ):
        """
        Build the session graph.

        Args:
            config: Starting controls (clamped here)
            settings: Audio settings
            rng: Random source for the triggered layers
            output: AudioOutput-like sink (None = offline)
            clock: Millisecond clock for the timers

        Raises:
            AudioDeviceError: If the output cannot be opened
        """
        self.config = config.clamped()
        self.settings = settings
        self.rng = rng
        self.scheduler = EventScheduler(clock or MonotonicClock())
        self.closed = False

        self._halt = threading.Event()
        self._driver: Optional[threading.Thread] = None

        self.context = AudioContext(
            sample_rate=settings.sample_rate,
            render_quantum=settings.render_quantum,
            output=output
        )
        try:
            tension = self.config.tension
            self.bus = SignalBus(self.context, reverb=self.config.reverb, volume=self.config.volume)
            self.drone = DroneLayer(self.context, self.bus, tension)
            self.pulse = PulseLayer(self.context, self.bus)
            self.texture = TextureLayer(self.context, self.bus, rng, tension)
            self.pluck = PluckLayer(self.context, self.bus, rng, tension)
        except Exception:
            self.context.close()
            raise

    @property
    def layers(self) -> Dict[str, Layer]:
        return {
            layer.name: layer
            for layer in (self.drone, self.pulse, self.texture, self.pluck)
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self, start_driver: bool = True):
        """Start the continuous layers, install the timers and the driver."""
        with self.context.lock:
            self.drone.start()
            self.pulse.start()
        self.install_timers()
        if start_driver:
            self.start_driver()

    def install_timers(self):
        config = self.config
        self.scheduler.every("pulse", pulse_interval_ms(config.pulse), self.fire_pulse)
        self.scheduler.every("texture", texture_interval_ms(config.tension), self.fire_texture)
        self.scheduler.every("pluck", PLUCK_INTERVAL_MS, self.fire_pluck)

    def start_driver(self):
        if self._driver is not None:
            return
        self._halt.clear()
        self._driver = threading.Thread(target=self._drive, name="suspense-driver", daemon=True)
        self._driver.start()

    def halt(self):
        """Stop the driver thread and wait for it."""
        self._halt.set()
        driver, self._driver = self._driver, None
        if driver is not None and driver is not threading.current_thread():
            driver.join(timeout=1.0)

    def teardown(self):
        """Release the session. Every step runs even if an earlier one failed."""
        if self.closed:
            return
        self.closed = True
        self._attempt("shutdown_scheduler", self.scheduler.shutdown)
        self._attempt("halt_driver", self.halt)
        self._attempt("stop_drone", self.drone.stop)
        self._attempt("stop_pulse", self.pulse.stop)
        self._attempt("close_context", self.context.close)

    def _attempt(self, step: str, action: Callable[[], None]):
        try:
            action()
        except Exception as e:
            logger.warning("teardown_step_failed", step=step, error=str(e))

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def tick(self) -> int:
        """
        Run due timers, then render while the output has room.

        Returns:
            Number of timers fired
        """
        with self.context.lock:
            if self.context.closed:
                return 0
            fired = self.scheduler.run_pending()
            self.context.pump()
        return fired

    def _drive(self):
        logger.info("driver_started")
        interval = self.settings.driver_interval
        while not self._halt.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.exception("driver_tick_error", error=str(e))
            self._halt.wait(interval)
        logger.info("driver_stopped")

    # ------------------------------------------------------------------
    # Timer callbacks
    # ------------------------------------------------------------------

    def fire_pulse(self):
        with self.context.lock:
            now = self.context.current_time
            self.pulse.trigger(now)
        logger.debug("timer_fired", timer="pulse", at=now)

    def fire_texture(self):
        with self.context.lock:
            now = self.context.current_time
            self.texture.trigger(now, self.config.tension)
        logger.debug("timer_fired", timer="texture", at=now)

    def fire_pluck(self):
        tension = self.config.tension
        probability = pluck_probability(tension)
        if self.rng.random() >= probability:
            logger.debug("pluck_skipped", probability=probability)
            return
        with self.context.lock:
            now = self.context.current_time
            self.pluck.trigger(now, tension)
        logger.debug("timer_fired", timer="pluck", at=now)

    # ------------------------------------------------------------------
    # Live control
    # ------------------------------------------------------------------

    def update(self, config: EngineConfig):
        """Apply new controls with smoothed automation."""
        config = config.clamped()
        with self.context.lock:
            self.config = config
            self.bus.set_volume(config.volume)
            self.bus.set_reverb(config.reverb)
            self.drone.set_tension(config.tension)
            self.texture.set_parameter("tension", config.tension)
            self.pluck.set_parameter("tension", config.tension)
        if not self.scheduler.is_shutdown:
            self.scheduler.set_interval("pulse", pulse_interval_ms(config.pulse))
            self.scheduler.set_interval("texture", texture_interval_ms(config.tension))


class SoundscapeEngine:
    """
    Start/stop front end over engine sessions.

    At most one session is alive at a time; starting again tears the old
    one down first.

    Usage::

        with SoundscapeEngine() as engine:
            engine.start(EngineConfig(tension=80))
            engine.update(EngineConfig(tension=90, volume=60))
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        rng: Optional[np.random.Generator] = None,
        output_factory: Optional[Callable[[], object]] = None,
        clock=None,
        autostart_driver: bool = True
    ):
        """
        Initialize the engine.

        Args:
            settings: Settings to use (default: global settings)
            rng: Random source (default: seeded from settings.random_seed)
            output_factory: Builds the output sink for each session
            clock: Millisecond clock for the timers
            autostart_driver: Start the driver thread with each session
        """
        self.settings = settings or get_settings()
        self.rng = rng if rng is not None else np.random.default_rng(self.settings.random_seed)
        self.output_factory = output_factory or self._default_output
        self.clock = clock or MonotonicClock()
        self.autostart_driver = autostart_driver
        self.config = EngineConfig()

        self._session: Optional[EngineSession] = None
        self._lock = threading.RLock()

        logger.info(
            "soundscape_engine_initialized",
            sample_rate=self.settings.sample_rate,
            autostart_driver=autostart_driver
        )

    def _default_output(self) -> AudioOutput:
        return AudioOutput(
            sample_rate=self.settings.sample_rate,
            block_size=self.settings.output_block_size,
            buffer_blocks=self.settings.output_buffer_blocks,
            device=self.settings.output_device
        )

    @property
    def session(self) -> Optional[EngineSession]:
        return self._session

    @property
    def is_running(self) -> bool:
        return self._session is not None

    def set_running(self, running: bool, config: Optional[EngineConfig] = None):
        """Follow an on/off toggle. Repeating the current state does nothing."""
        with self._lock:
            if bool(running) == self.is_running:
                return
            if running:
                self.start(config)
            else:
                self.stop()

    def start(self, config: Optional[EngineConfig] = None) -> EngineSession:
        """
        Start a new session, replacing any active one.

        Raises:
            AudioDeviceError: If no output is available; no session is left
        """
        with self._lock:
            if self._session is not None:
                self.stop()

            if config is not None:
                self.config = config.clamped()

            output = self.output_factory()
            session = EngineSession(self.config, self.settings, self.rng, output, self.clock)
            try:
                session.open(start_driver=self.autostart_driver)
            except Exception:
                session.teardown()
                raise
            self._session = session

        logger.info("session_started", **asdict(self.config))
        return session

    def stop(self):
        """Tear down the active session, if any."""
        with self._lock:
            session, self._session = self._session, None
            if session is None:
                return
            session.teardown()
        logger.info("session_stopped", frames_rendered=session.context.frames_rendered)

    def update(self, config: EngineConfig):
        """Store new controls and apply them to the running session."""
        with self._lock:
            self.config = config.clamped()
            if self._session is not None:
                self._session.update(self.config)
        logger.info("engine_config_updated", **asdict(self.config))

    def render_offline(self, config: EngineConfig, seconds: float) -> np.ndarray:
        """
        Render a session without an output device.

        Timers and rendering advance in lock-step on a manual clock that
        follows the audio clock.

        Args:
            config: Controls for the render
            seconds: Length of audio to produce

        Returns:
            Mono float32 samples
        """
        clock = ManualClock()
        session = EngineSession(config, self.settings, self.rng, output=None, clock=clock)
        total = int(round(seconds * self.settings.sample_rate))
        block_size = self.settings.output_block_size
        chunks = []
        rendered = 0
        try:
            session.open(start_driver=False)
            while rendered < total:
                session.scheduler.run_pending()
                n = min(block_size, total - rendered)
                chunks.append(session.context.render(n))
                rendered += n
                clock.set(session.context.current_time * 1000.0)
        finally:
            session.teardown()

        logger.info("offline_render_complete", seconds=seconds, frames=total)
        if not chunks:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(chunks).astype(np.float32)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False
