"""
Tests for the engine lifecycle.
"""

import math
import time

import numpy as np
import pytest

from suspense.audio.engine import EngineConfig, SoundscapeEngine
from suspense.audio.mapping import db_to_gain
from suspense.audio.output import NullOutput
from suspense.audio.scheduler import ManualClock, MonotonicClock
from suspense.core.config import Settings
from suspense.core.exceptions import AudioDeviceError

SAMPLE_RATE = 8000
QUIET = EngineConfig(tension=0, pulse=0, reverb=0, volume=0)


class FixedRandom:
    """Stand-in for a Generator whose random() always returns one value."""

    def __init__(self, value):
        self.value = value

    def random(self):
        return self.value


class BrokenOutput:
    block_size = 256

    def start(self):
        raise AudioDeviceError("no output device")

    def stop(self):
        pass


@pytest.fixture
def settings():
    return Settings(sample_rate=SAMPLE_RATE, output_block_size=256, output_buffer_blocks=1)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def engine(settings, clock):
    engine = SoundscapeEngine(
        settings=settings,
        rng=np.random.default_rng(7),
        output_factory=lambda: NullOutput(clock, sample_rate=SAMPLE_RATE, block_size=256),
        clock=clock,
        autostart_driver=False
    )
    yield engine
    engine.stop()


class TestEngineConfig:
    """Test control clamping."""

    def test_defaults(self):
        """Test the default control values."""
        config = EngineConfig()
        assert (config.tension, config.pulse, config.reverb, config.volume) == (70, 60, 65, 75)

    def test_clamped(self):
        """Test clamping of out-of-range and non-finite controls."""
        config = EngineConfig(tension=float("nan"), pulse=150, reverb=-5, volume=math.inf).clamped()
        assert (config.tension, config.pulse, config.reverb, config.volume) == (0, 100, 0, 100)

    def test_clamped_returns_copy(self):
        """Test that clamping leaves the original config untouched."""
        config = EngineConfig(tension=120)
        config.clamped()
        assert config.tension == 120


class TestSessionStart:
    """Test starting sessions."""

    def test_quiet_controls(self, engine):
        """Test timer intervals and levels with every control at zero."""
        session = engine.start(QUIET)

        assert session.scheduler.get("pulse").interval_ms == 1600
        assert session.scheduler.get("texture").interval_ms == 4200
        assert session.scheduler.get("pluck").interval_ms == 2000
        assert session.bus.wet.gain.value == pytest.approx(0.05)
        assert session.bus.master.gain.value == pytest.approx(0.0158, rel=0.01)

    def test_full_tension(self, engine):
        """Test texture and drone voicing at full tension."""
        session = engine.start(EngineConfig(tension=100, pulse=50, reverb=50, volume=50))

        session.fire_texture()
        voice = session.texture.voices[-1]
        assert 3200 * 0.85 <= voice.frequency <= 3200 * 1.15
        assert voice.decay == pytest.approx(0.6)
        assert session.drone.filter.frequency.value == 1800

    def test_continuous_layers_running(self, engine):
        """Test that drone and pulse start with the session."""
        session = engine.start(QUIET)
        assert session.drone.is_running
        assert session.pulse.is_running
        assert set(session.layers) == {"drone", "pulse", "texture", "pluck"}

    def test_graph_topology(self, engine):
        """Test the main connections of the session graph."""
        session = engine.start(QUIET)
        edges = set(session.context.edges())

        assert ("drone.out", "bus.dry") in edges
        assert ("pulse.env", "reverb.in") in edges
        assert ("bus.master", "destination") in edges

    def test_device_failure_leaves_no_session(self, settings, clock):
        """Test that a failing output leaves the engine stopped."""
        engine = SoundscapeEngine(
            settings=settings,
            output_factory=BrokenOutput,
            clock=clock,
            autostart_driver=False
        )
        with pytest.raises(AudioDeviceError):
            engine.start(QUIET)
        assert engine.session is None
        assert not engine.is_running

    def test_factory_failure_leaves_no_session(self, settings, clock):
        """Test that a failing output factory leaves the engine stopped."""
        def no_device():
            raise AudioDeviceError("no default output")

        engine = SoundscapeEngine(settings=settings, output_factory=no_device, clock=clock)
        with pytest.raises(AudioDeviceError) as exc_info:
            engine.start()
        assert exc_info.value.code == "AUDIO_DEVICE_ERROR"
        assert not engine.is_running


class TestTimers:
    """Test timer-driven triggers."""

    def test_pulse_fires_on_interval(self, engine, clock):
        """Test that the pulse fires once its interval elapses."""
        session = engine.start(QUIET)

        clock.advance(1599)
        assert session.tick() == 0
        clock.advance(1)
        assert session.tick() == 1
        assert session.pulse.trigger_count == 1

    def test_texture_fires_on_interval(self, engine, clock):
        """Test that the texture fires once its interval elapses."""
        session = engine.start(QUIET)
        clock.advance(4200)
        session.tick()
        assert session.texture.trigger_count == 1

    def test_stalled_driver_fires_each_timer_once(self, engine, clock):
        """Test that a stalled driver fires each timer once."""
        session = engine.start(EngineConfig(tension=100, pulse=100, reverb=0, volume=0))
        session.rng = FixedRandom(0.99)

        clock.advance(13000)
        assert session.tick() == 3
        assert session.texture.trigger_count == 1
        assert session.pulse.trigger_count == 1

    def test_tick_renders_ahead(self, engine, clock):
        """Test that ticking renders audio ahead of the output clock."""
        session = engine.start(QUIET)
        session.tick()
        assert session.context.frames_rendered == 256

        clock.advance(100)
        session.tick()
        assert session.context.frames_rendered >= 800

    def test_pluck_skipped(self, engine):
        """Test that a pluck tick above the probability stays silent."""
        session = engine.start(QUIET)
        session.rng = FixedRandom(0.99)
        session.fire_pluck()
        assert session.pluck.trigger_count == 0

    def test_pluck_sounds(self, engine):
        """Test that a pluck tick below the probability sounds."""
        session = engine.start(QUIET)
        session.rng = FixedRandom(0.0)
        session.fire_pluck()
        assert session.pluck.trigger_count == 1

    def test_pluck_rate_follows_tension(self, engine, clock):
        """Test the pluck hit rate at full tension."""
        session = engine.start(EngineConfig(tension=100, pulse=0, reverb=0, volume=0))
        for _ in range(200):
            session.fire_pluck()
        assert 0.4 < session.pluck.trigger_count / 200 < 0.7


class TestLiveUpdate:
    """Test applying control changes to a running session."""

    def test_intervals_follow_controls(self, engine, clock):
        """Test that new controls change timer intervals from the next re-arm."""
        session = engine.start(QUIET)
        engine.update(EngineConfig(tension=100, pulse=100, reverb=0, volume=0))

        assert session.scheduler.get("pulse").interval_ms == 420
        assert session.scheduler.get("texture").interval_ms == 1300
        # pending fire time is not moved
        assert session.scheduler.next_fire_ms("pulse") == 1600

        clock.advance(1600)
        session.tick()
        assert session.scheduler.next_fire_ms("pulse") == 2020

    def test_levels_glide(self, engine, clock):
        """Test that volume and reverb glide to their new levels."""
        session = engine.start(QUIET)
        engine.update(EngineConfig(tension=0, pulse=0, reverb=100, volume=100))

        clock.advance(2000)
        session.tick()
        assert session.bus.master.gain.value == pytest.approx(db_to_gain(-3), rel=1e-3)
        assert session.bus.wet.gain.value == pytest.approx(0.5, rel=1e-3)

    def test_update_clamps(self, engine):
        """Test that live updates are clamped."""
        session = engine.start(QUIET)
        engine.update(EngineConfig(tension=float("nan"), pulse=500, reverb=0, volume=0))

        assert session.config.tension == 0
        assert session.scheduler.get("pulse").interval_ms == 420
        assert engine.config.pulse == 100

    def test_update_without_session(self, engine):
        """Test that an update before start is used by the next session."""
        engine.update(EngineConfig(tension=10))
        assert engine.config.tension == 10
        session = engine.start()
        assert session.config.tension == 10

    def test_tension_reaches_triggered_layers(self, engine):
        """Test that tension updates reach texture and pluck."""
        session = engine.start(QUIET)
        engine.update(EngineConfig(tension=100, pulse=0, reverb=0, volume=0))
        assert session.texture.tension == 100
        assert session.pluck.tension == 100


class TestStop:
    """Test teardown and restart."""

    def test_stop_releases_everything(self, engine, clock):
        """Test that stopping releases timers, layers and the context."""
        session = engine.start(QUIET)
        engine.stop()

        assert engine.session is None
        assert session.closed
        assert session.context.closed
        assert session.scheduler.pending == []
        assert not session.drone.is_running

        clock.advance(10000)
        assert session.tick() == 0
        assert session.scheduler.run_pending() == 0
        assert session.pulse.trigger_count == 0

    def test_stop_is_idempotent(self, engine):
        """Test that stop can be called repeatedly."""
        engine.stop()
        engine.start(QUIET)
        engine.stop()
        engine.stop()
        assert not engine.is_running

    def test_restart_leaves_one_session(self, engine, clock):
        """Test that starting again replaces the running session."""
        first = engine.start(QUIET)
        second = engine.start(QUIET)

        assert engine.session is second
        assert first.closed
        assert first.scheduler.pending == []
        assert second.scheduler.pending == ["pluck", "pulse", "texture"]

        clock.advance(5000)
        assert first.scheduler.run_pending() == 0
        assert second.tick() > 0
        assert first.pulse.trigger_count == 0

    def test_start_stop_start(self, engine, clock):
        """Test a fresh session after a stop."""
        first = engine.start(QUIET)
        engine.stop()
        second = engine.start(QUIET)

        for _ in range(2):
            clock.advance(1600)
            second.tick()
        assert second.pulse.trigger_count == 2
        assert first.pulse.trigger_count == 0
        assert first.context.closed
        assert not second.context.closed

    def test_teardown_continues_after_failure(self, engine, monkeypatch):
        """Test that a failing teardown step does not block the rest."""
        session = engine.start(QUIET)

        def boom():
            raise RuntimeError("stuck oscillator")

        monkeypatch.setattr(session.drone, "stop", boom)
        engine.stop()

        assert session.context.closed
        assert not session.pulse.is_running

    def test_set_running_is_edge_triggered(self, engine):
        """Test that set_running only acts on a state change."""
        engine.set_running(True, QUIET)
        session = engine.session
        engine.set_running(True, QUIET)
        assert engine.session is session

        engine.set_running(False)
        assert engine.session is None
        engine.set_running(False)
        assert not engine.is_running

    def test_context_manager(self, settings, clock):
        """Test that leaving the engine context stops it."""
        with SoundscapeEngine(
            settings=settings,
            output_factory=lambda: NullOutput(clock, sample_rate=SAMPLE_RATE),
            clock=clock,
            autostart_driver=False
        ) as engine:
            session = engine.start(QUIET)
        assert not engine.is_running
        assert session.context.closed


class TestDriver:
    """Test the background driver thread."""

    def test_driver_renders_and_halts(self, settings):
        """Test that the driver thread renders and joins on stop."""
        clock = MonotonicClock()
        engine = SoundscapeEngine(
            settings=settings,
            output_factory=lambda: NullOutput(clock, sample_rate=SAMPLE_RATE, block_size=256),
            clock=clock
        )
        session = engine.start(QUIET)
        try:
            time.sleep(0.2)
            assert session.context.frames_rendered > 0
        finally:
            engine.stop()
        assert session._driver is None
        assert session.context.closed


class TestOfflineRender:
    """Test device-less rendering."""

    def test_render_length_and_type(self, engine):
        """Test the length and sample type of an offline render."""
        audio = engine.render_offline(EngineConfig(tension=100, pulse=100, reverb=50, volume=100), 2.0)

        assert audio.shape == (2 * SAMPLE_RATE,)
        assert audio.dtype == np.float32
        assert np.all(np.isfinite(audio))
        assert np.sqrt(np.mean(audio ** 2)) > 0
        assert engine.session is None

    def test_volume_scales_output(self, settings):
        """Test that volume scales the rendered level."""
        def render(volume):
            engine = SoundscapeEngine(settings=settings, rng=np.random.default_rng(3))
            return engine.render_offline(EngineConfig(tension=50, pulse=50, reverb=50, volume=volume), 1.0)

        quiet = render(0)
        loud = render(100)
        assert np.sqrt(np.mean(loud ** 2)) > 10 * np.sqrt(np.mean(quiet ** 2))
