"""
Control value to sound parameter mappings.

Every control (tension, pulse, reverb, volume) lives in [0, 100]; the
helpers here turn those values into frequencies, gains, durations and
timer intervals for the layers, bus and scheduler.
"""

import math

CONTROL_MIN = 0.0
CONTROL_MAX = 100.0


def clamp(value: float, lo: float, hi: float) -> float:
    """
    Bound a value to [lo, hi].

    The bounds are accepted in either order. NaN maps to ``lo``.
    """
    if lo > hi:
        lo, hi = hi, lo
    if math.isnan(value):
        return lo
    return max(lo, min(hi, value))


def scale(
    value: float,
    in_lo: float,
    in_hi: float,
    out_lo: float,
    out_hi: float
) -> float:
    """
    Linearly map ``value`` from [in_lo, in_hi] onto [out_lo, out_hi].

    The normalized position is clamped to [0, 1], so the result always
    lies between the output bounds. ``out_lo > out_hi`` inverts the
    direction of the mapping.

    Args:
        value: Input value
        in_lo: Input range start
        in_hi: Input range end
        out_lo: Output value at ``in_lo``
        out_hi: Output value at ``in_hi``

    Returns:
        Mapped value
    """
    span = (in_hi - in_lo) or 1.0
    t = clamp((value - in_lo) / span, 0.0, 1.0)
    return out_lo + t * (out_hi - out_lo)


def db_to_gain(db: float) -> float:
    """Convert decibels to a linear amplitude multiplier."""
    return 10.0 ** (db / 20.0)


def control(value: float) -> float:
    """Clamp a raw control value to [0, 100]."""
    return clamp(value, CONTROL_MIN, CONTROL_MAX)


def _from_control(value: float, out_lo: float, out_hi: float) -> float:
    return scale(value, CONTROL_MIN, CONTROL_MAX, out_lo, out_hi)


# Scheduler
def pulse_interval_ms(pulse: float) -> float:
    """Heartbeat period; higher pulse beats faster."""
    return _from_control(pulse, 1600.0, 420.0)


def texture_interval_ms(tension: float) -> float:
    """Gap between noise swells; higher tension swells more often."""
    return _from_control(tension, 4200.0, 1300.0)


def pluck_probability(tension: float) -> float:
    """Chance that a pluck tick actually sounds."""
    return _from_control(tension, 0.15, 0.55)


# Drone
def drone_cutoff(tension: float) -> float:
    return _from_control(tension, 260.0, 1800.0)


def drone_gain(tension: float) -> float:
    return _from_control(tension, 0.1, 0.2)


# Texture
def texture_center(tension: float) -> float:
    return _from_control(tension, 400.0, 3200.0)


def texture_q(tension: float) -> float:
    return _from_control(tension, 2.0, 8.0)


def texture_peak(tension: float) -> float:
    return _from_control(tension, 0.12, 0.35)


def texture_decay(tension: float) -> float:
    """Swell length in seconds; shorter and punchier at high tension."""
    return _from_control(tension, 1.6, 0.6)


# Pluck
def pluck_peak(tension: float) -> float:
    return _from_control(tension, 0.06, 0.18)


def pluck_decay(tension: float) -> float:
    """Pluck ring-out in seconds."""
    return _from_control(tension, 1.2, 0.45)


# Bus
def wet_gain(reverb: float) -> float:
    return _from_control(reverb, 0.05, 0.5)


def master_gain(volume: float) -> float:
    """Master level: -36 dB at 0, -3 dB at 100."""
    return db_to_gain(_from_control(volume, -36.0, -3.0))
