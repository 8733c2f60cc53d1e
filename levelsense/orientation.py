"""
Orientation Engine
==================

Pure transform from a `RawReading` to display-ready angles.

Pitch and roll are recomputed from the accelerometer axes; heading comes from
the magnetometer, with a tilt-compensated variant that projects the magnetic
vector back onto the horizontal plane.

All angles are in degrees. Outputs are rounded to fixed decimals (pitch/roll
1, everything else 2) with round-half-away-from-zero on the exact binary
value, which is what the dashboard has always displayed.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Context, Decimal
from enum import Enum
from typing import Tuple

import numpy as np

from .sensor_frames import RawReading


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class ProcessedOrientation:
    """Angles derived from one reading."""
    pitch: float  # deg, 1 decimal
    roll: float  # deg, 1 decimal
    heading: float  # deg [0, 360), 2 decimals
    magnitude: float  # m/s^2, 2 decimals
    tilt_compensated_heading: float  # deg [0, 360), 2 decimals
    gravity_vector: float  # deg, 2 decimals; NaN for a zero-magnitude reading
    horizontal_acceleration: float  # m/s^2, 2 decimals


# =============================================================================
# NUMERIC HELPERS
# =============================================================================

def rad_to_deg(rad: float) -> float:
    return float(rad * 180.0 / np.pi)


def deg_to_rad(deg: float) -> float:
    return float(deg * np.pi / 180.0)


# wide enough for any finite double at 2 decimals
_EXACT = Context(prec=400)


def round_fixed(value: float, decimals: int) -> float:
    """
    Round to `decimals` places, ties away from zero.

    NaN and infinities pass through unchanged. Negative zero comes back as 0.0.
    """
    if not np.isfinite(value):
        return float(value)
    quantum = Decimal(1).scaleb(-decimals)
    exact = Decimal(float(value))
    return float(exact.quantize(quantum, rounding=ROUND_HALF_UP, context=_EXACT)) + 0.0


# acos(...) * (180 / pi) for the gravity angle, factor computed once
_RAD_TO_DEG = 180.0 / np.pi


def _heading_deg(y: float, x: float) -> float:
    heading = rad_to_deg(np.arctan2(y, x))
    if heading < 0:
        heading += 360.0
    return heading


def _wrap_rounded_heading(value: float) -> float:
    # 359.996 rounds up to 360.00
    return 0.0 if value >= 360.0 else value


# =============================================================================
# ENGINE
# =============================================================================

def compute_orientation(reading: RawReading) -> ProcessedOrientation:
    """
    Compute orientation angles from raw accelerometer/magnetometer axes.

    The firmware-reported `reading.pitch` / `reading.roll` are not used.

    Args:
        reading: Sanitized raw reading

    Returns:
        ProcessedOrientation (rounded)
    """
    a = reading.accelerometer
    m = reading.magnetometer
    ax, ay, az = np.float64(a.x), np.float64(a.y), np.float64(a.z)
    mx, my, mz = np.float64(m.x), np.float64(m.y), np.float64(m.z)

    # huge finite axes overflow to inf instead of raising
    with np.errstate(over="ignore", invalid="ignore"):
        return _compute(ax, ay, az, mx, my, mz)


def _compute(ax, ay, az, mx, my, mz) -> ProcessedOrientation:
    pitch = rad_to_deg(np.arctan2(ay, az))
    roll = rad_to_deg(np.arctan2(ax, az))
    heading = _heading_deg(my, mx)
    magnitude = float(np.sqrt(ax ** 2 + ay ** 2 + az ** 2))

    # Tilt compensation
    pitch_rad = deg_to_rad(pitch)
    roll_rad = deg_to_rad(roll)
    xh = mx * np.cos(pitch_rad) + mz * np.sin(pitch_rad)
    yh = (mx * np.sin(roll_rad) * np.sin(pitch_rad)
          + my * np.cos(roll_rad)
          - mz * np.sin(roll_rad) * np.cos(pitch_rad))
    tilt_heading = _heading_deg(yh, xh)

    # 0/0 at zero magnitude -> NaN for this field only
    with np.errstate(divide="ignore"):
        gravity_vector = float(np.arccos(az / np.float64(magnitude)) * _RAD_TO_DEG)

    horizontal = float(np.sqrt(ax ** 2 + ay ** 2))

    return ProcessedOrientation(
        pitch=round_fixed(pitch, 1),
        roll=round_fixed(roll, 1),
        heading=_wrap_rounded_heading(round_fixed(heading, 2)),
        magnitude=round_fixed(magnitude, 2),
        tilt_compensated_heading=_wrap_rounded_heading(round_fixed(tilt_heading, 2)),
        gravity_vector=round_fixed(gravity_vector, 2),
        horizontal_acceleration=round_fixed(horizontal, 2),
    )


def firmware_divergence(reading: RawReading, processed: ProcessedOrientation) -> Tuple[float, float]:
    """
    Difference between firmware-reported and recomputed angles.

    Diagnostic only; neither value is corrected.

    Returns:
        (pitch_diff, roll_diff) in degrees, firmware minus recomputed
    """
    return (float(reading.pitch - processed.pitch), float(reading.roll - processed.roll))


# =============================================================================
# PRESENTATION HELPERS
# =============================================================================

CARDINAL_DIRECTIONS = ("N", "NE", "E", "SE", "S", "SW", "W", "NW")


def cardinal_direction(degrees: float) -> str:
    """Eight-point compass label for a heading in degrees."""
    # floor(x + 0.5) matches the dashboard's rounding of exact halves
    index = int(np.floor(degrees / 45.0 + 0.5)) % 8
    return CARDINAL_DIRECTIONS[index]


@dataclass(frozen=True)
class LevelRange:
    """Working angle range configured on the device (degrees)."""
    min: float = -45.0
    max: float = 45.0


class LevelZone(Enum):
    BELOW = "below"
    WITHIN = "within"
    ABOVE = "above"


@dataclass(frozen=True)
class LevelStatus:
    zone: LevelZone
    intensity: float  # 0 inside the range, up to 1 at 45 deg past a bound


def classify_roll(roll: float, level_range: LevelRange, full_scale_deg: float = 45.0) -> LevelStatus:
    """
    Place a roll angle relative to the configured working range.

    Args:
        roll: Roll angle in degrees
        level_range: Working range
        full_scale_deg: Distance past a bound at which intensity saturates

    Returns:
        LevelStatus
    """
    if roll < level_range.min:
        return LevelStatus(LevelZone.BELOW, min(abs(roll - level_range.min) / full_scale_deg, 1.0))
    if roll > level_range.max:
        return LevelStatus(LevelZone.ABOVE, min(abs(roll - level_range.max) / full_scale_deg, 1.0))
    return LevelStatus(LevelZone.WITHIN, 0.0)
