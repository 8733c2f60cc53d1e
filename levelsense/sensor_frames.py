"""
Sensor Frame Decoding
=====================

Turns one text frame from the level device's WebSocket stream into a
`RawReading`.

The firmware serializes floats with printf, so a frame can carry tokens a
strict JSON parser rejects (`nan`, `-nan`, `inf`, `-infinity`, ...). Those
tokens are rewritten to `null` first, then the frame is parsed and every field
is coerced through a single defaults table.

Frame format:
    {"accelerometer": {"x": .., "y": .., "z": ..},
     "magnetometer":  {"x": .., "y": .., "z": ..},
     "pitch": .., "roll": .., "timestamp": ..}

Example Usage:
    ```python
    from levelsense.sensor_frames import decode_frame, FrameDecodeError

    try:
        reading = decode_frame(text)
    except FrameDecodeError as e:
        print(f"⚠ dropped frame: {e}")
    else:
        if reading is not None:
            print(reading.accelerometer)
    ```
"""

import json
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class Vector3:
    """Three-axis sample (accelerometer in m/s^2, magnetometer in uT)."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


@dataclass(frozen=True)
class RawReading:
    """
    One sanitized snapshot from the device.

    Every numeric field is finite. `pitch` and `roll` are the values the
    firmware computed itself (degrees); the orientation engine recomputes its
    own from the raw axes.
    """
    accelerometer: Vector3 = field(default_factory=Vector3)
    magnetometer: Vector3 = field(default_factory=Vector3)
    pitch: float = 0.0
    roll: float = 0.0
    timestamp: int = 0  # epoch milliseconds


class FrameDecodeError(ValueError):
    """Raised when a frame cannot be parsed into a JSON object."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


# =============================================================================
# TOKEN REPAIR
# =============================================================================

# nan, -nan, inf, -inf, infinity, -infinity in any casing, right after a colon
_NON_FINITE_TOKEN = re.compile(r":\s*[+-]?(?:nan|inf(?:inity)?)\b", re.IGNORECASE)


def repair_tokens(text: str) -> str:
    """Rewrite non-standard numeric literals following a colon to `null`."""
    return _NON_FINITE_TOKEN.sub(": null", text)


# =============================================================================
# FIELD COERCION
# =============================================================================

AXIS_NAMES = ("x", "y", "z")
VECTOR_FIELDS = ("accelerometer", "magnetometer")

# field -> default; None means "current wall-clock time at decode"
FIELD_DEFAULTS: Dict[str, Optional[float]] = {
    "accelerometer.x": 0.0,
    "accelerometer.y": 0.0,
    "accelerometer.z": 0.0,
    "magnetometer.x": 0.0,
    "magnetometer.y": 0.0,
    "magnetometer.z": 0.0,
    "pitch": 0.0,
    "roll": 0.0,
    "timestamp": None,
}

REQUIRED_FIELDS = ("pitch", "roll")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _finite_number(value: Any) -> Optional[float]:
    # bool is an int subclass; "true" is not a valid axis value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        value = float(value)
    except OverflowError:
        return None
    if not math.isfinite(value):
        return None
    return value


def _lookup(obj: Dict[str, Any], path: str) -> Any:
    node: Any = obj
    for key in path.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def coerce_fields(obj: Dict[str, Any], now: int) -> Dict[str, float]:
    """
    Apply `FIELD_DEFAULTS` to a parsed frame.

    Args:
        obj: Parsed JSON object
        now: Timestamp (epoch ms) used when `timestamp` is missing or invalid

    Returns:
        Flat mapping of every field in `FIELD_DEFAULTS` to a finite value
    """
    out: Dict[str, float] = {}
    for path, default in FIELD_DEFAULTS.items():
        value = _finite_number(_lookup(obj, path))
        if value is None:
            value = float(now) if default is None else default
        out[path] = value
    return out


# =============================================================================
# DECODING
# =============================================================================

def decode_frame(text: str, now_ms_value: Optional[int] = None) -> Optional[RawReading]:
    """
    Decode one stream frame.

    Args:
        text: Raw frame text
        now_ms_value: Decode time in epoch ms (None = wall clock)

    Returns:
        RawReading, or None when the frame has no `pitch` or `roll` key

    Raises:
        FrameDecodeError: If the repaired text is not a JSON object
    """
    if isinstance(text, (bytes, bytearray)):
        text = bytes(text).decode("utf-8", errors="replace")

    repaired = repair_tokens(text)
    try:
        obj = json.loads(repaired)
    except (ValueError, RecursionError) as e:
        raise FrameDecodeError(f"invalid JSON: {e}", raw=text) from e

    if not isinstance(obj, dict):
        raise FrameDecodeError(f"expected JSON object, got {type(obj).__name__}", raw=text)

    if any(key not in obj for key in REQUIRED_FIELDS):
        return None

    now = now_ms() if now_ms_value is None else int(now_ms_value)
    values = coerce_fields(obj, now)

    vectors = {
        name: Vector3(*(values[f"{name}.{axis}"] for axis in AXIS_NAMES))
        for name in VECTOR_FIELDS
    }
    return RawReading(
        accelerometer=vectors["accelerometer"],
        magnetometer=vectors["magnetometer"],
        pitch=values["pitch"],
        roll=values["roll"],
        timestamp=int(values["timestamp"]),
    )
