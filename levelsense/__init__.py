"""Level device client package."""

__version__ = "0.1.0"

# Frame decoding
from .sensor_frames import (
    Vector3,
    RawReading,
    FrameDecodeError,
    decode_frame,
    repair_tokens,
)

# Orientation math
from .orientation import (
    ProcessedOrientation,
    compute_orientation,
    firmware_divergence,
    cardinal_direction,
    LevelRange,
    LevelZone,
    LevelStatus,
    classify_roll,
)

# Rate telemetry
from .rate_tracker import MessageRateTracker, is_low_rate, LOW_RATE_THRESHOLD

# Connection config
from .config import (
    StreamConfig,
    DeviceAPIConfig,
    build_stream_url,
    build_api_base_url,
)

# WebSocket stream client
from .stream_client import (
    SensorStreamClient,
    ClientPhase,
    ConnectionState,
    backoff_delay_ms,
)

# HTTP configuration API
from .device_api import (
    DeviceAPIClient,
    DeviceAPIError,
    DeviceSettings,
    BatteryStatus,
)

from .history import ReadingHistory
from .log_setup import setup_logging

__all__ = [
    # Frames
    'Vector3',
    'RawReading',
    'FrameDecodeError',
    'decode_frame',
    'repair_tokens',

    # Orientation
    'ProcessedOrientation',
    'compute_orientation',
    'firmware_divergence',
    'cardinal_direction',
    'LevelRange',
    'LevelZone',
    'LevelStatus',
    'classify_roll',

    # Rate
    'MessageRateTracker',
    'is_low_rate',
    'LOW_RATE_THRESHOLD',

    # Config
    'StreamConfig',
    'DeviceAPIConfig',
    'build_stream_url',
    'build_api_base_url',

    # Stream client
    'SensorStreamClient',
    'ClientPhase',
    'ConnectionState',
    'backoff_delay_ms',

    # Device API
    'DeviceAPIClient',
    'DeviceAPIError',
    'DeviceSettings',
    'BatteryStatus',

    # Utilities
    'ReadingHistory',
    'setup_logging',
]
