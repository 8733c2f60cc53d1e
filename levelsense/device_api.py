"""
Device Configuration API
========================

Async client for the level device's HTTP configuration endpoints: working
angle ranges, zero calibration, axis swap, WiFi credentials and battery
status.

The device answers plain GET requests with small JSON bodies. Requests run
in a worker thread (`asyncio.to_thread`) so they never stall the event loop
the stream client runs on.

Example Usage:
    ```python
    api = DeviceAPIClient(DeviceAPIConfig(host_override="192.168.4.1"))
    settings = await api.get_settings()
    offset = await api.calibrate_zero()
    await api.set_level_range(-10, 10)
    ```
"""

import asyncio
import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

from .config import DeviceAPIConfig, build_api_base_url
from .orientation import LevelRange

log = logging.getLogger(__name__)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class DeviceSettings:
    """Settings as reported by `/settings`, with defaults for missing keys."""
    roll_range: LevelRange = field(default_factory=lambda: LevelRange(-5.0, 5.0))
    pitch_range: LevelRange = field(default_factory=lambda: LevelRange(-5.0, 5.0))
    level_range: LevelRange = field(default_factory=LevelRange)
    zero_offset: float = 0.0
    axis_swap: bool = False
    show_pitch: bool = True

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "DeviceSettings":
        defaults = cls()
        return cls(
            roll_range=_range(data.get("roll_range"), defaults.roll_range),
            pitch_range=_range(data.get("pitch_range"), defaults.pitch_range),
            level_range=_range(data.get("level_range"), defaults.level_range),
            zero_offset=_number(data.get("zero_offset"), defaults.zero_offset),
            axis_swap=_flag(data.get("axis_swap"), defaults.axis_swap),
            show_pitch=_flag(data.get("show_pitch"), defaults.show_pitch),
        )


@dataclass(frozen=True)
class BatteryStatus:
    percentage: float = 0.0
    voltage: float = 0.0

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "BatteryStatus":
        return cls(
            percentage=_number(data.get("percentage"), 0.0),
            voltage=_number(data.get("voltage"), 0.0),
        )


class DeviceAPIError(RuntimeError):
    """A configuration request failed (network, HTTP status or body)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def _number(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def _flag(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _range(value: Any, default: LevelRange) -> LevelRange:
    if not isinstance(value, Mapping):
        return default
    return LevelRange(
        min=_number(value.get("min"), default.min),
        max=_number(value.get("max"), default.max),
    )


# =============================================================================
# CLIENT
# =============================================================================

class DeviceAPIClient:
    """HTTP client for the device's configuration endpoints."""

    def __init__(self, config: Optional[DeviceAPIConfig] = None, opener=None):
        """
        Args:
            config: DeviceAPIConfig (uses defaults if None)
            opener: Callable(request, timeout) -> response; defaults to urllib.request.urlopen
        """
        self.config = config or DeviceAPIConfig()
        self.base_url = build_api_base_url(self.config)
        self._open = opener or urllib.request.urlopen

    def url_for(self, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> str:
        url = self.base_url + endpoint.lstrip("/")
        if params:
            url += "?" + urlencode(params)
        return url

    def _request_sync(self, url: str) -> Dict[str, Any]:
        request = urllib.request.Request(
            url,
            method="GET",
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        try:
            with self._open(request, timeout=self.config.timeout_s) as response:
                status = getattr(response, "status", 200)
                content_type = response.headers.get("Content-Type", "") or ""
                body = response.read()
        except urllib.error.HTTPError as e:
            raise DeviceAPIError(f"HTTP error! status: {e.code}", status=e.code) from e
        except (urllib.error.URLError, OSError) as e:
            raise DeviceAPIError(f"Request to {url} failed: {e}") from e

        if status == 204 or "application/json" not in content_type:
            return {}
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DeviceAPIError(f"Invalid JSON from {url}: {e}", status=status) from e
        if not isinstance(data, dict):
            raise DeviceAPIError(f"Expected JSON object from {url}", status=status)
        return data

    async def request(self, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """
        GET `endpoint` and decode the JSON body.

        Returns:
            Decoded object; {} for 204 or non-JSON responses

        Raises:
            DeviceAPIError: On any failure
        """
        url = self.url_for(endpoint, params)
        log.debug("API request: %s", url)
        try:
            return await asyncio.to_thread(self._request_sync, url)
        except DeviceAPIError as e:
            log.error("API request failed: %s", e)
            raise

    # -------------------------
    # Reads
    # -------------------------

    async def get_settings(self) -> DeviceSettings:
        return DeviceSettings.from_json(await self.request("/settings"))

    async def get_battery(self) -> BatteryStatus:
        return BatteryStatus.from_json(await self.request("/battery"))

    async def is_reachable(self) -> bool:
        """True if the battery endpoint answers (used as a liveness probe)."""
        try:
            await self.request("/battery")
        except DeviceAPIError:
            return False
        return True

    # -------------------------
    # Level settings
    # -------------------------

    async def calibrate_zero(self) -> float:
        """Take the current position as zero; returns the new offset (deg)."""
        data = await self.request("/calibrate_zero")
        offset = data.get("offset")
        if isinstance(offset, bool) or not isinstance(offset, (int, float)):
            raise DeviceAPIError("calibrate_zero response has no numeric 'offset'")
        return float(offset)

    async def set_zero_offset(self, offset: float) -> None:
        await self.request("/set_zero_offset", {"offset": offset})

    async def set_axis_swap(self, swap: bool) -> None:
        await self.request("/set_axis_swap", {"swap": "true" if swap else "false"})

    async def set_level_range(self, range_min: float, range_max: float) -> None:
        if range_min > range_max:
            raise ValueError(f"range min ({range_min}) is greater than max ({range_max})")
        await self.request("/set_level_range", {"min": range_min, "max": range_max})

    # -------------------------
    # WiFi
    # -------------------------

    async def set_wifi(self, ssid: str, password: str, ip: str, gateway: str) -> None:
        """Store station credentials; the device restarts afterwards."""
        if not (ssid and password and ip and gateway):
            raise ValueError("ssid, password, ip and gateway are all required")
        await self.request("/set_wifi", {"ssid": ssid, "pass": password, "ip": ip, "gateway": gateway})

    async def clear_credentials(self) -> None:
        """Forget WiFi credentials; the device restarts in access-point mode."""
        await self.request("/clear_credentials")
