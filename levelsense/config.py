"""
Connection Configuration
========================

Dataclass configs for the stream client and the HTTP configuration API, plus
the address helpers both share.

The device serves its dashboard, the HTTP API and the WebSocket stream from
the same address. When the client is not running on that page (development
against a device on another address), set `LEVELSENSE_DEBUG_HOST`.

Environment variables:
    LEVELSENSE_DEBUG_HOST   host (or host:port for HTTP) overriding the page host
    LEVELSENSE_PAGE_URL     URL of the page the client is served from
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import urlsplit

DEBUG_HOST_ENV = "LEVELSENSE_DEBUG_HOST"
PAGE_URL_ENV = "LEVELSENSE_PAGE_URL"

DEFAULT_PAGE_URL = "http://localhost/"
STREAM_PORT = 81  # WebSocket port, separate from the HTTP API


def _env_override(env: Mapping[str, str]) -> Optional[str]:
    value = env.get(DEBUG_HOST_ENV, "").strip()
    return value or None


def _bracket_ipv6(host: str) -> str:
    # bare IPv6 literal ("::1"); "[::1]:8080" is already bracketed
    if host.count(":") > 1 and not host.startswith("["):
        return f"[{host}]"
    return host


def resolve_host(page_url: str, host_override: Optional[str], include_port: bool) -> str:
    """
    Host to talk to: the override when set, else the page's host.

    Args:
        page_url: URL of the enclosing page
        host_override: Development override (blank = unset)
        include_port: Keep the page's port (HTTP API) or not (WebSocket)
    """
    if host_override and host_override.strip():
        host_override = host_override.strip()
        if include_port:
            return _bracket_ipv6(host_override)
        return urlsplit("//" + host_override).hostname or host_override
    parts = urlsplit(page_url)
    if include_port:
        return parts.netloc.rsplit("@", 1)[-1] or "localhost"
    return parts.hostname or "localhost"


def is_secure_page(page_url: str) -> bool:
    return urlsplit(page_url).scheme.lower() == "https"


# =============================================================================
# CONFIGS
# =============================================================================

@dataclass
class StreamConfig:
    """Configuration for `SensorStreamClient`."""

    # Addressing
    page_url: str = DEFAULT_PAGE_URL  # scheme picks ws/wss, host is the default target
    host_override: Optional[str] = None  # development device address
    port: int = STREAM_PORT

    # Reconnection
    base_delay_ms: float = 2000.0
    max_reconnect_attempts: int = 10
    max_delay_ms: float = 30000.0

    # Transport
    open_timeout_s: float = 10.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "StreamConfig":
        """Build a config from LEVELSENSE_* variables, then apply keyword overrides."""
        env = os.environ if env is None else env
        kwargs = {"host_override": _env_override(env)}
        if env.get(PAGE_URL_ENV):
            kwargs["page_url"] = env[PAGE_URL_ENV]
        kwargs.update(overrides)
        return cls(**kwargs)


@dataclass
class DeviceAPIConfig:
    """Configuration for `DeviceAPIClient`."""
    page_url: str = DEFAULT_PAGE_URL
    host_override: Optional[str] = None
    timeout_s: float = 5.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "DeviceAPIConfig":
        env = os.environ if env is None else env
        kwargs = {"host_override": _env_override(env)}
        if env.get(PAGE_URL_ENV):
            kwargs["page_url"] = env[PAGE_URL_ENV]
        kwargs.update(overrides)
        return cls(**kwargs)


def build_stream_url(config: StreamConfig) -> str:
    """`{ws|wss}://{host}:{port}` for the sensor stream."""
    scheme = "wss" if is_secure_page(config.page_url) else "ws"
    host = resolve_host(config.page_url, config.host_override, include_port=False)
    if ":" in host:
        host = f"[{host}]"  # IPv6 literal
    return f"{scheme}://{host}:{config.port}"


def build_api_base_url(config: DeviceAPIConfig) -> str:
    """`{http|https}://{host}/` for the configuration API."""
    scheme = "https" if is_secure_page(config.page_url) else "http"
    host = resolve_host(config.page_url, config.host_override, include_port=True)
    return f"{scheme}://{host}/"
