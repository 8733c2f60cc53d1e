"""
Sensor Stream Client
====================

Keeps one WebSocket connection to the level device open, decodes every frame
and publishes the latest reading, the derived orientation and the connection
state.

This module provides:
- Idempotent start/stop with a guard against overlapping connection attempts
- Exponential reconnect backoff with an attempt budget
- Per-frame error isolation (a malformed frame never ends the stream)
- Message-rate telemetry for degraded-link detection
- Subscribable latest values and an async `read_stream()` generator

The client runs on one asyncio event loop; `start()`, `stop()` and
`reconnect()` must be called from that loop.

Example Usage:
    ```python
    import asyncio
    from levelsense import SensorStreamClient, StreamConfig

    async def main():
        config = StreamConfig(host_override="192.168.4.1")
        async with SensorStreamClient(config) as client:
            async for reading in client.read_stream(duration=10.0):
                print(client.processed)

    asyncio.run(main())
    ```
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import (
    Any, AsyncIterator, Awaitable, Callable, Generic, List, Optional, TypeVar,
)

import websockets
from websockets.exceptions import WebSocketException

from .config import StreamConfig, build_stream_url
from .orientation import ProcessedOrientation, compute_orientation
from .rate_tracker import MessageRateTracker
from .sensor_frames import FrameDecodeError, RawReading, decode_frame

log = logging.getLogger(__name__)

T = TypeVar("T")

CONNECTION_ERROR = "Connection error"
EXHAUSTED_ERROR = "Connection lost. Maximum reconnection attempts reached."

# Raised by connect / receive when the link fails
TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


# =============================================================================
# STATE
# =============================================================================

class ClientPhase(Enum):
    """Lifecycle of the client's single connection."""
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    WAITING_TO_RETRY = "waiting_to_retry"
    EXHAUSTED = "exhausted"


# start() is a no-op while a connection is in one of these phases
_ACTIVE_PHASES = (ClientPhase.CONNECTING, ClientPhase.OPEN, ClientPhase.CLOSING)


@dataclass(frozen=True)
class ConnectionState:
    """Connection snapshot; a new one is published on every change."""
    connected: bool = False
    last_error: Optional[str] = None
    reconnect_attempt: int = 0
    message_rate_per_second: int = 0
    phase: ClientPhase = ClientPhase.IDLE


def backoff_delay_ms(attempt: int, base_delay_ms: float = 2000.0,
                     max_delay_ms: float = 30000.0) -> float:
    """Delay before reconnect number `attempt + 1`."""
    return min(base_delay_ms * 1.5 ** attempt, max_delay_ms)


class LatestValue(Generic[T]):
    """Holds the most recent value and notifies subscribers on publish."""

    def __init__(self, initial: Optional[T] = None):
        self._value = initial
        self._subscribers: List[Callable[[T], None]] = []

    @property
    def value(self) -> Optional[T]:
        return self._value

    def publish(self, value: T) -> None:
        self._value = value
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:
                log.exception("Subscriber %r failed", callback)

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register `callback`; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe


# =============================================================================
# CLIENT
# =============================================================================

ConnectFn = Callable[[str], Awaitable[Any]]
CallLaterFn = Callable[[float, Callable[[], None]], Any]


class SensorStreamClient:
    """
    WebSocket client for the level device's sensor stream.

    State machine:
        IDLE -> CONNECTING -> OPEN -> (CLOSING) -> WAITING_TO_RETRY -> CONNECTING ...
        WAITING_TO_RETRY is replaced by EXHAUSTED once the attempt budget is spent.
        stop() returns to IDLE from any phase.

    Every connection attempt gets a generation number; callbacks carrying an
    old generation (late events after stop() or after a newer attempt began)
    are ignored.
    """

    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        *,
        connect: Optional[ConnectFn] = None,
        call_later: Optional[CallLaterFn] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Args:
            config: StreamConfig (uses defaults if None)
            connect: Coroutine function url -> connection (default: websockets.connect)
            call_later: Timer scheduler (default: the running loop's call_later)
            clock: Millisecond wall clock for rate tracking
        """
        self.config = config or StreamConfig()
        self.url = build_stream_url(self.config)
        self._connect = connect or self._websocket_connect
        self._call_later = call_later
        self._tracker = MessageRateTracker(clock=clock)

        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._retry_handle: Any = None

        self._reading: LatestValue[RawReading] = LatestValue()
        self._state: LatestValue[ConnectionState] = LatestValue(ConnectionState())

    async def __aenter__(self) -> "SensorStreamClient":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    # -------------------------
    # Published values
    # -------------------------

    @property
    def reading(self) -> Optional[RawReading]:
        """Latest sanitized reading (None until the first valid frame)."""
        return self._reading.value

    @property
    def processed(self) -> Optional[ProcessedOrientation]:
        """Orientation computed from the latest reading."""
        reading = self._reading.value
        return compute_orientation(reading) if reading is not None else None

    @property
    def state(self) -> ConnectionState:
        return self._state.value

    @property
    def phase(self) -> ClientPhase:
        return self._state.value.phase

    def subscribe_reading(self, callback: Callable[[RawReading], None]) -> Callable[[], None]:
        return self._reading.subscribe(callback)

    def subscribe_processed(self, callback: Callable[[ProcessedOrientation], None]) -> Callable[[], None]:
        return self._reading.subscribe(lambda reading: callback(compute_orientation(reading)))

    def subscribe_state(self, callback: Callable[[ConnectionState], None]) -> Callable[[], None]:
        return self._state.subscribe(callback)

    # -------------------------
    # Control
    # -------------------------

    def start(self) -> None:
        """Open a connection unless one is already opening or open."""
        if self.phase in _ACTIVE_PHASES:
            return

        self._cancel_retry()
        if self.phase is ClientPhase.IDLE:
            self._tracker.reset()

        self._generation += 1
        generation = self._generation
        self._update_state(phase=ClientPhase.CONNECTING)

        attempt = self.state.reconnect_attempt
        log.info("Connecting to %s (attempt %d/%d)", self.url, attempt + 1,
                 self.config.max_reconnect_attempts + 1)
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(generation), name=f"levelsense-stream-{generation}")

    def stop(self) -> None:
        """
        Tear down the connection and cancel any pending reconnect.

        After this returns, late events from the old connection change nothing.
        """
        self._cancel_retry()
        self._generation += 1

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

        self._update_state(phase=ClientPhase.IDLE, connected=False)
        log.info("Stream client stopped")

    async def aclose(self) -> None:
        """stop() and wait for the socket to finish closing."""
        task = self._task
        self.stop()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def reconnect(self) -> None:
        """Manual retry: reset the attempt budget and connect immediately."""
        self._cancel_retry()
        self._update_state(reconnect_attempt=0)
        self.start()

    async def read_stream(self, duration: Optional[float] = None,
                          max_samples: Optional[int] = None) -> AsyncIterator[RawReading]:
        """
        Yield readings as they are published.

        Args:
            duration: Stop after this many seconds (None = infinite)
            max_samples: Stop after this many readings (None = infinite)
        """
        queue: "asyncio.Queue[RawReading]" = asyncio.Queue()
        unsubscribe = self._reading.subscribe(queue.put_nowait)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration if duration is not None else None
        count = 0
        try:
            while max_samples is None or count < max_samples:
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        break
                try:
                    reading = await asyncio.wait_for(queue.get(), timeout)
                except asyncio.TimeoutError:
                    break
                yield reading
                count += 1
        finally:
            unsubscribe()

    # -------------------------
    # Connection task
    # -------------------------

    async def _websocket_connect(self, url: str):
        # No keepalive pings: liveness comes from close/error events only
        return await websockets.connect(
            url,
            open_timeout=self.config.open_timeout_s,
            ping_interval=None,
        )

    async def _run(self, generation: int) -> None:
        try:
            ws = await self._connect(self.url)
        except TRANSPORT_ERRORS as e:
            self._on_error(generation, e)
            self._on_close(generation)
            return

        if generation != self._generation:
            await ws.close()
            return

        self._on_open(generation)
        try:
            async for message in ws:
                self._on_message(generation, message)
        except TRANSPORT_ERRORS as e:
            self._on_error(generation, e)
        finally:
            await ws.close()

        self._on_close(generation, getattr(ws, "close_code", None), getattr(ws, "close_reason", None))

    # -------------------------
    # Event handlers
    # -------------------------

    def _is_live(self, generation: int) -> bool:
        return generation == self._generation and self.phase is not ClientPhase.IDLE

    def _on_open(self, generation: int) -> None:
        if not self._is_live(generation):
            return
        log.info("Connected to %s", self.url)
        self._update_state(
            phase=ClientPhase.OPEN,
            connected=True,
            last_error=None,
            reconnect_attempt=0,
        )

    def _on_message(self, generation: int, message: Any) -> None:
        if not self._is_live(generation):
            return

        try:
            reading = decode_frame(message)
        except FrameDecodeError as e:
            log.warning("Failed to parse frame: %s (raw data: %.200r)", e, e.raw)
            return

        if reading is None:
            log.debug("Frame without pitch/roll ignored")
            return

        self._reading.publish(reading)
        # a subscriber may have called stop()
        if not self._is_live(generation):
            return

        changes = {"last_error": None}
        rate = self._tracker.record()
        if rate is not None:
            changes["message_rate_per_second"] = rate
        self._update_state(**changes)

    def _on_error(self, generation: int, error: BaseException) -> None:
        if not self._is_live(generation):
            return
        log.error("Stream error on %s: %s", self.url, error)
        self._update_state(phase=ClientPhase.CLOSING, last_error=CONNECTION_ERROR)

    def _on_close(self, generation: int, code: Optional[int] = None,
                  reason: Optional[str] = None) -> None:
        if not self._is_live(generation):
            return
        log.info("Stream closed (code: %s, reason: %s)", code, reason or "")
        self._task = None

        attempt = self.state.reconnect_attempt
        max_attempts = self.config.max_reconnect_attempts
        if attempt < max_attempts:
            delay_ms = backoff_delay_ms(attempt, self.config.base_delay_ms, self.config.max_delay_ms)
            log.info("Reconnecting in %.0fms (attempt %d/%d)...", delay_ms, attempt + 1, max_attempts)
            # must exist before subscribers see WAITING_TO_RETRY
            self._retry_handle = self._schedule(delay_ms / 1000.0, self._retry)
            self._update_state(phase=ClientPhase.WAITING_TO_RETRY, connected=False)
        else:
            log.error("Giving up on %s after %d reconnection attempts", self.url, max_attempts)
            self._update_state(
                phase=ClientPhase.EXHAUSTED,
                connected=False,
                last_error=EXHAUSTED_ERROR,
            )

    def _retry(self) -> None:
        self._retry_handle = None
        if self.phase is not ClientPhase.WAITING_TO_RETRY:
            return
        self._update_state(reconnect_attempt=self.state.reconnect_attempt + 1)
        if self.phase is not ClientPhase.WAITING_TO_RETRY:
            return
        self.start()

    # -------------------------
    # Helpers
    # -------------------------

    def _schedule(self, delay_s: float, callback: Callable[[], None]) -> Any:
        if self._call_later is not None:
            return self._call_later(delay_s, callback)
        return asyncio.get_running_loop().call_later(delay_s, callback)

    def _cancel_retry(self) -> None:
        handle, self._retry_handle = self._retry_handle, None
        if handle is not None:
            handle.cancel()

    def _update_state(self, **changes) -> None:
        current = self._state.value
        updated = replace(current, **changes)
        if updated != current:
            self._state.publish(updated)
