"""
Level Device Monitor
====================

Terminal monitor for the level device's sensor stream: connects, prints the
processed orientation once per second and warns on a degraded link or when
the reconnect budget is exhausted.

Usage:
    levelsense-monitor --host 192.168.4.1
    levelsense-monitor --host 192.168.4.1 --duration 30 --range-min -5 --range-max 5
    python -m levelsense.monitor --page-url https://level.local/ --log-dir ./logs
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from .config import STREAM_PORT, StreamConfig
from .history import ReadingHistory
from .log_setup import setup_logging
from .orientation import LevelRange, cardinal_direction, classify_roll
from .rate_tracker import is_low_rate
from .stream_client import ClientPhase, ConnectionState, SensorStreamClient


# ============================================================================
# COMMAND LINE ARGUMENTS
# ============================================================================

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Level device monitor (WebSocket sensor stream)"
    )
    parser.add_argument("--host", type=str, default=None,
                        help="Device address (default: LEVELSENSE_DEBUG_HOST or the page host)")
    parser.add_argument("--page-url", type=str, default=None,
                        help="URL the dashboard is served from; https selects wss")
    parser.add_argument("--port", type=int, default=STREAM_PORT,
                        help=f"WebSocket port (default: {STREAM_PORT})")
    parser.add_argument("--base-delay-ms", type=float, default=2000.0,
                        help="First reconnect delay in ms (default: 2000)")
    parser.add_argument("--max-attempts", type=int, default=10,
                        help="Reconnect attempts before giving up (default: 10)")
    parser.add_argument("--duration", type=float, default=None,
                        help="Stop after this many seconds (default: run until Ctrl+C)")
    parser.add_argument("--range-min", type=float, default=-45.0,
                        help="Working range minimum in degrees (default: -45)")
    parser.add_argument("--range-max", type=float, default=45.0,
                        help="Working range maximum in degrees (default: 45)")
    parser.add_argument("--log-dir", type=str, default=None,
                        help="Directory for rotating log files (default: console only)")
    parser.add_argument("--log-level", type=str, default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Logging verbosity (default: WARNING)")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> StreamConfig:
    overrides = {
        "port": args.port,
        "base_delay_ms": args.base_delay_ms,
        "max_reconnect_attempts": args.max_attempts,
    }
    if args.host:
        overrides["host_override"] = args.host
    if args.page_url:
        overrides["page_url"] = args.page_url
    return StreamConfig.from_env(**overrides)


# ============================================================================
# MONITOR LOOP
# ============================================================================

def format_status(client: SensorStreamClient, level_range: LevelRange) -> str:
    """One status line for the latest reading."""
    state = client.state
    processed = client.processed
    if processed is None:
        waiting = "connected, waiting for data" if state.connected else "connecting to device"
        return f"… {waiting}"

    status = classify_roll(processed.roll, level_range)
    return (
        f"Roll={processed.roll:+6.1f}°  Pitch={processed.pitch:+6.1f}°  "
        f"Heading={processed.tilt_compensated_heading:6.2f}° "
        f"({cardinal_direction(processed.tilt_compensated_heading):>2})  "
        f"|g|={processed.magnitude:5.2f}  rate={state.message_rate_per_second} msg/s  "
        f"[{status.zone.value}]"
    )


async def run_monitor(config: StreamConfig, level_range: LevelRange,
                      duration: Optional[float] = None,
                      client: Optional[SensorStreamClient] = None,
                      status_interval: float = 1.0) -> int:
    """
    Stream until `duration` elapses, Ctrl+C, or the reconnect budget runs out.

    Args:
        config: Stream configuration (ignored when `client` is given)
        level_range: Working range for the zone column
        duration: Seconds to run (None = until interrupted)
        client: Pre-built client (default: one built from `config`)
        status_interval: Seconds between status lines

    Returns:
        Process exit code (0 = clean stop, 1 = connection exhausted)
    """
    history = ReadingHistory()
    exhausted = asyncio.Event()
    last_phase = [ClientPhase.IDLE]

    def on_state(state: ConnectionState) -> None:
        if state.phase is last_phase[0]:
            return
        last_phase[0] = state.phase
        if state.phase is ClientPhase.OPEN:
            print(f"✓ Connected to {client.url}")
        elif state.phase is ClientPhase.WAITING_TO_RETRY:
            print(f"⚠ Offline - retrying (attempt {state.reconnect_attempt + 1}/"
                  f"{client.config.max_reconnect_attempts})")
        elif state.phase is ClientPhase.EXHAUSTED:
            print(f"✗ {state.last_error}")
            exhausted.set()

    if client is None:
        client = SensorStreamClient(config)
    client.subscribe_state(on_state)
    client.subscribe_reading(lambda reading: history.append(reading.timestamp, client.processed))

    loop = asyncio.get_running_loop()
    deadline = loop.time() + duration if duration is not None else None

    print(f"Connecting to {client.url}...")
    async with client:
        while not exhausted.is_set():
            if deadline is not None and loop.time() >= deadline:
                break
            try:
                await asyncio.wait_for(exhausted.wait(), timeout=status_interval)
            except asyncio.TimeoutError:
                pass
            else:
                break

            print(format_status(client, level_range))
            rate = client.state.message_rate_per_second
            if is_low_rate(rate):
                print(f"⚠ Low message rate detected ({rate} msg/s). Expected ~5 msg/s. "
                      f"Check your WiFi connection.")

    span = history.roll_span()
    if span is not None:
        print(f"\nRoll over last {len(history)} readings: {span[0]:+.1f}° .. {span[1]:+.1f}°")
    return 1 if exhausted.is_set() else 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_dir)

    if args.range_min > args.range_max:
        print("✗ --range-min must not exceed --range-max", file=sys.stderr)
        return 2

    config = build_config(args)
    level_range = LevelRange(args.range_min, args.range_max)
    try:
        return asyncio.run(run_monitor(config, level_range, args.duration))
    except KeyboardInterrupt:
        print("\nInterrupted by user. Exiting.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
