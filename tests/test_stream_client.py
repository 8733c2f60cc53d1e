"""
Tests for the WebSocket stream client.

The connection factory and the retry timer are replaced with fakes, so every
scenario runs on a plain `asyncio.run` loop with no network and no sleeping.
"""

import asyncio
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from levelsense.config import StreamConfig
from levelsense.stream_client import (
    CONNECTION_ERROR,
    EXHAUSTED_ERROR,
    ClientPhase,
    ConnectionState,
    SensorStreamClient,
    backoff_delay_ms,
)
from tests.fakes import FakeConnector, FakeTimers, settle


def make_client(connector=None, timers=None, clock=None, **config):
    config.setdefault("host_override", "192.168.4.1")
    return SensorStreamClient(
        StreamConfig(**config),
        connect=connector or FakeConnector(),
        call_later=timers or FakeTimers(),
        clock=clock,
    )


def frame(roll=0.0, x=0.0):
    return json.dumps({
        "accelerometer": {"x": x, "y": 0.0, "z": 9.8},
        "magnetometer": {"x": 20.0, "y": 0.0, "z": 0.0},
        "pitch": 0.0,
        "roll": roll,
        "timestamp": 1000,
    })


# =============================================================================
# BACKOFF
# =============================================================================

def test_backoff_delay_sequence():
    delays = [backoff_delay_ms(n) for n in range(10)]
    assert delays == [2000, 3000, 4500, 6750, 10125, 15187.5, 22781.25, 30000, 30000, 30000]


def test_backoff_delay_custom_base():
    assert backoff_delay_ms(0, base_delay_ms=100) == 100
    assert backoff_delay_ms(2, base_delay_ms=100, max_delay_ms=200) == 200


# =============================================================================
# LIFECYCLE
# =============================================================================

def test_open_and_receive():
    async def scenario():
        connector = FakeConnector()
        client = make_client(connector)
        assert client.state == ConnectionState()

        client.start()
        assert client.phase is ClientPhase.CONNECTING
        await settle()
        assert connector.urls == ["ws://192.168.4.1:81"]
        assert client.phase is ClientPhase.OPEN
        assert client.state.connected
        assert client.reading is None
        assert client.processed is None

        connector.sockets[0].feed(frame(x=9.8))
        await settle()
        assert client.reading.accelerometer.x == 9.8
        assert client.processed.roll == 45.0
        await client.aclose()

    asyncio.run(scenario())


def test_start_is_idempotent():
    async def scenario():
        connector = FakeConnector()
        client = make_client(connector)
        client.start()
        client.start()
        await settle()
        client.start()
        await settle()
        assert len(connector.urls) == 1
        await client.aclose()

    asyncio.run(scenario())


def test_nan_axis_frame_is_accepted():
    async def scenario():
        connector = FakeConnector()
        client = make_client(connector)
        client.start()
        await settle()
        connector.sockets[0].feed(
            '{"accelerometer": {"x": nan, "y": 1.0, "z": 9.8}, "pitch": 0, "roll": 0}'
        )
        await settle()
        assert client.reading.accelerometer.x == 0.0
        assert client.reading.accelerometer.y == 1.0
        await client.aclose()

    asyncio.run(scenario())


def test_decode_failure_keeps_previous_reading():
    async def scenario():
        connector = FakeConnector()
        client = make_client(connector)
        client.start()
        await settle()
        ws = connector.sockets[0]

        ws.feed(frame(roll=1.0))
        await settle()
        first = client.reading

        ws.feed("{not json")
        ws.feed('{"accelerometer": {"x": 1}}')
        await settle()
        assert client.reading is first
        assert client.phase is ClientPhase.OPEN

        ws.feed(frame(roll=2.0))
        await settle()
        assert client.reading.roll == 2.0
        await client.aclose()

    asyncio.run(scenario())


def test_drop_schedules_retry_and_reopens():
    async def scenario():
        connector = FakeConnector()
        timers = FakeTimers()
        client = make_client(connector, timers)
        client.start()
        await settle()

        connector.sockets[0].drop()
        await settle()
        assert connector.sockets[0].closed
        assert client.phase is ClientPhase.WAITING_TO_RETRY
        assert not client.state.connected
        assert [h.delay for h in timers.pending] == [2.0]

        timers.fire_next()
        assert client.state.reconnect_attempt == 1
        await settle()
        assert client.phase is ClientPhase.OPEN
        assert client.state.reconnect_attempt == 0
        assert len(connector.urls) == 2
        await client.aclose()

    asyncio.run(scenario())


def test_transport_error_sets_last_error():
    async def scenario():
        connector = FakeConnector()
        timers = FakeTimers()
        client = make_client(connector, timers)
        client.start()
        await settle()

        connector.sockets[0].fail(ConnectionResetError("reset"))
        await settle()
        assert client.state.last_error == CONNECTION_ERROR
        assert client.phase is ClientPhase.WAITING_TO_RETRY
        assert len(timers.pending) == 1

        timers.fire_next()
        await settle()
        assert client.state.last_error is None
        await client.aclose()

    asyncio.run(scenario())


def test_exhausts_after_max_attempts():
    async def scenario():
        connector = FakeConnector(fail=True)
        timers = FakeTimers()
        client = make_client(connector, timers)
        client.start()
        await settle()

        delays = []
        while timers.pending:
            delays.append(timers.fire_next().delay * 1000)
            await settle()
        return client, connector, delays

    client, connector, delays = asyncio.run(scenario())
    assert delays == pytest.approx([2000, 3000, 4500, 6750, 10125, 15187.5, 22781.25,
                                    30000, 30000, 30000])
    assert len(connector.urls) == 11
    assert client.phase is ClientPhase.EXHAUSTED
    assert client.state.last_error == EXHAUSTED_ERROR
    assert client.state.reconnect_attempt == 10
    assert not client.state.connected


def test_small_attempt_budget():
    async def scenario():
        connector = FakeConnector(fail=True)
        timers = FakeTimers()
        client = make_client(connector, timers, max_reconnect_attempts=1, base_delay_ms=100)
        client.start()
        await settle()
        assert timers.pending[0].delay == pytest.approx(0.1)
        timers.fire_next()
        await settle()
        assert client.phase is ClientPhase.EXHAUSTED
        assert timers.pending == []

    asyncio.run(scenario())


def test_reconnect_resets_attempts():
    async def scenario():
        connector = FakeConnector(fail=True)
        timers = FakeTimers()
        client = make_client(connector, timers)
        client.start()
        await settle()
        for _ in range(3):
            timers.fire_next()
            await settle()
        assert client.state.reconnect_attempt == 3
        waiting = timers.pending[0]
        assert waiting.delay == pytest.approx(6.75)

        client.reconnect()
        assert waiting.cancelled
        assert client.state.reconnect_attempt == 0
        await settle()
        assert [h.delay for h in timers.pending] == [2.0]
        client.stop()

    asyncio.run(scenario())


def test_reconnect_after_exhaustion():
    async def scenario():
        connector = FakeConnector(fail=True)
        timers = FakeTimers()
        client = make_client(connector, timers, max_reconnect_attempts=0)
        client.start()
        await settle()
        assert client.phase is ClientPhase.EXHAUSTED

        connector.fail = False
        client.reconnect()
        await settle()
        assert client.phase is ClientPhase.OPEN
        assert client.state.last_error is None
        await client.aclose()

    asyncio.run(scenario())


# =============================================================================
# STOP
# =============================================================================

def test_stop_ignores_late_events():
    async def scenario():
        connector = FakeConnector()
        timers = FakeTimers()
        client = make_client(connector, timers)
        client.start()
        await settle()
        generation = client._generation

        client.stop()
        await settle()
        assert connector.sockets[0].closed
        assert client.phase is ClientPhase.IDLE
        assert not client.state.connected

        client._on_message(generation, frame(roll=5.0))
        client._on_error(generation, OSError("late"))
        client._on_close(generation, 1006)
        assert client.reading is None
        assert client.state.last_error is None
        assert client.phase is ClientPhase.IDLE
        assert timers.pending == []

    asyncio.run(scenario())


def test_stop_cancels_pending_retry():
    async def scenario():
        connector = FakeConnector(fail=True)
        timers = FakeTimers()
        client = make_client(connector, timers)
        client.start()
        await settle()
        handle = timers.pending[0]

        client.stop()
        assert handle.cancelled
        assert client.phase is ClientPhase.IDLE

        # a timer that fires anyway does nothing
        handle.callback()
        await settle()
        assert len(connector.urls) == 1

    asyncio.run(scenario())


def test_stop_from_reading_subscriber_freezes_state():
    async def scenario():
        now = [0]
        connector = FakeConnector()
        client = make_client(connector, clock=lambda: now[0])
        client.start()
        await settle()

        client.subscribe_reading(lambda reading: client.stop())
        after_stop = []

        def on_state(state):
            if state.phase is ClientPhase.IDLE:
                after_stop.append(state)

        client.subscribe_state(on_state)

        # this frame closes the rate window
        now[0] = 1000
        connector.sockets[0].feed(frame(roll=1.0))
        await settle()
        return client, after_stop

    client, after_stop = asyncio.run(scenario())
    assert client.phase is ClientPhase.IDLE
    assert client.state.message_rate_per_second == 0
    assert [s.phase for s in after_stop] == [ClientPhase.IDLE]


def test_stop_from_state_subscriber_leaves_no_retry_armed():
    async def scenario():
        connector = FakeConnector()
        timers = FakeTimers()
        client = make_client(connector, timers)

        def on_state(state):
            if state.phase is ClientPhase.WAITING_TO_RETRY:
                client.stop()

        client.subscribe_state(on_state)
        client.start()
        await settle()
        connector.sockets[0].drop()
        await settle()
        return client, timers

    client, timers = asyncio.run(scenario())
    assert client.phase is ClientPhase.IDLE
    assert timers.pending == []
    assert len(timers.handles) == 1


def test_stop_during_retry_bump_does_not_connect():
    async def scenario():
        connector = FakeConnector(fail=True)
        timers = FakeTimers()
        client = make_client(connector, timers)
        client.start()
        await settle()

        client.subscribe_state(lambda state: client.stop() if state.reconnect_attempt == 1 else None)
        timers.fire_next()
        await settle()
        return client, connector

    client, connector = asyncio.run(scenario())
    assert client.phase is ClientPhase.IDLE
    assert len(connector.urls) == 1


def test_start_after_stop():
    async def scenario():
        connector = FakeConnector()
        client = make_client(connector)
        client.start()
        await settle()
        client.stop()
        client.start()
        await settle()
        assert client.phase is ClientPhase.OPEN
        assert len(connector.urls) == 2
        await client.aclose()

    asyncio.run(scenario())


def test_context_manager():
    async def scenario():
        connector = FakeConnector()
        async with make_client(connector) as client:
            await settle()
            assert client.phase is ClientPhase.OPEN
        assert client.phase is ClientPhase.IDLE
        assert connector.sockets[0].closed

    asyncio.run(scenario())


# =============================================================================
# TELEMETRY AND SUBSCRIPTIONS
# =============================================================================

def test_message_rate():
    async def scenario():
        now = [0]
        connector = FakeConnector()
        client = make_client(connector, clock=lambda: now[0])
        client.start()
        await settle()
        ws = connector.sockets[0]

        for t in (200, 400, 600, 800, 1000):
            now[0] = t
            ws.feed(frame())
            await settle()
        assert client.state.message_rate_per_second == 5
        await client.aclose()

    asyncio.run(scenario())


def test_subscribers():
    async def scenario():
        connector = FakeConnector()
        client = make_client(connector)
        states, processed = [], []
        client.subscribe_state(states.append)
        unsubscribe = client.subscribe_processed(processed.append)

        client.start()
        await settle()
        connector.sockets[0].feed(frame(x=9.8))
        await settle()
        unsubscribe()
        connector.sockets[0].feed(frame())
        await settle()
        await client.aclose()
        return states, processed

    states, processed = asyncio.run(scenario())
    phases = [s.phase for s in states]
    assert phases[:2] == [ClientPhase.CONNECTING, ClientPhase.OPEN]
    assert phases[-1] is ClientPhase.IDLE
    assert len(processed) == 1
    assert processed[0].roll == 45.0


def test_failing_subscriber_does_not_break_stream():
    async def scenario():
        connector = FakeConnector()
        client = make_client(connector)

        def broken(reading):
            raise RuntimeError("boom")

        client.subscribe_reading(broken)
        client.start()
        await settle()
        connector.sockets[0].feed(frame(roll=3.0))
        await settle()
        assert client.reading.roll == 3.0
        assert client.phase is ClientPhase.OPEN
        await client.aclose()

    asyncio.run(scenario())


def test_read_stream_max_samples():
    async def scenario():
        connector = FakeConnector()
        client = make_client(connector)
        client.start()
        await settle()

        async def consume():
            return [r async for r in client.read_stream(max_samples=2)]

        consumer = asyncio.ensure_future(consume())
        await settle()
        ws = connector.sockets[0]
        for roll in (1.0, 2.0, 3.0):
            ws.feed(frame(roll=roll))
        readings = await asyncio.wait_for(consumer, timeout=1.0)
        await client.aclose()
        return readings

    readings = asyncio.run(scenario())
    assert [r.roll for r in readings] == [1.0, 2.0]


def test_read_stream_duration():
    async def scenario():
        client = make_client(FakeConnector())
        client.start()
        await settle()
        readings = [r async for r in client.read_stream(duration=0.05)]
        await client.aclose()
        return readings

    assert asyncio.run(scenario()) == []


def test_independent_instances():
    async def scenario():
        first_conn, second_conn = FakeConnector(), FakeConnector()
        first = make_client(first_conn)
        second = make_client(second_conn, host_override="10.0.0.2")
        first.start()
        second.start()
        await settle()
        first_conn.sockets[0].feed(frame(roll=1.0))
        await settle()
        assert first.reading is not None
        assert second.reading is None
        assert second_conn.urls == ["ws://10.0.0.2:81"]
        await first.aclose()
        await second.aclose()

    asyncio.run(scenario())
