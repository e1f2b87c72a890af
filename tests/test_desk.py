"""Tests for the desk controller: commands, continuous motion, telemetry."""

from __future__ import annotations

import asyncio

import pytest

from flexispot_mcp import desk as desk_module
from flexispot_mcp.desk import DeskController
from flexispot_mcp.errors import NotConnectedError, UnknownCommandError
from flexispot_mcp.models.events import (
    ConnectionChanged,
    ErrorOccurred,
    HeightChanged,
    StatusChanged,
)
from flexispot_mcp.protocol.commands import COMMAND_FRAMES, Command
from flexispot_mcp.transport.serial_connection import (
    SerialConfig,
    SerialSession,
    SessionState,
)

UP = COMMAND_FRAMES[Command.UP]
DOWN = COMMAND_FRAMES[Command.DOWN]
WAKE_UP = COMMAND_FRAMES[Command.WAKE_UP]
HEIGHT_90 = bytes([0x9B, 0x06, 0x02, 0x00, 0x00, 0x03, 0x84, 0x9D])


@pytest.fixture(autouse=True)
def fast_timing(monkeypatch):
    """Short repeat interval, with wake-up pushed out of the way."""
    monkeypatch.setattr(desk_module, "WAKE_UP_DELAY_S", 60.0)
    monkeypatch.setattr(desk_module, "COMMAND_INTERVAL_S", 0.02)


def _desk(port, **kwargs) -> tuple[DeskController, list]:
    """Controller over a fake port."""
    session = SerialSession(
        SerialConfig(port="/dev/ttyFAKE", disconnect_grace=0.01),
        lambda cfg: port,
    )
    desk = DeskController(session, **kwargs)
    events: list = []
    desk.events.subscribe(events.append)
    return desk, events


def _of(events, kind):
    return [e for e in events if isinstance(e, kind)]


def test_send_while_disconnected(fake_port):
    """Sending without a connection fails and writes nothing."""
    async def scenario():
        desk, events = _desk(fake_port)
        with pytest.raises(NotConnectedError):
            await desk.send(Command.UP)
        return events

    events = asyncio.run(scenario())
    assert fake_port.written == []
    assert len(_of(events, ErrorOccurred)) == 1


def test_connect_publishes_and_wakes_up(fake_port, monkeypatch):
    """WAKE_UP goes out once, after the post-connect delay."""
    monkeypatch.setattr(desk_module, "WAKE_UP_DELAY_S", 0.02)

    async def scenario():
        desk, events = _desk(fake_port)
        await desk.connect()
        assert fake_port.written == []
        await asyncio.sleep(0.1)
        await desk.disconnect()
        return events

    events = asyncio.run(scenario())
    assert fake_port.written == [WAKE_UP]
    assert _of(events, ConnectionChanged) == [
        ConnectionChanged(True),
        ConnectionChanged(False),
    ]


def test_send_command(fake_port):
    async def scenario():
        desk, _ = _desk(fake_port)
        await desk.connect()
        await desk.send("sitting")
        await desk.disconnect()

    asyncio.run(scenario())
    assert fake_port.written == [COMMAND_FRAMES[Command.SITTING]]


def test_send_unknown_command(fake_port):
    async def scenario():
        desk, events = _desk(fake_port)
        await desk.connect()
        with pytest.raises(UnknownCommandError):
            await desk.send("JUMP")
        await desk.disconnect()
        return events

    events = asyncio.run(scenario())
    assert fake_port.written == []
    assert _of(events, ErrorOccurred)


def test_send_preset(fake_port):
    async def scenario():
        desk, events = _desk(fake_port)
        await desk.connect()
        await desk.send_preset(Command.PRESET2)
        with pytest.raises(ValueError):
            await desk.send_preset(Command.UP)
        await desk.disconnect()
        return events

    events = asyncio.run(scenario())
    assert fake_port.written == [COMMAND_FRAMES[Command.PRESET2]]
    assert StatusChanged("Moving to preset 2 position...") in events


def test_height_telemetry(fake_port):
    """A height frame on the wire becomes a HeightChanged event."""
    async def scenario():
        desk, events = _desk(fake_port)
        await desk.connect()
        fake_port.feed(HEIGHT_90)
        await asyncio.sleep(0.1)
        height = desk.last_height
        await desk.disconnect()
        return events, height

    events, height = asyncio.run(scenario())
    assert _of(events, HeightChanged) == [HeightChanged(90.0)]
    assert height == 90.0


def test_continuous_sends_immediately_and_repeats(fake_port):
    async def scenario():
        desk, _ = _desk(fake_port)
        await desk.connect()
        await desk.start_continuous(Command.UP)
        assert fake_port.written == [UP]
        assert desk.is_moving
        await asyncio.sleep(0.09)
        await desk.stop_continuous()
        assert not desk.is_moving
        sent = len(fake_port.written)
        await asyncio.sleep(0.06)
        assert len(fake_port.written) == sent
        await desk.disconnect()

    asyncio.run(scenario())
    assert len(fake_port.written) >= 3
    assert set(fake_port.written) == {UP}


def test_switching_direction_replaces_job(fake_port):
    """Starting DOWN while UP runs leaves exactly one job, DOWN."""
    async def scenario():
        desk, _ = _desk(fake_port)
        await desk.connect()
        await desk.start_continuous(Command.UP)
        await desk.start_continuous(Command.DOWN)
        assert desk.active_command is Command.DOWN
        await asyncio.sleep(0.1)
        await desk.stop_continuous()
        await desk.disconnect()

    asyncio.run(scenario())
    assert fake_port.written[0] == UP
    assert fake_port.written.count(UP) == 1
    assert set(fake_port.written[1:]) == {DOWN}


def test_stop_is_idempotent(fake_port):
    async def scenario():
        desk, events = _desk(fake_port)
        await desk.connect()
        await desk.start_continuous(Command.DOWN)
        await desk.stop_continuous()
        await desk.stop_continuous()
        await desk.stop_continuous()
        assert not desk.is_moving
        await desk.disconnect()
        return events

    events = asyncio.run(scenario())
    assert events.count(StatusChanged("Desk movement stopped")) == 1
    assert _of(events, ErrorOccurred) == []


def test_stop_without_connection(fake_port):
    async def scenario():
        desk, events = _desk(fake_port)
        await desk.stop_continuous()
        return events

    assert asyncio.run(scenario()) == []


def test_write_failure_stops_job_only(fake_port):
    """A failing repeat send ends the job but keeps the session open."""
    async def scenario():
        desk, events = _desk(fake_port)
        await desk.connect()
        await desk.start_continuous(Command.UP)
        fake_port.fail_write = True
        await asyncio.sleep(0.08)
        moving = desk.is_moving
        connected = desk.is_connected
        await desk.disconnect()
        return events, moving, connected

    events, moving, connected = asyncio.run(scenario())
    assert not moving
    assert connected
    assert len(_of(events, ErrorOccurred)) == 1


def test_first_send_failure_starts_no_job(fake_port):
    async def scenario():
        desk, events = _desk(fake_port)
        await desk.connect()
        fake_port.fail_write = True
        await desk.start_continuous(Command.UP)
        moving = desk.is_moving
        await desk.disconnect()
        return events, moving

    events, moving = asyncio.run(scenario())
    assert not moving
    assert _of(events, ErrorOccurred)


def test_stop_flushes_stale_telemetry(fake_port, monkeypatch):
    """Height frames queued when motion stops are discarded."""
    monkeypatch.setattr(desk_module, "FLUSH_TIMEOUT_S", 0.1)

    async def scenario():
        desk, events = _desk(fake_port)
        await desk.connect()
        await desk.start_continuous(Command.UP)
        fake_port.feed(HEIGHT_90)
        await desk.stop_continuous()
        await asyncio.sleep(0.05)
        await desk.disconnect()
        return events

    events = asyncio.run(scenario())
    assert _of(events, HeightChanged) == []


def test_flush_is_bounded(fake_port):
    """The flush returns within its window even while data keeps arriving."""
    async def scenario():
        desk, _ = _desk(fake_port)
        await desk.connect()
        for _ in range(50):
            fake_port.feed(HEIGHT_90)
        loop = asyncio.get_running_loop()
        start = loop.time()
        await desk.clear_receive_buffer()
        elapsed = loop.time() - start
        await desk.disconnect()
        return elapsed

    assert asyncio.run(scenario()) < 0.5


def test_disconnect_with_every_teardown_step_failing(fake_port):
    """Disconnect reaches DISCONNECTED even if cancel, release and close raise."""
    fake_port.fail_teardown = True

    async def scenario():
        desk, events = _desk(fake_port)
        await desk.connect()
        await desk.start_continuous(Command.UP)
        await desk.disconnect()
        return desk, events

    desk, events = asyncio.run(scenario())
    assert desk.session.state is SessionState.DISCONNECTED
    assert not desk.is_moving
    assert fake_port.calls == ["cancel_read", "cancel_write", "close"]
    assert _of(events, ConnectionChanged)[-1] == ConnectionChanged(False)
    assert _of(events, ErrorOccurred) == []


def test_status(fake_port):
    async def scenario():
        desk, _ = _desk(fake_port)
        await desk.connect()
        await desk.start_continuous("down")
        status = desk.status()
        await desk.disconnect()
        return status

    assert asyncio.run(scenario()) == {
        "connected": True,
        "moving": True,
        "command": "DOWN",
        "height_cm": None,
    }


def test_timing_is_not_configurable_per_controller(fake_port, monkeypatch):
    """The repeat, wake-up and flush timings are fixed module constants."""
    monkeypatch.undo()
    assert desk_module.COMMAND_INTERVAL_S == 0.108
    assert desk_module.WAKE_UP_DELAY_S == 0.5
    assert desk_module.FLUSH_TIMEOUT_S == 0.05

    session = SerialSession(SerialConfig(port="/dev/ttyFAKE"), lambda cfg: fake_port)
    for name in ("command_interval", "wake_up_delay", "flush_timeout"):
        with pytest.raises(TypeError):
            DeskController(session, **{name: 0.01})


def test_concurrent_starts_then_stop_leave_no_job(fake_port):
    """Two overlapping starts and a stop end with nothing sending."""
    async def scenario():
        desk, events = _desk(fake_port)
        await desk.connect()
        await asyncio.gather(
            desk.start_continuous(Command.UP),
            desk.start_continuous(Command.DOWN),
        )
        assert desk.active_command is Command.DOWN
        await desk.stop_continuous()
        sent = len(fake_port.written)
        await asyncio.sleep(0.1)
        after = fake_port.written[sent:]
        moving = desk.is_moving
        await desk.disconnect()
        return after, moving

    after, moving = asyncio.run(scenario())
    assert after == []
    assert not moving
    assert fake_port.written[0] == UP
    assert fake_port.written.count(UP) == 1


def test_stop_during_first_send_cancels_the_job(fake_port):
    """A stop issued while the first send is in flight still wins."""
    fake_port.write_delay = 0.03

    async def scenario():
        desk, events = _desk(fake_port)
        await desk.connect()
        start = asyncio.create_task(desk.start_continuous(Command.UP))
        await asyncio.sleep(0)
        await desk.stop_continuous()
        await start
        sent = len(fake_port.written)
        await asyncio.sleep(0.1)
        after = fake_port.written[sent:]
        moving = desk.is_moving
        await desk.disconnect()
        return events, after, moving

    events, after, moving = asyncio.run(scenario())
    assert not moving
    assert after == []
    assert set(fake_port.written) == {UP}
    assert StatusChanged("Desk movement stopped") in events


def test_repeat_runs_at_a_fixed_rate(fake_port, monkeypatch):
    """Slow writes do not stretch the period between repeated sends."""
    monkeypatch.setattr(desk_module, "COMMAND_INTERVAL_S", 0.04)
    fake_port.write_delay = 0.02

    async def scenario():
        desk, _ = _desk(fake_port)
        await desk.connect()
        await desk.start_continuous(Command.UP)
        await asyncio.sleep(0.45)
        await desk.stop_continuous()
        await desk.disconnect()

    asyncio.run(scenario())
    times = fake_port.write_times
    assert len(times) >= 6
    period = (times[-1] - times[0]) / (len(times) - 1)
    # Sleeping a full interval after each write would give 0.06 s
    assert period < 0.05


def test_read_failure_reason_is_published(fake_port):
    """The port's own error text reaches the ErrorOccurred event."""
    async def scenario():
        desk, events = _desk(fake_port)
        await desk.connect()
        fake_port.read_error = OSError(
            "device reports readiness to read but returned no data"
        )
        await asyncio.sleep(0.1)
        connected = desk.is_connected
        await desk.disconnect()
        return events, connected

    events, connected = asyncio.run(scenario())
    errors = _of(events, ErrorOccurred)
    assert connected
    assert errors == [
        ErrorOccurred(
            "Receive error: device reports readiness to read but returned no data"
        )
    ]
