import asyncio

import pytest

from pulse_ox_receiver.acquisition import AcquisitionLoop, PulseMonitor, PulseState
from pulse_ox_receiver.config import PulseConfig
from pulse_ox_receiver.errors import AcquisitionError
from pulse_ox_receiver.frames import MockFrameSource

# Driving signal faster than the sample rate; the loop throttles itself
STEP = 0.05


def open_loop(source=None, config=None):
    source = source or MockFrameSource()
    asyncio.run(source.open())
    return AcquisitionLoop(source, config or PulseConfig()), source


def drive(loop, count, start=0):
    return [loop.tick(now=(start + i) * STEP) for i in range(count)]


def test_tick_self_throttles_to_sample_rate():
    loop, _ = open_loop()

    assert loop.tick(now=0.0) is not None
    assert loop.tick(now=0.01) is None
    assert loop.tick(now=0.02) is None
    assert loop.tick(now=0.034) is not None
    assert loop.samples_seen == 2


def test_no_rate_during_calibration():
    loop, _ = open_loop()
    states = drive(loop, 90)

    assert all(s.bpm is None for s in states[:89])
    assert all(s.is_calibrating for s in states[:89])
    assert not states[89].is_calibrating


def test_rate_converges_on_clean_signal():
    loop, _ = open_loop(MockFrameSource(pulse_hz=1.2))
    states = drive(loop, 300)

    assert states[-1].bpm is not None
    assert abs(states[-1].bpm - 72) <= 2
    assert states[-1].finger_detected


def test_detection_waits_for_four_seconds_of_signal():
    loop, _ = open_loop()
    states = drive(loop, 120)

    assert all(s.bpm is None for s in states[:119])
    assert states[119].bpm is not None


def test_signal_view_is_bounded():
    loop, _ = open_loop()
    states = drive(loop, 150)

    assert len(states[10].signal) == 11
    assert len(states[-1].signal) == 100
    assert states[-1].signal == loop.buffer.recent(100)


def test_finger_removal_suppresses_rate_but_keeps_buffer():
    loop, source = open_loop()
    drive(loop, 200)
    filled = len(loop.buffer)

    source.finger_present = False
    state = loop.tick(now=1000.0)

    assert state.bpm is None
    assert not state.finger_detected
    assert len(loop.buffer) == filled + 1


def test_read_failure_propagates():
    loop, source = open_loop()
    source.unplug()
    with pytest.raises(AcquisitionError):
        loop.tick(now=0.0)


def test_monitor_start_and_double_stop():
    source = MockFrameSource()
    monitor = PulseMonitor(source, PulseConfig(refresh_hz=500.0))

    async def scenario():
        await monitor.start()
        assert monitor.state.is_reading
        assert monitor.state.is_calibrating
        await asyncio.sleep(0.1)
        assert monitor.loop.samples_seen > 0
        await monitor.stop()
        await monitor.stop()

    asyncio.run(scenario())

    assert monitor.state == PulseState()
    assert monitor.loop is None
    assert not monitor.is_running
    assert not source.is_open
    assert source.close_count == 1


def test_monitor_start_failure_publishes_error():
    source = MockFrameSource(fail_open=AcquisitionError(AcquisitionError.PERMISSION_MESSAGE))
    monitor = PulseMonitor(source)

    with pytest.raises(AcquisitionError):
        asyncio.run(monitor.start())

    assert monitor.state.error == "Camera permission needed for heart rate"
    assert not monitor.state.is_reading
    assert not monitor.is_running


def test_monitor_tears_down_when_source_disappears():
    source = MockFrameSource()
    monitor = PulseMonitor(source, PulseConfig(refresh_hz=500.0))

    async def scenario():
        await monitor.start()
        await asyncio.sleep(0.05)
        source.unplug()
        await asyncio.sleep(0.2)

    asyncio.run(scenario())

    assert monitor.state.error == "Camera disconnected"
    assert not monitor.state.is_reading
    assert not monitor.is_running
    assert monitor.loop is None


def test_restart_starts_fresh_session():
    source = MockFrameSource()
    monitor = PulseMonitor(source, PulseConfig(refresh_hz=500.0))
    seen = []

    async def scenario():
        await monitor.start()
        await asyncio.sleep(0.1)
        seen.append(monitor.loop.samples_seen)
        await monitor.start()
        seen.append(monitor.loop.samples_seen)
        await monitor.stop()

    asyncio.run(scenario())
    assert seen[0] > 0
    assert seen[1] == 0
    assert source.open_count == 2


class GatedFrameSource(MockFrameSource):
    """Mock whose open() blocks until released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.release = asyncio.Event()

    async def open(self):
        await self.release.wait()
        await super().open()


class BrokenFrameSource(MockFrameSource):
    """Mock whose reads fail with a non-acquisition error."""

    def read_sample(self):
        raise RuntimeError("frame decode failed")


def test_stop_during_open_releases_source():
    source = GatedFrameSource()
    monitor = PulseMonitor(source, PulseConfig(refresh_hz=500.0))

    async def scenario():
        starting = asyncio.ensure_future(monitor.start())
        await asyncio.sleep(0)
        await monitor.stop()
        source.release.set()
        await starting
        await asyncio.sleep(0.05)

    asyncio.run(scenario())

    assert monitor.state == PulseState()
    assert not monitor.is_running
    assert monitor.loop is None
    assert not source.is_open
    assert source.open_count == 1


def test_unexpected_read_error_tears_down():
    source = BrokenFrameSource()
    monitor = PulseMonitor(source, PulseConfig(refresh_hz=500.0))

    async def scenario():
        await monitor.start()
        await asyncio.sleep(0.05)

    asyncio.run(scenario())

    assert monitor.state.error == "Camera disconnected"
    assert not monitor.state.is_reading
    assert not monitor.is_running
    assert not source.is_open
