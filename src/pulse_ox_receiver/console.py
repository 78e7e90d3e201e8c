"""Command-line streaming front-ends for both pipelines.

Each ``print_*`` coroutine drives one pipeline and writes CSV lines to
standard output; ``run`` wraps them for synchronous CLI use with Unix exit
codes. Logging always goes to stderr/file so stdout stays machine-readable.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Sequence

from .acquisition import PulseMonitor, PulseState
from .config import DEFAULT_NAME_PREFIXES
from .connection import ConnectionManager, OximeterState
from .errors import AcquisitionError, ConnectionFailedError, DeviceNotFoundError, SensorError
from .transport import discover_oximeters

logger = logging.getLogger(__name__)

OXIMETER_HEADER = "timestamp,spo2,pulse_rate,protocol"
PULSE_HEADER = "timestamp,bpm,finger,calibrating"


def format_oximeter_row(state: OximeterState) -> Optional[str]:
    """CSV line for a state carrying a reading, None otherwise."""
    if state.updated_at is None or state.spo2 is None or state.pulse_rate is None:
        return None
    protocol = state.protocol.value if state.protocol is not None else ""
    return f"{state.updated_at:.3f},{state.spo2},{state.pulse_rate},{protocol}"


def format_pulse_row(state: PulseState, timestamp: float) -> str:
    bpm = "" if state.bpm is None else str(state.bpm)
    return f"{timestamp:.3f},{bpm},{int(state.finger_detected)},{int(state.is_calibrating)}"


async def print_scan(
    name_prefixes: Sequence[str] = DEFAULT_NAME_PREFIXES, scan_timeout: float = 10.0
) -> None:
    """List allow-listed oximeters in range as ``address,name`` lines."""
    devices = await discover_oximeters(name_prefixes, scan_timeout)
    if not devices:
        raise DeviceNotFoundError()
    print("address,name")
    for dev in devices:
        print(f"{dev.address},{dev.name or ''}")


async def print_oximeter_stream(manager: ConnectionManager, *, show_header: bool = True) -> None:
    """Connect and stream smoothed oximeter readings as CSV until disconnected.

    Raises:
        ConnectionFailedError: Connection failed or was lost while streaming.
        UnsupportedDeviceError: No decoder matched the device.
    """
    await manager.connect()
    if not manager.state.is_connected:
        logger.info("No device selected")
        return

    queue: "asyncio.Queue[OximeterState]" = asyncio.Queue()
    manager.add_listener(queue.put_nowait)
    try:
        if show_header:
            print(OXIMETER_HEADER, flush=True)
        while True:
            state = await queue.get()
            if not state.is_connected:
                raise ConnectionFailedError(state.error or "Oximeter disconnected")
            line = format_oximeter_row(state)
            if line is None:
                continue
            logger.debug("CSV output: %s", line)
            print(line, flush=True)
    finally:
        manager.remove_listener(queue.put_nowait)
        await manager.disconnect()


async def print_pulse_stream(monitor: PulseMonitor, *, show_header: bool = True) -> None:
    """Run the optical pipeline and print one CSV line per accepted sample.

    Raises:
        AcquisitionError: The frame source failed to open or went away.
    """
    queue: "asyncio.Queue[PulseState]" = asyncio.Queue()
    monitor.add_listener(queue.put_nowait)
    try:
        await monitor.start()
        if show_header:
            print(PULSE_HEADER, flush=True)
        while True:
            state = await queue.get()
            if state.error:
                raise AcquisitionError(state.error)
            if not state.is_reading:
                return
            print(format_pulse_row(state, time.time()), flush=True)
    finally:
        monitor.remove_listener(queue.put_nowait)
        await monitor.stop()


def run(main: Callable[[], Awaitable[Any]]) -> int:
    """Run a streaming coroutine to completion.

    Returns:
        int: Exit code following Unix conventions:
            0: Normal completion
            1: Error termination (scan/connection/camera failures, etc.)
            130: Keyboard interrupt (SIGINT/Ctrl+C)
    """
    try:
        asyncio.run(main())
        return 0
    except KeyboardInterrupt:
        # SIGINT: Return 130 by convention
        return 130
    except SensorError as e:
        logger.error("%s", e)
        return 1
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1
