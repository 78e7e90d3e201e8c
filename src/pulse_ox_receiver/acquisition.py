"""Optical pulse pipeline driver.

``AcquisitionLoop`` is the synchronous per-sample step: read a sample, push it
into the window, gate on finger presence and calibration, and run peak
detection and rate estimation once enough signal is buffered. It is driven by
a periodic signal of any frequency and self-throttles to ``rate_hz``.

``PulseMonitor`` owns the capture device and drives the loop from an asyncio
task at ``refresh_hz``, publishing immutable ``PulseState`` snapshots.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .config import PulseConfig
from .errors import AcquisitionError
from .frames import FrameSource
from .peaks import detect_peaks
from .rate import estimate_bpm
from .samples import RingBuffer, SignalSample, presence
from .smoothing import ReadingSmoother, mean_smoother

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PulseState:
    """Snapshot of the optical pipeline for UI collaborators.

    Attributes:
        bpm: Mean-smoothed heart rate, None while calibrating, without a
            finger, or when no estimate passes the sanity checks.
        signal: Most recent primary-channel values (at most 100).
        is_reading: True while the capture device is held.
        is_calibrating: True until the calibration window has elapsed.
        finger_detected: Presence check result for the latest sample.
        error: User-facing message of the last terminal failure.
    """

    bpm: Optional[int] = None
    signal: Tuple[float, ...] = ()
    is_reading: bool = False
    is_calibrating: bool = False
    finger_detected: bool = False
    error: Optional[str] = None


StateListener = Callable[[PulseState], None]


class AcquisitionLoop:
    """Per-session sampling state: window, calibration counter, rate history.

    Args:
        source: Open frame source to read from.
        config: Pipeline settings.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        source: FrameSource,
        config: Optional[PulseConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config if config else PulseConfig()
        self._source = source
        self._clock = clock
        self.buffer = RingBuffer(self.config.buffer_capacity)
        self.bpm_history: ReadingSmoother = mean_smoother(self.config.smoothing_window)
        self.samples_seen = 0
        self._last_tick: Optional[float] = None

    @property
    def is_calibrating(self) -> bool:
        return self.samples_seen < self.config.calibration_samples

    def tick(self, now: Optional[float] = None) -> Optional[PulseState]:
        """Process one sample if at least one sample interval has elapsed.

        Returns:
            The new state, or None when the call was throttled.

        Raises:
            AcquisitionError: The frame source failed to deliver a sample.
        """
        if now is None:
            now = self._clock()
        if self._last_tick is not None and now - self._last_tick < self.config.sample_interval:
            return None
        self._last_tick = now

        channel_a, channel_b = self._source.read_sample()
        sample = SignalSample(now, channel_a, channel_b)
        self.buffer.push(sample)
        self.samples_seen += 1

        finger = presence(sample, self.config.red_threshold, self.config.presence_ratio)
        calibrating = self.is_calibrating

        bpm: Optional[int] = None
        if finger and not calibrating and len(self.buffer) >= self.config.min_detect_samples:
            peaks = detect_peaks(
                self.buffer.channel_a(),
                self.config.rate_hz,
                min_samples=self.config.min_detect_samples,
                min_distance=self.config.min_peak_distance,
            )
            estimate = estimate_bpm(peaks, self.config.rate_hz)
            if estimate is not None:
                bpm = self.bpm_history.add(estimate)

        return PulseState(
            bpm=bpm,
            signal=self.buffer.recent(self.config.signal_view),
            is_reading=True,
            is_calibrating=calibrating,
            finger_detected=finger,
        )


class PulseMonitor:
    """Start/stop surface of the optical pipeline.

    ``start()`` acquires the frame source and launches the driving task;
    ``stop()`` cancels it and releases the source. An ``AcquisitionError``
    while streaming (device unplugged) triggers the same teardown and is
    reported through ``state.error``.
    """

    def __init__(
        self,
        source: FrameSource,
        config: Optional[PulseConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config if config else PulseConfig()
        self._source = source
        self._clock = clock
        self._loop: Optional[AcquisitionLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._state = PulseState()
        self._listeners: List[StateListener] = []
        # Bumped by every start/stop; an open() that finishes under a stale
        # generation must not start sampling
        self._generation = 0
        self._opening: Optional[int] = None

    @property
    def state(self) -> PulseState:
        return self._state

    @property
    def loop(self) -> Optional[AcquisitionLoop]:
        return self._loop

    @property
    def is_running(self) -> bool:
        return self._task is not None

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        self._listeners.remove(listener)

    def _publish(self, state: PulseState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Pulse state listener failed")

    async def start(self) -> None:
        """Open the frame source and begin sampling.

        Raises:
            AcquisitionError: The source could not be opened. The source is
                released and the message is published in ``state.error``.
        """
        await self._shutdown()
        generation = self._generation
        self._opening = generation

        opened = False
        try:
            await self._source.open()
            opened = True
        except AcquisitionError as e:
            logger.error("Frame source failed to open: %s", e)
            if self._generation == generation:
                self._publish(PulseState(error=str(e)))
            raise
        finally:
            if not opened and self._opening == generation:
                self._opening = None
                await self._source.close()

        if self._generation != generation:
            # stop() or another start() ran while the source was opening
            if self._opening == generation:
                self._opening = None
                logger.info("Pulse acquisition stopped before sampling began")
                await self._source.close()
            return
        self._opening = None

        self._loop = AcquisitionLoop(self._source, self.config, self._clock)
        self._publish(PulseState(is_reading=True, is_calibrating=True))
        self._task = asyncio.ensure_future(self._drive(self._loop))
        logger.info(
            "Pulse acquisition started: %d Hz sampling, %.0f Hz refresh",
            self.config.rate_hz,
            self.config.refresh_hz,
        )

    async def stop(self) -> None:
        """Stop sampling and release the source. Idempotent."""
        await self._shutdown()
        self._publish(PulseState())

    async def _shutdown(self) -> None:
        self._generation += 1
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Pulse acquisition stopped")
        self._loop = None
        await self._source.close()

    async def _drive(self, loop: AcquisitionLoop) -> None:
        period = 1.0 / self.config.refresh_hz
        while True:
            try:
                state = loop.tick()
            except AcquisitionError as e:
                logger.error("Frame source lost: %s", e)
                await self._teardown_lost(str(e))
                return
            except Exception:
                logger.exception("Frame source read failed")
                await self._teardown_lost(AcquisitionError.LOST_MESSAGE)
                return
            if state is not None:
                self._publish(state)
            await asyncio.sleep(period)

    async def _teardown_lost(self, error: str) -> None:
        self._generation += 1
        self._task = None
        self._loop = None
        await self._source.close()
        self._publish(PulseState(error=error))
