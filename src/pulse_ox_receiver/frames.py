"""Capture-device capability for the optical pulse pipeline.

A ``FrameSource`` yields one two-channel intensity sample per call. Opening and
closing are asynchronous (device negotiation, permission prompts); reading is
synchronous and bounded-time so it can run inside the acquisition tick.

Implementations:

- ``MockFrameSource``: synthetic PPG waveform for tests and demos.
- ``CameraFrameSource``: webcam via OpenCV, averaging the red and green
  channels of a downsized frame (fingertip pressed over lens and light).

Requirements:
- opencv-python: only for ``CameraFrameSource`` (``camera`` extra)
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import random
import sys
from abc import ABC, abstractmethod
from typing import Any, Optional, Tuple

from .errors import AcquisitionError

logger = logging.getLogger(__name__)

# Frames are downsized before averaging; finger coverage makes detail useless
CAMERA_FRAME_SIZE = (40, 40)


class FrameSource(ABC):
    """Exclusively-held capture device producing (channel_a, channel_b) pairs.

    ``close()`` must be idempotent and safe after a failed or partial
    ``open()``.
    """

    @abstractmethod
    async def open(self) -> None:
        """Acquire the device.

        Raises:
            AcquisitionError: Permission denied or device unavailable.
        """

    @abstractmethod
    def read_sample(self) -> Tuple[float, float]:
        """Read one sample. Must not block for longer than one frame.

        Raises:
            AcquisitionError: The device went away mid-session.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the device. Idempotent."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass


class MockFrameSource(FrameSource):
    """Synthetic fingertip PPG signal.

    Samples are generated from a read counter rather than wall-clock time, so
    the waveform seen by the pipeline is exactly ``rate_hz`` samples per
    simulated second regardless of how the loop is driven.

    Attributes:
        rate_hz: Sample rate the counter is converted with.
        pulse_hz: Simulated heart-beat frequency (1.2 Hz = 72 bpm).
        baseline: Mean red intensity with a finger present.
        amplitude: Half peak-to-peak of the pulse wave.
        reference: Green intensity with a finger present.
        noise: Standard deviation of Gaussian noise added to red.
        finger_present: When False, emits dim ambient values that fail the
            presence check.
        fail_open: Exception raised from ``open()`` to simulate denial.
    """

    def __init__(
        self,
        rate_hz: int = 30,
        pulse_hz: float = 1.2,
        *,
        baseline: float = 150.0,
        amplitude: float = 20.0,
        reference: float = 100.0,
        noise: float = 0.0,
        seed: Optional[int] = None,
        fail_open: Optional[BaseException] = None,
    ) -> None:
        self.rate_hz = rate_hz
        self.pulse_hz = pulse_hz
        self.baseline = baseline
        self.amplitude = amplitude
        self.reference = reference
        self.noise = noise
        self.fail_open = fail_open
        self.finger_present = True

        self.open_count = 0
        self.close_count = 0
        self._rng = random.Random(seed)
        self._index = 0
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        if self.fail_open is not None:
            raise self.fail_open
        self._open = True
        self._index = 0
        self.open_count += 1

    def read_sample(self) -> Tuple[float, float]:
        if not self._open:
            raise AcquisitionError(AcquisitionError.LOST_MESSAGE)

        t = self._index / self.rate_hz
        self._index += 1

        if not self.finger_present:
            return 40.0, 45.0

        red = self.baseline + self.amplitude * math.sin(2 * math.pi * self.pulse_hz * t)
        if self.noise > 0:
            red += self._rng.gauss(0, self.noise)
        return red, self.reference

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self.close_count += 1

    def unplug(self) -> None:
        """Simulate the device disappearing; the next read fails."""
        self._open = False


class CameraFrameSource(FrameSource):
    """Webcam-backed frame source using ``cv2.VideoCapture``.

    Args:
        index: Capture device index passed to OpenCV.
    """

    def __init__(self, index: int = 0) -> None:
        self.index = index
        self._capture: Optional[Any] = None
        self._cv2: Optional[Any] = None

    @property
    def is_open(self) -> bool:
        return self._capture is not None

    def _check_permission(self) -> None:
        # V4L2 nodes are group-restricted; OpenCV only reports "not opened"
        if not sys.platform.startswith("linux"):
            return
        node = f"/dev/video{self.index}"
        if os.path.exists(node) and not os.access(node, os.R_OK | os.W_OK):
            raise PermissionError(node)

    def _open_blocking(self) -> Any:
        import cv2

        self._cv2 = cv2
        self._check_permission()
        capture = cv2.VideoCapture(self.index)
        if not capture.isOpened():
            capture.release()
            raise OSError(f"camera {self.index} did not open")
        return capture

    async def open(self) -> None:
        if self._capture is not None:
            return
        logger.info("Opening camera %d", self.index)
        loop = asyncio.get_running_loop()
        try:
            self._capture = await loop.run_in_executor(None, self._open_blocking)
        except PermissionError as e:
            logger.error("Camera permission denied: %s", e)
            raise AcquisitionError(AcquisitionError.PERMISSION_MESSAGE) from e
        except (ImportError, OSError) as e:
            logger.error("Camera unavailable: %s", e)
            raise AcquisitionError(AcquisitionError.UNAVAILABLE_MESSAGE) from e

    def read_sample(self) -> Tuple[float, float]:
        if self._capture is None or self._cv2 is None:
            raise AcquisitionError(AcquisitionError.LOST_MESSAGE)

        ok, frame = self._capture.read()
        if not ok or frame is None:
            logger.warning("Camera read failed")
            raise AcquisitionError(AcquisitionError.LOST_MESSAGE)

        try:
            small = self._cv2.resize(frame, CAMERA_FRAME_SIZE)
        except self._cv2.error as e:
            logger.warning("Camera frame unusable: %s", e)
            raise AcquisitionError(AcquisitionError.LOST_MESSAGE) from e
        # OpenCV frames are BGR
        red = float(small[:, :, 2].mean())
        green = float(small[:, :, 1].mean())
        return red, green

    async def close(self) -> None:
        capture, self._capture = self._capture, None
        if capture is None:
            return
        logger.info("Releasing camera %d", self.index)
        capture.release()
