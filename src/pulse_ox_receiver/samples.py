"""Signal samples, the sliding sample window, and finger presence detection.

The optical pipeline keeps the most recent ``rate_hz * 10`` samples in a
fixed-capacity window. Everything here is synchronous and bounded-time so it
can run on every tick of the acquisition loop without disturbing the sampling
cadence.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Iterator, Tuple


@dataclass(frozen=True)
class SignalSample:
    """One timestamped reading of the two intensity channels.

    Attributes:
        timestamp: Monotonic time in seconds at which the sample was taken.
            Samples must be pushed in non-decreasing timestamp order.
        channel_a: Primary intensity channel (red average for a camera
            source). This is the channel used for peak detection.
        channel_b: Reference intensity channel (green average for a camera
            source). Only used by the presence detector.
    """

    timestamp: float
    channel_a: float
    channel_b: float


class RingBuffer:
    """Fixed-capacity window of samples that evicts the oldest on overflow.

    The buffer owns its samples exclusively: every read returns a tuple
    snapshot, so callers can never mutate the window behind the loop's back.
    A monotonic write counter tracks how many samples were ever pushed, which
    is independent of how many are currently retained.

    Attributes:
        _capacity: Maximum number of retained samples.
        _samples: Underlying deque with ``maxlen`` set to the capacity.
        _write_index: Total number of samples pushed since the last clear.
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._samples: deque[SignalSample] = deque(maxlen=capacity)
        self._write_index = 0

    def push(self, sample: SignalSample) -> None:
        """Append a sample, evicting the oldest one when full.

        Raises:
            ValueError: If the sample is older than the newest retained one.
                Out-of-order delivery is a caller bug, not a recoverable state.
        """
        if self._samples and sample.timestamp < self._samples[-1].timestamp:
            raise ValueError(
                f"Out-of-order sample: {sample.timestamp} < {self._samples[-1].timestamp}"
            )
        self._samples.append(sample)
        self._write_index += 1

    def view(self) -> Tuple[SignalSample, ...]:
        """Snapshot of every retained sample, oldest first."""
        return tuple(self._samples)

    def channel_a(self) -> Tuple[float, ...]:
        """Snapshot of the primary channel values, oldest first."""
        return tuple(s.channel_a for s in self._samples)

    def recent(self, count: int) -> Tuple[float, ...]:
        """Last ``count`` primary channel values (fewer if not yet available)."""
        if count <= 0:
            return ()
        values = self.channel_a()
        return values[-count:]

    def clear(self) -> None:
        self._samples.clear()
        self._write_index = 0

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[SignalSample]:
        return iter(self.view())

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def is_full(self) -> bool:
        return len(self._samples) == self._capacity

    @property
    def current_write_index(self) -> int:
        return self._write_index


def presence(
    sample: SignalSample, red_threshold: float = 80.0, ratio: float = 1.2
) -> bool:
    """Return True when a finger is properly coupled to the light and sensor.

    A finger pressed over a lit sensor saturates the red channel while the
    reference channel stays comparatively dark.

    Args:
        sample: The sample to classify.
        red_threshold: Minimum primary channel intensity. Strict comparison.
        ratio: Minimum primary/reference intensity ratio. Strict comparison.

    Returns:
        ``channel_a > red_threshold and channel_a > channel_b * ratio``.
    """
    return sample.channel_a > red_threshold and sample.channel_a > sample.channel_b * ratio
