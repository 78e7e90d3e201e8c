"""
Rolling-window smoothing of accepted readings.

The two pipelines use different policies on purpose and they are kept
separate: the optical pulse stream averages (``mean_policy``), the oximeter
streams take the median (``median_policy``), which tolerates a single corrupted
device packet. Whether the optical stream should also switch to a median is
an open product question.
"""

from __future__ import annotations

import math
from collections import deque
from typing import Callable, Sequence

SmoothingPolicy = Callable[[Sequence[int]], int]


def round_half_up(value: float) -> int:
    """Nearest integer, with .5 going up (not to even as ``round()`` does)."""
    return int(math.floor(value + 0.5))


def mean_policy(history: Sequence[int]) -> int:
    """Rounded arithmetic mean of the history."""
    return round_half_up(sum(history) / len(history))


def median_policy(history: Sequence[int]) -> int:
    """Median of the history; the upper median when the length is even."""
    ordered = sorted(history)
    return ordered[len(ordered) // 2]


class ReadingSmoother:
    """Fixed-length FIFO of accepted values for one sensor stream."""

    def __init__(self, policy: SmoothingPolicy, window: int = 5):
        if window <= 0:
            raise ValueError(f"window must be positive, got {window}")
        self._policy = policy
        self._history: deque[int] = deque(maxlen=window)

    def add(self, value: int) -> int:
        """Record an accepted value and return the smoothed output."""
        self._history.append(value)
        return self._policy(list(self._history))

    def clear(self) -> None:
        self._history.clear()

    @property
    def history(self) -> tuple:
        return tuple(self._history)

    def __len__(self) -> int:
        return len(self._history)


def mean_smoother(window: int = 5) -> ReadingSmoother:
    return ReadingSmoother(mean_policy, window)


def median_smoother(window: int = 5) -> ReadingSmoother:
    return ReadingSmoother(median_policy, window)
