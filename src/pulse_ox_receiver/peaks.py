"""
Adaptive peak detection on the optical pulse window.
"""

from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

SMOOTHING_RADIUS = 5
THRESHOLD_STD_FACTOR = 0.3
MIN_DETECT_SECONDS = 4
MIN_PEAK_SECONDS = 0.35


def smooth(values: Sequence[float], radius: int = SMOOTHING_RADIUS) -> np.ndarray:
    """
    Centered moving average, clipped at the edges.

    Each output point is the mean of the inputs within ``radius`` samples on
    either side; near the edges the window shrinks instead of padding.

    Args:
        values: Input series.
        radius: Half-width of the averaging window.

    Returns:
        Smoothed series as a float array of the same length.
    """
    x = np.asarray(values, dtype=float)
    n = x.size
    if n == 0:
        return x
    csum = np.concatenate(([0.0], np.cumsum(x)))
    idx = np.arange(n)
    lo = np.maximum(0, idx - radius)
    hi = np.minimum(n - 1, idx + radius) + 1
    return (csum[hi] - csum[lo]) / (hi - lo)


def min_peak_distance(rate_hz: int, min_peak_seconds: float = MIN_PEAK_SECONDS) -> int:
    return int(math.floor(rate_hz * min_peak_seconds))


def detect_peaks(
    values: Sequence[float],
    rate_hz: int,
    *,
    min_samples: Optional[int] = None,
    min_distance: Optional[int] = None,
) -> List[int]:
    """
    Extract candidate heartbeat peaks from the sample window.

    The series is smoothed, then a point at index ``i`` (``2 <= i <= n-3``) is
    a peak when it is above ``mean + 0.3 * std`` of the smoothed series,
    strictly above both neighbours on its left, not below both neighbours on
    its right, and at least ``min_distance`` samples after the previously
    accepted peak. The left/right asymmetry picks the first sample of a flat
    top so a plateau yields a single peak. The strict left comparison is
    intentional; a symmetric ``>=`` test would shift peak positions on flat
    tops relative to existing recordings.

    Args:
        values: Primary channel samples, oldest first.
        rate_hz: Sample rate of ``values``.
        min_samples: Minimum window length; defaults to ``rate_hz * 4``.
            Shorter windows return no peaks (insufficient data, not an error).
        min_distance: Minimum spacing between accepted peaks; defaults to
            ``floor(rate_hz * 0.35)``.

    Returns:
        Ascending list of peak indices into ``values``. Deterministic for a
        given input.
    """
    if min_samples is None:
        min_samples = rate_hz * MIN_DETECT_SECONDS
    if min_distance is None:
        min_distance = min_peak_distance(rate_hz)

    n = len(values)
    if n < min_samples or n < 5:
        logger.debug("Peak detection skipped: %d samples (< %d)", n, min_samples)
        return []

    s = smooth(values)
    threshold = float(s.mean()) + THRESHOLD_STD_FACTOR * float(s.std())

    mid = s[2:-2]
    candidates = (
        (mid > threshold)
        & (mid > s[1:-3])
        & (mid > s[:-4])
        & (mid >= s[3:-1])
        & (mid >= s[4:])
    )

    peaks: List[int] = []
    for i in (np.flatnonzero(candidates) + 2).tolist():
        if not peaks or i - peaks[-1] >= min_distance:
            peaks.append(i)

    logger.debug("Detected %d peaks (threshold=%.3f)", len(peaks), threshold)
    return peaks
