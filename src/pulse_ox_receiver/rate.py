"""
Beats-per-minute estimation from peak timing.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np

from .smoothing import round_half_up

BPM_MIN = 40
BPM_MAX = 200

OUTLIER_LOW = 0.7
OUTLIER_HIGH = 1.3


def estimate_bpm(peaks: Sequence[int], rate_hz: int) -> Optional[int]:
    """
    Convert peak indices into a heart rate with outlier rejection.

    Consecutive peak-to-peak intervals are compared against their median
    (upper median for even counts); intervals outside
    ``(0.7 * median, 1.3 * median)`` are treated as motion artifacts or missed
    beats and dropped. At least two intervals must survive. The band is
    open on purpose: an interval of exactly 0.7 or 1.3 times the median is
    dropped, matching the estimates existing recordings were checked against.

    Args:
        peaks: Ascending peak indices from ``detect_peaks``.
        rate_hz: Sample rate the indices refer to.

    Returns:
        Rounded bpm within ``[40, 200]``, or None when there is no estimate
        (fewer than three peaks, too few surviving intervals, or an
        implausible rate).
    """
    if len(peaks) < 3:
        return None

    intervals = np.diff(np.asarray(peaks, dtype=float))
    ordered = np.sort(intervals)
    median = ordered[len(ordered) // 2]

    kept: List[float] = [
        float(iv) for iv in intervals if OUTLIER_LOW * median < iv < OUTLIER_HIGH * median
    ]
    if len(kept) < 2:
        return None

    avg_interval = sum(kept) / len(kept)
    bpm = round_half_up(rate_hz / avg_interval * 60)

    if bpm < BPM_MIN or bpm > BPM_MAX:
        return None
    return bpm
