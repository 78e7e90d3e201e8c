import math

import numpy as np
import pytest

from pulse_ox_receiver.peaks import detect_peaks, min_peak_distance, smooth
from pulse_ox_receiver.rate import estimate_bpm

RATE_HZ = 30


def sinusoid(freq_hz, seconds=10, rate_hz=RATE_HZ, baseline=150.0, amplitude=20.0):
    n = int(seconds * rate_hz)
    return [baseline + amplitude * math.sin(2 * math.pi * freq_hz * i / rate_hz) for i in range(n)]


def test_smooth_clips_window_at_edges():
    out = smooth([1, 2, 3, 4, 5], radius=1)
    assert out.tolist() == pytest.approx([1.5, 2.0, 3.0, 4.0, 4.5])


def test_smooth_empty():
    assert smooth([]).size == 0


def test_min_peak_distance():
    assert min_peak_distance(30) == 10
    assert min_peak_distance(30, 0.5) == 15


@pytest.mark.parametrize("freq_hz, expected_bpm", [(1.0, 60), (1.2, 72), (1.5, 90)])
def test_clean_sinusoid_converges(freq_hz, expected_bpm):
    peaks = detect_peaks(sinusoid(freq_hz), RATE_HZ)
    bpm = estimate_bpm(peaks, RATE_HZ)
    assert bpm is not None
    assert abs(bpm - expected_bpm) <= 2


def test_peaks_follow_signal_period():
    peaks = detect_peaks(sinusoid(1.2), RATE_HZ)
    assert len(peaks) >= 10
    assert set(np.diff(peaks).tolist()) == {25}


def test_insufficient_data_returns_no_peaks():
    # Needs rate_hz * 4 samples
    assert detect_peaks(sinusoid(1.2, seconds=3.9), RATE_HZ) == []
    assert detect_peaks(sinusoid(1.2, seconds=4), RATE_HZ) != []


def test_flat_signal_has_no_peaks():
    assert detect_peaks([100.0] * 300, RATE_HZ) == []


def test_minimum_spacing_is_enforced():
    # 3.75 Hz oscillation: local maxima every 8 samples, closer than allowed
    values = sinusoid(3.75)
    peaks = detect_peaks(values, RATE_HZ)
    assert peaks
    assert all(b - a >= min_peak_distance(RATE_HZ) for a, b in zip(peaks, peaks[1:]))


def test_peak_indices_stay_inside_neighbour_range():
    values = sinusoid(1.2)
    peaks = detect_peaks(values, RATE_HZ)
    assert min(peaks) >= 2
    assert max(peaks) <= len(values) - 3


def test_detection_is_deterministic():
    values = sinusoid(1.3)
    assert detect_peaks(values, RATE_HZ) == detect_peaks(list(values), RATE_HZ)


def test_plateau_yields_first_sample_only():
    # Width-12 block smooths to a two-sample flat top at 9 and 10
    values = [0.0] * 4 + [1.0] * 12 + [0.0] * 4
    assert detect_peaks(values, RATE_HZ, min_samples=5, min_distance=1) == [9]
