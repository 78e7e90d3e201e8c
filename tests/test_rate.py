from pulse_ox_receiver.rate import estimate_bpm


def test_requires_three_peaks():
    assert estimate_bpm([], 30) is None
    assert estimate_bpm([0, 25], 30) is None


def test_regular_intervals():
    assert estimate_bpm([0, 25, 50, 75], 30) == 72
    assert estimate_bpm([0, 30, 60], 30) == 60


def test_outlier_interval_is_rejected():
    # A missed beat doubles one interval
    assert estimate_bpm([0, 25, 50, 100, 125], 30) == 72


def test_too_few_surviving_intervals():
    assert estimate_bpm([0, 10, 40], 30) is None


def test_implausible_rates_are_rejected():
    assert estimate_bpm([0, 60, 120, 180], 30) is None  # 30 bpm
    assert estimate_bpm([0, 8, 16, 24], 30) is None  # 225 bpm


def test_bounds_are_inclusive():
    assert estimate_bpm([0, 45, 90], 30) == 40
    assert estimate_bpm([0, 9, 18], 30) == 200


def test_half_bpm_rounds_up():
    # 30 / 16 * 60 = 112.5
    assert estimate_bpm([0, 16, 32, 48], 30) == 113


def test_outlier_band_edges_are_excluded():
    # Median interval 10: an interval of exactly 7 or 13 is dropped
    assert estimate_bpm([0, 10, 20, 27], 30) == 180
    assert estimate_bpm([0, 10, 20, 33], 30) == 180
