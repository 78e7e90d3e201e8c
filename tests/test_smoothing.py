import pytest

from pulse_ox_receiver.smoothing import (
    ReadingSmoother,
    mean_policy,
    mean_smoother,
    median_policy,
    median_smoother,
    round_half_up,
)


def test_mean_policy():
    assert mean_policy([70, 74]) == 72
    assert mean_policy([72]) == 72


def test_mean_policy_rounds_half_up():
    assert mean_policy([72, 73]) == 73
    assert mean_policy([71, 72]) == 72
    assert round_half_up(2.5) == 3
    assert round_half_up(-2.5) == -2


def test_median_policy_takes_upper_median():
    assert median_policy([1, 2, 3, 4]) == 3
    assert median_policy([5, 1, 3]) == 3


def test_history_is_bounded():
    smoother = mean_smoother(5)
    for value in range(1, 7):
        smoother.add(value)
    assert smoother.history == (2, 3, 4, 5, 6)
    assert len(smoother) == 5


def test_median_ignores_single_corrupted_packet():
    smoother = median_smoother()
    outputs = [smoother.add(v) for v in (97, 97, 60, 97, 98)]
    assert outputs[-1] == 97


def test_mean_is_pulled_by_outlier():
    smoother = mean_smoother()
    outputs = [smoother.add(v) for v in (72, 72, 72, 72, 132)]
    assert outputs[-1] == 84


def test_clear():
    smoother = median_smoother()
    smoother.add(90)
    smoother.clear()
    assert smoother.history == ()
    assert smoother.add(95) == 95


def test_invalid_window():
    with pytest.raises(ValueError):
        ReadingSmoother(mean_policy, window=0)
