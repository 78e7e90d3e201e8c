"""
Pipeline configuration for the optical pulse and BLE oximeter receivers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Tuple


# Name prefixes that scope the oximeter device chooser
DEFAULT_NAME_PREFIXES: Tuple[str, ...] = (
    "BerryMed",
    "PC-60",
    "Viatom",
    "Wellue",
    "OxySmart",
    "Contec",
    "CMS50",
    "Pulse",
    "Oxi",
    "SpO2",
)


@dataclass
class PulseConfig:
    """
    Configuration for the optical (PPG) heart-rate pipeline.

    All window lengths are expressed in seconds and converted to sample
    counts through ``rate_hz``, so changing the sampling cadence keeps the
    detection windows consistent.
    """

    # Sampling settings
    rate_hz: int = 30  # Target sample rate, independent of the driving signal
    refresh_hz: float = 60.0  # Frequency of the driving (display-refresh) signal
    buffer_seconds: int = 10

    # Detection settings
    calibration_seconds: int = 3  # Readings suppressed during warm-up
    min_detect_seconds: int = 4  # Buffer fill needed before peak detection
    min_peak_seconds: float = 0.35  # Caps detectable rate at ~170 bpm

    # Presence thresholds
    red_threshold: float = 80.0
    presence_ratio: float = 1.2

    # Output settings
    smoothing_window: int = 5
    signal_view: int = 100  # Samples exposed to the UI

    @property
    def buffer_capacity(self) -> int:
        return self.rate_hz * self.buffer_seconds

    @property
    def calibration_samples(self) -> int:
        return self.rate_hz * self.calibration_seconds

    @property
    def min_detect_samples(self) -> int:
        return self.rate_hz * self.min_detect_seconds

    @property
    def min_peak_distance(self) -> int:
        return int(math.floor(self.rate_hz * self.min_peak_seconds))

    @property
    def sample_interval(self) -> float:
        return 1.0 / self.rate_hz


@dataclass
class OximeterConfig:
    """
    Configuration for BLE oximeter discovery and connection.

    ``connect_timeout`` defaults to None: connection and protocol probing
    may wait indefinitely on an unresponsive device unless a bound is set.
    """

    name_prefixes: Tuple[str, ...] = field(default=DEFAULT_NAME_PREFIXES)
    scan_timeout: float = 10.0
    connect_timeout: Optional[float] = None
    smoothing_window: int = 5
    default_device_name: str = "Pulse Oximeter"
