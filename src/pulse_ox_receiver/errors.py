"""
Error taxonomy for the sensor ingestion pipelines.

Hardware, permission and connection failures are terminal for the current
session and carry a user-facing message. Per-packet anomalies
(``TransientDecodeError``, ``OutOfRangeReading``) are dropped by the
notification handler and never reach the caller.
"""

from __future__ import annotations


class SensorError(Exception):
    """Base class for every error raised by this package."""


class AcquisitionError(SensorError):
    """Capture device could not be opened, was denied, or went away."""

    PERMISSION_MESSAGE = "Camera permission needed for heart rate"
    UNAVAILABLE_MESSAGE = "Could not access camera"
    LOST_MESSAGE = "Camera disconnected"


class ConnectionFailedError(SensorError):
    """Transport-level failure while opening the oximeter connection."""

    def __init__(self, message: str = "Could not connect to oximeter") -> None:
        super().__init__(message)


class DeviceNotFoundError(ConnectionFailedError):
    """Scan completed without any allow-listed oximeter in range."""

    def __init__(self, message: str = "No oximeter found nearby") -> None:
        super().__init__(message)


class BluetoothUnavailableError(ConnectionFailedError):
    """The Bluetooth adapter is missing, disabled, or cannot scan."""

    def __init__(self, message: str = "Bluetooth not supported on this system") -> None:
        super().__init__(message)


class UnsupportedDeviceError(SensorError):
    """Every protocol probe strategy reported the device as unsupported."""

    def __init__(self, message: str = "Unsupported oximeter model") -> None:
        super().__init__(message)


class ConnectionInProgressError(SensorError):
    """``connect()`` was called while another attempt is still running."""


class UserCancelled(SensorError):
    """The device chooser was dismissed. Not surfaced as an error."""


class TransientDecodeError(SensorError):
    """A single notification payload was malformed or too short."""


class OutOfRangeReading(SensorError):
    """A decoded value fell outside its physiological bounds."""


class CharacteristicUnavailableError(SensorError):
    """The connected device does not expose the requested characteristic."""
