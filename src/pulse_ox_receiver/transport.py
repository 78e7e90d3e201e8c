"""BLE transport capabilities for pulse-oximeter devices.

This module isolates every hardware-facing BLE operation behind two narrow
interfaces so the connection state machine and protocol probe can run, and be
tested, without a radio:

- ``NotifyingCharacteristic``: one subscribable GATT characteristic.
- ``OximeterTransport``: one exclusively-held device connection that can
  hand out characteristics and reports external disconnects.

Two implementations are provided:

- ``BleakTransport``: real devices through the cross-platform Bleak library,
  including allow-list based discovery.
- ``MockOximeterTransport``: an in-memory device for tests, demos and the
  ``--mock`` CLI mode.

Requirements:
- bleak: Cross-platform BLE library for device communication
"""

from __future__ import annotations

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .config import DEFAULT_NAME_PREFIXES
from .errors import (
    BluetoothUnavailableError,
    CharacteristicUnavailableError,
    ConnectionFailedError,
    DeviceNotFoundError,
    UserCancelled,
)

logger = logging.getLogger(__name__)


# Standard Bluetooth SIG Pulse Oximeter Service (PLX)
PLX_SERVICE = "00001822-0000-1000-8000-00805f9b34fb"
PLX_CONTINUOUS = "00002a5f-0000-1000-8000-00805f9b34fb"
PLX_SPOT_CHECK = "00002a5e-0000-1000-8000-00805f9b34fb"

# BerryMed BM1000C/E
BERRYMED_SERVICE = "49535343-fe7d-4ae5-8fa9-9fafd205e455"
BERRYMED_NOTIFY = "49535343-1e4d-4bd9-ba61-23c647249616"

# Viatom/Wellue over Nordic UART Service (NUS)
NUS_SERVICE = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NUS_TX = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"

# Generic HM-10 serial module
HM10_SERVICE = "0000ffe0-0000-1000-8000-00805f9b34fb"
HM10_CHAR = "0000ffe1-0000-1000-8000-00805f9b34fb"

NotificationHandler = Callable[[bytes], None]
DeviceChooser = Callable[[List[BLEDevice]], Optional[BLEDevice]]


class NotifyingCharacteristic(ABC):
    """A GATT characteristic the central can subscribe to."""

    @property
    @abstractmethod
    def uuid(self) -> str:
        """Lower-case 128-bit UUID of the characteristic."""

    @abstractmethod
    async def start_notifications(self, handler: NotificationHandler) -> None:
        """Subscribe; ``handler`` is called synchronously with each payload."""

    @abstractmethod
    async def stop_notifications(self) -> None:
        """Unsubscribe. Safe to call on a dead connection."""


class OximeterTransport(ABC):
    """Exclusively-held connection to one oximeter device.

    Implementations must make ``close()`` idempotent and safe on every exit
    path, including after a failed ``open()``. ``set_disconnect_handler`` is
    called before ``open()``; the handler must fire when the device goes away
    without a prior ``close()`` (powered off, out of range).
    """

    @abstractmethod
    async def open(self) -> str:
        """Discover and connect to the device.

        Returns:
            Advertised device name, or an empty string when unknown.

        Raises:
            ConnectionFailedError: (or a subclass) when the device could not
                be reached.
            UserCancelled: When the device chooser was dismissed.
        """

    @abstractmethod
    async def get_characteristic(
        self, service_uuid: str, char_uuid: str
    ) -> NotifyingCharacteristic:
        """Look up a characteristic on the open connection.

        Raises:
            CharacteristicUnavailableError: When the device lacks it.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the connection. Idempotent."""

    @abstractmethod
    def set_disconnect_handler(self, handler: Optional[Callable[[], None]]) -> None:
        """Register the callback for external disconnects (None to clear)."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while the device connection is held."""


def _match_device(
    dev: BLEDevice,
    adv: Optional[AdvertisementData],
    name_prefixes: Sequence[str],
    service_uuid: str = PLX_SERVICE,
) -> bool:
    """Check whether a discovered device belongs in the oximeter chooser.

    Devices are accepted when their advertised name starts with one of the
    allow-listed prefixes, or when they advertise the standard PLX service.

    Args:
        dev: BLE device object containing basic device information.
        adv: Advertisement data for the device, if the scan returned it.
        name_prefixes: Allow-listed device-name prefixes (case-sensitive).
        service_uuid: Service UUID accepted regardless of name.

    Returns:
        True if the device matches either criterion.
    """
    name = dev.name or (adv.local_name if adv is not None else None) or ""
    logger.debug(
        "Device discovered: addr=%s name=%s rssi=%s uuids=%s",
        getattr(dev, "address", "?"),
        name,
        getattr(adv, "rssi", None),
        getattr(adv, "service_uuids", None),
    )

    if name and any(name.startswith(prefix) for prefix in name_prefixes):
        logger.info("Device matched by name prefix: %s (%s)", name, dev.address)
        return True

    uuids: Iterable[str] = (adv.service_uuids if adv is not None else None) or []
    if any(u.lower() == service_uuid.lower() for u in uuids):
        logger.info("Device matched by PLX service: %s (%s)", name, dev.address)
        return True

    return False


async def discover_oximeters(
    name_prefixes: Sequence[str] = DEFAULT_NAME_PREFIXES,
    timeout: float = 10.0,
) -> List[BLEDevice]:
    """Scan for nearby oximeters allowed by the name-prefix allow-list.

    Args:
        name_prefixes: Device-name prefixes that scope the chooser.
        timeout: Scan duration in seconds.

    Returns:
        Matching devices in discovery order (possibly empty).

    Raises:
        BluetoothUnavailableError: If the adapter cannot start scanning.
    """
    logger.info("BLE oximeter discovery started: timeout=%.1fs", timeout)
    try:
        # Bleak 0.22+ only exposes advertisement data with return_adv=True
        devices_adv: Dict[str, Tuple[BLEDevice, AdvertisementData]] = (
            await BleakScanner.discover(timeout=timeout, return_adv=True)
        )
    except (BleakError, OSError) as e:
        raise BluetoothUnavailableError() from e

    logger.debug("Scan completed: %d devices found", len(devices_adv))
    return [
        dev
        for dev, adv in devices_adv.values()
        if _match_device(dev, adv, name_prefixes)
    ]


def first_device(devices: List[BLEDevice]) -> Optional[BLEDevice]:
    """Default chooser: take the first discovered candidate."""
    return devices[0] if devices else None


class BleakCharacteristic(NotifyingCharacteristic):
    """``NotifyingCharacteristic`` backed by a connected ``BleakClient``."""

    def __init__(self, client: BleakClient, characteristic: BleakGATTCharacteristic):
        self._client = client
        self._characteristic = characteristic
        self._subscribed = False

    @property
    def uuid(self) -> str:
        return self._characteristic.uuid.lower()

    async def start_notifications(self, handler: NotificationHandler) -> None:
        def on_notify(_: BleakGATTCharacteristic, data: bytearray) -> None:
            handler(bytes(data))

        await self._client.start_notify(self._characteristic, on_notify)
        self._subscribed = True

    async def stop_notifications(self) -> None:
        if not self._subscribed:
            return
        self._subscribed = False
        if not self._client.is_connected:
            return
        try:
            await self._client.stop_notify(self._characteristic)
        except BleakError as e:
            logger.warning("stop_notify failed for %s: %s", self.uuid, e)


class BleakTransport(OximeterTransport):
    """Production transport over Bleak.

    When no address is given, ``open()`` scans for allow-listed oximeters and
    lets ``chooser`` pick one, which stands in for a device picker dialog.
    A chooser returning None means the user dismissed the picker.

    Attributes:
        _address: Fixed device address/UUID, skipping discovery when set.
        _name_prefixes: Allow-list used to scope discovery.
        _scan_timeout: Discovery duration in seconds.
        _chooser: Picks the device from the discovered candidates.
        _client: Connected client while the transport is open.
        _closing: Set during ``close()`` so our own disconnect is not
            reported as an external one.
    """

    def __init__(
        self,
        address: Optional[str] = None,
        *,
        name_prefixes: Sequence[str] = DEFAULT_NAME_PREFIXES,
        scan_timeout: float = 10.0,
        chooser: DeviceChooser = first_device,
    ) -> None:
        self._address = address
        self._name_prefixes = tuple(name_prefixes)
        self._scan_timeout = scan_timeout
        self._chooser = chooser
        self._client: Optional[BleakClient] = None
        self._disconnect_handler: Optional[Callable[[], None]] = None
        self._closing = False

    def set_disconnect_handler(self, handler: Optional[Callable[[], None]]) -> None:
        self._disconnect_handler = handler

    @property
    def is_open(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def _resolve_target(self) -> Tuple[Union[str, BLEDevice], str]:
        if self._address is not None:
            return self._address, ""

        candidates = await discover_oximeters(self._name_prefixes, self._scan_timeout)
        if not candidates:
            raise DeviceNotFoundError()

        device = self._chooser(candidates)
        if device is None:
            raise UserCancelled("Device chooser dismissed")
        return device, device.name or ""

    def _on_disconnect(self, _: BleakClient) -> None:
        if self._closing:
            return
        logger.warning("BLE connection lost (callback)")
        if self._disconnect_handler is not None:
            self._disconnect_handler()

    async def open(self) -> str:
        target, name = await self._resolve_target()
        address = target if isinstance(target, str) else target.address

        self._closing = False
        client = BleakClient(target, disconnected_callback=self._on_disconnect)
        self._client = client
        logger.info("BLE connection starting: %s", address)
        try:
            await client.connect()
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            logger.error("BLE connection failed: %s: %s", type(e).__name__, e)
            await self.close()
            raise ConnectionFailedError() from e

        if self._client is not client:
            # close() ran while connecting; the link came up with no owner
            logger.warning("BLE transport closed during connect: %s", address)
            try:
                await client.disconnect()
            except (BleakError, OSError) as e:
                logger.warning("BLE disconnect raised %s: %s", type(e).__name__, e)
            raise ConnectionFailedError("Oximeter disconnected during setup")

        if not client.is_connected:
            await self.close()
            raise ConnectionFailedError()

        logger.info("BLE connection established: %s", address)
        return name

    async def get_characteristic(
        self, service_uuid: str, char_uuid: str
    ) -> NotifyingCharacteristic:
        if self._client is None:
            raise CharacteristicUnavailableError("Transport is not open")

        char = self._client.services.get_characteristic(char_uuid)
        if char is None or char.service_uuid.lower() != service_uuid.lower():
            raise CharacteristicUnavailableError(f"{service_uuid}/{char_uuid} not present")
        if not {"notify", "indicate"} & set(char.properties):
            raise CharacteristicUnavailableError(f"{char_uuid} does not notify")
        return BleakCharacteristic(self._client, char)

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        self._closing = True
        try:
            if client.is_connected:
                logger.info("Disconnecting BLE client")
                await client.disconnect()
        except (BleakError, OSError) as e:
            logger.warning("BLE disconnect raised %s: %s", type(e).__name__, e)


class MockCharacteristic(NotifyingCharacteristic):
    """In-memory characteristic owned by ``MockOximeterTransport``."""

    def __init__(self, transport: "MockOximeterTransport", uuid: str):
        self._transport = transport
        self._uuid = uuid

    @property
    def uuid(self) -> str:
        return self._uuid

    async def start_notifications(self, handler: NotificationHandler) -> None:
        self._transport._handlers[self._uuid] = handler
        self._transport.subscribe_log.append(self._uuid)

    async def stop_notifications(self) -> None:
        if self._transport._handlers.pop(self._uuid, None) is not None:
            self._transport.unsubscribe_log.append(self._uuid)


class MockOximeterTransport(OximeterTransport):
    """Synthetic oximeter for testing, development and demonstration.

    The mock exposes a configurable set of (service, characteristic) pairs
    and records every lookup and subscription so probe order can be checked.
    Payloads are pushed with ``emit()``; when ``stream_interval`` is set, a
    background task emits BerryMed-style packets with a slow random walk.

    Attributes:
        characteristics: Exposed (service_uuid, char_uuid) pairs.
        probe_log: Every characteristic UUID requested, in order.
        subscribe_log: Every characteristic subscribed to, in order.
        unsubscribe_log: Every characteristic unsubscribed from, in order.
        open_count: Number of successful ``open()`` calls.
        close_count: Number of ``close()`` calls that released the device.
    """

    def __init__(
        self,
        characteristics: Iterable[Tuple[str, str]] = ((BERRYMED_SERVICE, BERRYMED_NOTIFY),),
        *,
        device_name: str = "BerryMed Mock",
        fail_open: Optional[BaseException] = None,
        stream_interval: Optional[float] = None,
    ) -> None:
        self.characteristics = [(s.lower(), c.lower()) for s, c in characteristics]
        self.device_name = device_name
        self.fail_open = fail_open
        self.stream_interval = stream_interval

        self.probe_log: List[str] = []
        self.subscribe_log: List[str] = []
        self.unsubscribe_log: List[str] = []
        self.open_count = 0
        self.close_count = 0

        self._handlers: Dict[str, NotificationHandler] = {}
        self._disconnect_handler: Optional[Callable[[], None]] = None
        self._open = False
        self._stream_task: Optional[asyncio.Task] = None

    def set_disconnect_handler(self, handler: Optional[Callable[[], None]]) -> None:
        self._disconnect_handler = handler

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def active_subscriptions(self) -> List[str]:
        return list(self._handlers)

    async def open(self) -> str:
        if self.fail_open is not None:
            raise self.fail_open
        self._open = True
        self.open_count += 1
        if self.stream_interval is not None:
            self._stream_task = asyncio.ensure_future(self._stream_packets())
        return self.device_name

    async def get_characteristic(
        self, service_uuid: str, char_uuid: str
    ) -> NotifyingCharacteristic:
        self.probe_log.append(char_uuid.lower())
        if not self._open:
            raise CharacteristicUnavailableError("Transport is not open")
        if (service_uuid.lower(), char_uuid.lower()) not in self.characteristics:
            raise CharacteristicUnavailableError(f"{service_uuid}/{char_uuid} not present")
        return MockCharacteristic(self, char_uuid.lower())

    async def close(self) -> None:
        if self._stream_task is not None:
            self._stream_task.cancel()
            self._stream_task = None
        if not self._open:
            return
        self._open = False
        self._handlers.clear()
        self.close_count += 1

    def emit(self, char_uuid: str, payload: bytes) -> None:
        """Deliver one notification to the subscriber of ``char_uuid``."""
        handler = self._handlers.get(char_uuid.lower())
        if handler is not None:
            handler(bytes(payload))

    def simulate_disconnect(self) -> None:
        """Drop the link as if the device powered off or left range."""
        if self._stream_task is not None:
            self._stream_task.cancel()
            self._stream_task = None
        self._open = False
        self._handlers.clear()
        if self._disconnect_handler is not None:
            self._disconnect_handler()

    async def _stream_packets(self) -> None:
        spo2, pulse = 97, 72
        try:
            while self._open:
                spo2 = min(100, max(92, spo2 + random.choice((-1, 0, 0, 1))))
                pulse = min(110, max(55, pulse + random.randint(-2, 2)))
                for _, char_uuid in self.characteristics:
                    self.emit(char_uuid, bytes([0x80, 0x00, 0x00, pulse, spo2]))
                await asyncio.sleep(self.stream_interval)
        except asyncio.CancelledError:
            pass
