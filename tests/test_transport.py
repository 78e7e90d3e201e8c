import asyncio
from types import SimpleNamespace

import pytest

from pulse_ox_receiver import transport as transport_mod
from pulse_ox_receiver.config import DEFAULT_NAME_PREFIXES, OximeterConfig
from pulse_ox_receiver.connection import ConnectionManager, ConnectionPhase
from pulse_ox_receiver.errors import ConnectionFailedError, DeviceNotFoundError, UserCancelled
from pulse_ox_receiver.transport import (
    BERRYMED_NOTIFY,
    PLX_SERVICE,
    BleakTransport,
    MockOximeterTransport,
    _match_device,
)


def device(name, address="AA:BB:CC:DD:EE:FF"):
    return SimpleNamespace(name=name, address=address)


def adv(local_name=None, service_uuids=(), rssi=-60):
    return SimpleNamespace(local_name=local_name, service_uuids=list(service_uuids), rssi=rssi)


@pytest.mark.parametrize(
    "name, expected",
    [
        ("BerryMed", True),
        ("PC-60F_SN0001", True),
        ("Oxi-Pro", True),
        ("SpO2 Finger", True),
        ("berrymed", False),  # prefixes are case-sensitive
        ("Fitbit Charge", False),
        (None, False),
    ],
)
def test_match_by_name_prefix(name, expected):
    assert _match_device(device(name), adv(), DEFAULT_NAME_PREFIXES) is expected


def test_match_by_advertised_plx_service():
    assert _match_device(device(None), adv(service_uuids=[PLX_SERVICE.upper()]), DEFAULT_NAME_PREFIXES)


def test_match_falls_back_to_local_name():
    assert _match_device(device(None), adv(local_name="Wellue O2Ring"), DEFAULT_NAME_PREFIXES)


def test_match_without_advertisement():
    assert _match_device(device("CMS50D"), None, DEFAULT_NAME_PREFIXES)


def test_empty_scan_raises_device_not_found(monkeypatch):
    async def no_devices(name_prefixes, timeout):
        return []

    monkeypatch.setattr(transport_mod, "discover_oximeters", no_devices)
    with pytest.raises(DeviceNotFoundError, match="No oximeter found nearby"):
        asyncio.run(BleakTransport()._resolve_target())


def test_dismissed_chooser_raises_user_cancelled(monkeypatch):
    async def one_device(name_prefixes, timeout):
        return [device("BerryMed")]

    monkeypatch.setattr(transport_mod, "discover_oximeters", one_device)
    with pytest.raises(UserCancelled):
        asyncio.run(BleakTransport(chooser=lambda devices: None)._resolve_target())


def test_chooser_result_is_used(monkeypatch):
    candidates = [device("BerryMed", "01"), device("Viatom", "02")]

    async def two_devices(name_prefixes, timeout):
        return candidates

    monkeypatch.setattr(transport_mod, "discover_oximeters", two_devices)
    target, name = asyncio.run(BleakTransport(chooser=lambda devices: devices[1])._resolve_target())
    assert target is candidates[1]
    assert name == "Viatom"


def test_explicit_address_skips_scan(monkeypatch):
    async def fail(name_prefixes, timeout):
        raise AssertionError("scan should not run")

    monkeypatch.setattr(transport_mod, "discover_oximeters", fail)
    target, name = asyncio.run(BleakTransport("12:34")._resolve_target())
    assert (target, name) == ("12:34", "")


def test_closed_bleak_transport_is_safe():
    bleak_transport = BleakTransport("12:34")
    asyncio.run(bleak_transport.close())
    assert not bleak_transport.is_open


def test_mock_stream_emits_vendor_packets():
    transport = MockOximeterTransport(stream_interval=0.01)
    received = []

    async def scenario():
        await transport.open()
        characteristic = await transport.get_characteristic(
            transport.characteristics[0][0], BERRYMED_NOTIFY
        )
        await characteristic.start_notifications(received.append)
        await asyncio.sleep(0.05)
        await transport.close()

    asyncio.run(scenario())
    assert received
    assert all(len(p) == 5 for p in received)


class GatedBleakClient:
    """Stand-in for BleakClient whose connect() waits for the test."""

    instances = []

    def __init__(self, target, disconnected_callback=None):
        self.target = target
        self.is_connected = False
        self.disconnect_calls = 0
        self.gate = asyncio.Event()
        GatedBleakClient.instances.append(self)

    async def connect(self):
        await self.gate.wait()
        self.is_connected = True

    async def disconnect(self):
        self.disconnect_calls += 1
        self.is_connected = False


def test_close_during_connect_drops_late_link(monkeypatch):
    GatedBleakClient.instances = []
    monkeypatch.setattr(transport_mod, "BleakClient", GatedBleakClient)

    async def scenario():
        bleak_transport = BleakTransport("12:34")
        opening = asyncio.ensure_future(bleak_transport.open())
        await asyncio.sleep(0)
        await bleak_transport.close()
        GatedBleakClient.instances[0].gate.set()
        with pytest.raises(ConnectionFailedError):
            await opening
        return bleak_transport

    bleak_transport = asyncio.run(scenario())
    client = GatedBleakClient.instances[0]
    assert not bleak_transport.is_open
    assert not client.is_connected
    assert client.disconnect_calls == 1


def test_manager_disconnect_during_connect_releases_ble_link(monkeypatch):
    GatedBleakClient.instances = []
    monkeypatch.setattr(transport_mod, "BleakClient", GatedBleakClient)

    async def scenario():
        manager = ConnectionManager(lambda: BleakTransport("12:34"), OximeterConfig())
        connecting = asyncio.ensure_future(manager.connect())
        await asyncio.sleep(0)
        await manager.disconnect()
        GatedBleakClient.instances[0].gate.set()
        with pytest.raises(ConnectionFailedError):
            await connecting
        return manager

    manager = asyncio.run(scenario())
    client = GatedBleakClient.instances[0]
    assert manager.connection_state.phase is ConnectionPhase.DISCONNECTED
    assert not client.is_connected
    assert client.disconnect_calls == 1
