#!/usr/bin/env python3
"""
BLE oximeter connection diagnostics and troubleshooting tool.
"""

import sys
import os
import asyncio
import subprocess
import platform
import logging

# Add the package to the path (from scripts/ to src/)
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from bleak import BleakScanner  # noqa: E402

from pulse_ox_receiver.config import OximeterConfig  # noqa: E402
from pulse_ox_receiver.connection import ConnectionManager, OximeterState  # noqa: E402
from pulse_ox_receiver.errors import SensorError  # noqa: E402
from pulse_ox_receiver.transport import BleakTransport, _match_device  # noqa: E402

# Configure logging for diagnostics tool
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",  # Simple format for user-friendly output
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


async def check_bluetooth_status() -> bool:
    """Check if Bluetooth is available and working."""
    logger.info("🔵 Checking Bluetooth status...")

    system = platform.system().lower()

    if system == "darwin":  # macOS
        command = ["system_profiler", "SPBluetoothDataType"]
        marker = "State: On"
    elif system == "linux":
        command = ["bluetoothctl", "show"]
        marker = "Powered: yes"
    else:
        logger.warning(f"⚠️ Bluetooth status check not implemented for {system}")
        return True  # Assume it's working

    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"⚠️ Could not check Bluetooth status on {system}: {e}")
        return True  # Assume it's working

    if marker in result.stdout:
        logger.info(f"✅ Bluetooth is enabled on {system}")
        return True
    logger.error(f"❌ Bluetooth appears to be disabled on {system}")
    return False


async def scan_for_devices(config: OximeterConfig, duration: float = 10.0) -> None:
    """Scan for nearby BLE devices and flag allow-listed oximeters."""
    logger.info(f"📡 Scanning for BLE devices for {duration}s...")

    try:
        devices_adv = await BleakScanner.discover(timeout=duration, return_adv=True)
    except Exception as e:
        logger.error(f"❌ Error during BLE scan: {e}")
        return

    if not devices_adv:
        logger.error("❌ No BLE devices found")
        logger.info("💡 Troubleshooting:")
        logger.info("   - Make sure the oximeter is switched on with a finger inserted")
        logger.info("   - Move closer to the device")
        return

    logger.info(f"✅ Found {len(devices_adv)} BLE device(s):")

    matches = 0
    for device, adv in devices_adv.values():
        logger.info(f"   📱 {device.name or 'Unknown'} ({device.address}) RSSI: {adv.rssi}dBm")
        if _match_device(device, adv, config.name_prefixes):
            matches += 1
            logger.info("      🎯 Oximeter candidate")

    if matches:
        logger.info(f"\n🎯 Found {matches} oximeter candidate(s)")
    else:
        logger.warning("\n⚠️ No device matched the oximeter allow-list")
        logger.info(f"💡 Accepted name prefixes: {', '.join(config.name_prefixes)}")


async def test_connection(config: OximeterConfig, readings: int = 3) -> None:
    """Connect, probe the protocol, and wait for a few readings."""
    logger.info("\n🔌 Testing connection to the first oximeter found...")

    manager = ConnectionManager(
        lambda: BleakTransport(name_prefixes=config.name_prefixes, scan_timeout=config.scan_timeout),
        config,
    )
    received: "asyncio.Queue[OximeterState]" = asyncio.Queue()

    try:
        await manager.connect()
        state = manager.state
        if not state.is_connected:
            logger.error("❌ No device selected")
            return
        logger.info(f"✅ Connected to {state.device_name} via {state.protocol.value}")

        manager.add_listener(received.put_nowait)
        logger.info("📊 Testing data reception...")
        count = 0
        while count < readings:
            try:
                state = await asyncio.wait_for(received.get(), timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("⏱️ Timeout waiting for data")
                break
            if not state.is_connected:
                logger.error("❌ Device disconnected")
                break
            if state.spo2 is not None:
                count += 1
                logger.info(f"📈 Reading {count}: SpO2={state.spo2}% pulse={state.pulse_rate}bpm")
        logger.info(f"✅ Received {count} reading(s)")

    except SensorError as e:
        logger.error(f"❌ Connection test failed: {e}")

    finally:
        await manager.disconnect()


async def main() -> None:
    """Run BLE diagnostics."""
    logger.info("🔧 Pulse Oximeter BLE Diagnostics")
    logger.info("=" * 40)

    config = OximeterConfig(scan_timeout=15.0, connect_timeout=30.0)

    # Check Bluetooth status
    bt_ok = await check_bluetooth_status()
    if not bt_ok:
        logger.error(
            "\n❌ Bluetooth issues detected. Please enable Bluetooth and try again."
        )
        return

    # Scan for devices
    await scan_for_devices(config, duration=config.scan_timeout)

    # Test connection
    await test_connection(config)

    logger.info("\n🏁 Diagnostics complete")
    logger.info("\n💡 If you're still having connection issues:")
    logger.info("   1. Restart the oximeter and re-insert your finger")
    logger.info("   2. Move closer to reduce interference")
    logger.info("   3. Make sure no phone app is already connected to the oximeter")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("\n👋 Diagnostics cancelled by user")
    except Exception as e:
        logger.error(f"❌ Diagnostics error: {e}")
        sys.exit(1)
