from __future__ import annotations

import argparse
import logging
import sys

from .acquisition import PulseMonitor
from .config import OximeterConfig, PulseConfig
from .connection import ConnectionManager
from .console import print_oximeter_stream, print_pulse_stream, print_scan, run
from .frames import CameraFrameSource, FrameSource, MockFrameSource
from .transport import BleakTransport, MockOximeterTransport, OximeterTransport

logger = logging.getLogger(__name__)


def _add_logging_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
            "NOTSET",
        ],
        help="Log level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (default: stderr only)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pulse-ox-receiver",
        description="Camera heart-rate and BLE pulse-oximeter receiver: stream readings as CSV or show a live monitor.",
    )
    _add_logging_args(parser)
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="List allow-listed oximeters in range")
    scan.add_argument("--scan-timeout", type=float, default=10.0, help="Scan timeout in seconds")

    oxi = sub.add_parser("oximeter", help="Stream SpO2/pulse-rate readings as CSV")
    oxi.add_argument("--address", help="BLE address of the device (auto-discover if omitted)")
    oxi.add_argument("--scan-timeout", type=float, default=10.0, help="Scan timeout in seconds")
    oxi.add_argument(
        "--connect-timeout",
        type=float,
        default=None,
        help="Give up connecting/probing after this many seconds (default: no limit)",
    )
    oxi.add_argument("--mock", action="store_true", help="Use a simulated oximeter (no BLE device required)")
    oxi.add_argument("--no-header", action="store_true", help="Do not print the CSV header line")

    pulse = sub.add_parser("pulse", help="Measure heart rate from a fingertip over the camera")
    pulse.add_argument("--mock", action="store_true", help="Use a synthetic PPG signal (no camera required)")
    pulse.add_argument("--camera", type=int, default=0, help="Camera index (default: 0)")
    pulse.add_argument(
        "--pulse-hz", type=float, default=1.2, help="Simulated pulse frequency for --mock (default: 1.2)"
    )
    pulse.add_argument("--no-header", action="store_true", help="Do not print the CSV header line")

    mon = sub.add_parser("monitor", help="Serve the live web monitor")
    mon.add_argument("--mock", action="store_true", help="Use simulated camera and oximeter")
    mon.add_argument("--port", type=int, default=8050, help="Monitor server port (default: 8050)")
    mon.add_argument("--camera", type=int, default=0, help="Camera index (default: 0)")
    mon.add_argument("--address", help="BLE address of the oximeter (auto-discover if omitted)")
    mon.add_argument("--scan-timeout", type=float, default=10.0, help="Scan timeout in seconds")
    return parser


def _configure_logging(level_name: str, log_file: str | None) -> None:
    # CSV goes to stdout; logs go to stderr/file
    level = getattr(logging, str(level_name).upper(), logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            # Keep running with stderr only
            print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def _oximeter_manager(args: argparse.Namespace, mock: bool) -> ConnectionManager:
    config = OximeterConfig(
        scan_timeout=args.scan_timeout,
        connect_timeout=getattr(args, "connect_timeout", None),
    )

    def factory() -> OximeterTransport:
        if mock:
            return MockOximeterTransport(stream_interval=1.0)
        return BleakTransport(
            args.address,
            name_prefixes=config.name_prefixes,
            scan_timeout=config.scan_timeout,
        )

    return ConnectionManager(factory, config)


def _frame_source(mock: bool, camera: int, config: PulseConfig, pulse_hz: float = 1.2) -> FrameSource:
    if mock:
        return MockFrameSource(config.rate_hz, pulse_hz, noise=2.0)
    return CameraFrameSource(camera)


def main() -> None:
    args = _build_parser().parse_args()
    _configure_logging(args.log_level, args.log_file)

    if args.command == "scan":
        raise SystemExit(run(lambda: print_scan(scan_timeout=args.scan_timeout)))

    if args.command == "oximeter":
        manager = _oximeter_manager(args, args.mock)
        raise SystemExit(
            run(lambda: print_oximeter_stream(manager, show_header=not args.no_header))
        )

    if args.command == "pulse":
        config = PulseConfig()
        source = _frame_source(args.mock, args.camera, config, args.pulse_hz)
        monitor = PulseMonitor(source, config)
        raise SystemExit(run(lambda: print_pulse_stream(monitor, show_header=not args.no_header)))

    # monitor
    from .monitor import create_app

    logger.info("🔧 Pulse Monitor")
    logger.info("🔍 Open http://localhost:%d in your browser", args.port)
    if args.mock:
        logger.info("🔧 Using mock camera and oximeter (no hardware required)")

    config = PulseConfig()
    app = create_app(
        pulse=PulseMonitor(_frame_source(args.mock, args.camera, config), config),
        oximeter=_oximeter_manager(args, args.mock),
    )
    try:
        app.run(host="0.0.0.0", port=args.port)
    except KeyboardInterrupt:
        logger.info("🛑 Shutting down monitor...")
        raise SystemExit(130)
    except Exception as e:
        logger.error("❌ Failed to start monitor: %s", e)
        raise SystemExit(1)
    raise SystemExit(0)
