"""
Command-Line Interface - Argument Parsing and Entry Point

Headless front end for the SIMIP device engine. The host running it must
already be joined to the instrument's Wi-Fi network.

Usage:
    python -m py2simip status --duration 10
    python -m py2simip measure --current 80 --time 2.0 --stack 4
    python -m py2simip --config simip.yaml show-config
"""

import sys
import json
import queue
import argparse
import logging
from typing import List, Optional

from py2simip.core.errors import SimipError, MeasurementAbort
from py2simip.models.connection import ConnectionState
from py2simip.models.settings import EngineSettings, load_settings, dump_settings
from py2simip.services.device_client import DeviceClient
from py2simip.services.wifi import PresetNetworkAssociator


def parse_args(args: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        args: List of arguments to parse. If None, uses sys.argv[1:]

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="py2simip",
        description="SIMIP resistivity/IP instrument client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s status --duration 10
  %(prog)s measure --current 80 --time 2.0 --stack 4
  %(prog)s --host 192.168.4.1 --port 8888 show-config
        """
    )

    parser.add_argument("--config", type=str, default=None,
                        help="YAML settings file")
    parser.add_argument("--host", type=str, default=None,
                        help="Instrument IP address (overrides settings)")
    parser.add_argument("--port", type=int, default=None,
                        help="Instrument port (overrides settings)")
    parser.add_argument("--ssid", type=str, default=None,
                        help="SSID of the network this host is joined to "
                             "(default: assume it matches the SSID pattern)")
    parser.add_argument("--connect-timeout", type=float, default=60.0,
                        help="Seconds to wait for the connection to settle (default: 60)")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set logging level (default: INFO)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    status = subparsers.add_parser("status", help="Print device status updates")
    status.add_argument("--duration", type=float, default=10.0,
                        help="Seconds to watch status (default: 10)")

    measure = subparsers.add_parser("measure", help="Run one measurement")
    measure.add_argument("--current", type=int, required=True, help="Current in mA")
    measure.add_argument("--time", type=float, required=True, help="Measurement time in seconds")
    measure.add_argument("--stack", type=int, required=True, help="Number of repeats")
    measure.add_argument("--timeout", type=float, default=300.0,
                         help="Seconds to wait for the result (default: 300)")

    subparsers.add_parser("show-config", help="Print the effective settings as YAML")

    return parser.parse_args(args)


def setup_logging(level: str):
    """Configure application logging.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    numeric_level = getattr(logging, level.upper(), None)

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def build_settings(args: argparse.Namespace) -> EngineSettings:
    """Load settings and apply command-line overrides."""
    settings = load_settings(args.config)
    overrides = {}
    if args.host is not None:
        overrides['host'] = args.host
    if args.port is not None:
        overrides['port'] = args.port
    if overrides:
        data = settings.to_dict()
        data['connection'].update(overrides)
        settings = EngineSettings.from_dict(data)
    return settings


def build_client(args: argparse.Namespace, settings: EngineSettings) -> DeviceClient:
    ssid = args.ssid or settings.ssid_pattern
    return DeviceClient(wifi=PresetNetworkAssociator([ssid]), settings=settings)


def _connect(client: DeviceClient, timeout: float) -> bool:
    status = client.connect_and_wait(timeout=timeout)
    if status.state != ConnectionState.CONNECTED:
        print(f"Error: connection failed ({status.describe()})", file=sys.stderr)
        return False
    print(f"Connected: firmware {client.device_version.value}, SSID {client.connected_ssid.value}")
    return True


def run_status(client: DeviceClient, args: argparse.Namespace) -> int:
    def show(status):
        if not status.is_empty:
            print(json.dumps(status.to_dict()), flush=True)

    client.device_status.add_observer(show, replay=False)
    if not _connect(client, args.connect_timeout):
        return 1

    dropped = client.connection_status.wait_for(
        lambda s: s.state != ConnectionState.CONNECTED, timeout=args.duration
    )
    if dropped:
        print(f"Error: connection lost ({client.connection_status.value.describe()})",
              file=sys.stderr)
        return 1
    return 0


def run_measure(client: DeviceClient, args: argparse.Namespace) -> int:
    outcome: queue.Queue = queue.Queue()
    client.progress.subscribe(lambda p: print(f"Progress: {p.percent}%", flush=True))
    client.results.subscribe(outcome.put)
    client.aborts.subscribe(outcome.put)

    if not _connect(client, args.connect_timeout):
        return 1
    if not client.send_configuration(args.current, args.time, args.stack):
        print("Error: device did not accept the configuration", file=sys.stderr)
        return 1
    if not client.start_measurement():
        print("Error: device did not start the measurement", file=sys.stderr)
        return 1

    try:
        item = outcome.get(timeout=args.timeout)
    except queue.Empty:
        print(f"Error: no result within {args.timeout}s", file=sys.stderr)
        return 1

    if isinstance(item, MeasurementAbort):
        print(f"Error: {item.message}", file=sys.stderr)
        return 1
    print(json.dumps(item.to_dict(), indent=2))
    return 0


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point.

    Args:
        args: Command-line arguments. If None, uses sys.argv[1:]

    Returns:
        Exit code (0 = success, 1 = error)
    """
    parsed_args = parse_args(args)
    setup_logging(parsed_args.log_level)
    logger = logging.getLogger(__name__)

    try:
        settings = build_settings(parsed_args)
    except SimipError as e:
        print(f"Error: {e.format_user_message()}", file=sys.stderr)
        return 1

    if parsed_args.command == "show-config":
        print(dump_settings(settings), end="")
        return 0

    client = build_client(parsed_args, settings)
    try:
        if parsed_args.command == "status":
            return run_status(client, parsed_args)
        return run_measure(client, parsed_args)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 1
    finally:
        client.close()


if __name__ == "__main__":
    sys.exit(main())
