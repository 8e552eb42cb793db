"""
Canonical entry point for airquality_exporter.

Usage:
    airquality-exporter --port-path /dev/ttyUSB0 --cycle 5
    python -m airquality_exporter --web.listen-address :9100 --no-force-set-cycle -v
"""

import argparse
import logging
import sys
from typing import Optional, Sequence

from prometheus_client import REGISTRY
from pydantic import ValidationError

from airquality_exporter import __version__
from airquality_exporter.api import ServerError, create_app, run_server
from airquality_exporter.config.settings import get_settings
from airquality_exporter.controller import make_controller
from airquality_exporter.logs import setup_logging
from airquality_exporter.metrics import MetricsSink

# bounded wait for the controller to close the serial port
SHUTDOWN_TIMEOUT_SEC = 5.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="airquality-exporter",
        description="Prometheus exporter for the SDS011 particulate matter sensor",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        help="Address to listen on for web interface and telemetry (default :8080)",
    )
    parser.add_argument("--port-path", help="Serial port path (default /dev/ttyUSB0)")
    parser.add_argument("--cycle", type=int, help="Sensor cycle length in minutes (default 5)")
    parser.add_argument(
        "--force-set-cycle",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Force set cycle on every program start (default on)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", default=None, help="Verbose mode"
    )
    parser.add_argument("--version", action="version", version=__version__)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point for airquality-exporter."""
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings(
            LISTEN_ADDRESS=args.listen_address,
            PORT_PATH=args.port_path,
            CYCLE=args.cycle,
            FORCE_SET_CYCLE=args.force_set_cycle,
            VERBOSE=args.verbose,
        )
    except ValidationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Invalid configuration", extra={"error": str(e)})
        sys.exit(2)

    setup_logging(settings.VERBOSE)
    log = logging.getLogger(__name__)
    log.info("Starting", extra={"version": __version__})

    sink = MetricsSink(REGISTRY)
    controller = make_controller(settings, sink)

    controller.start()

    try:
        run_server(create_app(REGISTRY), settings.LISTEN_ADDRESS)
    except ServerError as e:
        log.error("Server error", extra={"error": str(e)})
        sys.exit(1)

    # run_server returns once it has handled SIGTERM or SIGINT
    log.info("Stopping exporter...")
    controller.stop()
    controller.join(timeout=SHUTDOWN_TIMEOUT_SEC)
    if controller.is_alive():
        log.warning("Device controller still blocked on the sensor, exiting anyway")


if __name__ == "__main__":
    main()
