"""Command-line interface for bambu-lan."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from . import constants
from .app import PrinterOperations
from .config import BambuConfig, load_config
from .errors import BambuError
from .logging import configure_logging

LOGGER = logging.getLogger(__name__)


def _add_wait(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--wait",
        action="store_true",
        help="Wait for the printer to echo the command back",
    )


def _bool_flag(parser: argparse.ArgumentParser, name: str, default: bool, help_text: str) -> None:
    parser.add_argument(
        f"--{name}",
        action=argparse.BooleanOptionalAction,
        default=default,
        help=f"{help_text} (default: {'on' if default else 'off'})",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bambu-lan", description="LAN-mode control for Bambu Lab printers"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--log-level", help="Override the configured log level")

    resources = parser.add_subparsers(dest="resource", required=True)

    # print
    print_parser = resources.add_parser("print", help="Start and control print jobs")
    print_ops = print_parser.add_subparsers(dest="operation", required=True)
    start = print_ops.add_parser("start", help="Start printing a file on the SD card")
    start.add_argument("file_name")
    _bool_flag(start, "bed-leveling", True, "Run bed levelling")
    _bool_flag(start, "flow-calibration", False, "Run flow calibration")
    _bool_flag(start, "vibration-calibration", True, "Run vibration calibration")
    _bool_flag(start, "layer-inspect", False, "Enable first-layer inspection")
    _bool_flag(start, "timelapse", False, "Record a timelapse")
    _bool_flag(start, "use-ams", True, "Feed from the AMS")
    start.add_argument("--ams-mapping", help="Comma separated tray ids, e.g. 0,2")
    start.add_argument(
        "--auto-match",
        action="store_true",
        help="Match the file's filaments against the loaded AMS trays",
    )
    start.add_argument(
        "--require-ams",
        action="store_true",
        help="With --auto-match, fail when no AMS is reported",
    )
    _add_wait(start)
    for name in ("pause", "resume", "stop"):
        _add_wait(print_ops.add_parser(name, help=f"{name.capitalize()} the current print"))

    # status
    status_parser = resources.add_parser("status", help="Read printer state")
    status_ops = status_parser.add_subparsers(dest="operation", required=True)
    status_ops.add_parser("current", help="Full state report")
    status_ops.add_parser("progress", help="Print progress summary")
    status_ops.add_parser("temperature", help="Heater temperatures")

    # file
    file_parser = resources.add_parser("file", help="Manage files on the SD card")
    file_ops = file_parser.add_subparsers(dest="operation", required=True)
    upload = file_ops.add_parser("upload", help="Upload a file")
    upload.add_argument("local_path", type=Path)
    upload.add_argument("--file-name", help="Remote file name (default: local name)")
    upload.add_argument("--remote-path", default="/")
    listing = file_ops.add_parser("list", help="List a directory")
    listing.add_argument("path", nargs="?", default="/")
    delete = file_ops.add_parser("delete", help="Delete a file")
    delete.add_argument("path")
    download = file_ops.add_parser("download", help="Download a file")
    download.add_argument("path")
    download.add_argument("local_path", type=Path, nargs="?")

    # camera
    camera_parser = resources.add_parser("camera", help="Printer camera")
    camera_ops = camera_parser.add_subparsers(dest="operation", required=True)
    camera_ops.add_parser("stream-url", help="RTSP and HTTP stream URLs")
    camera_ops.add_parser("snapshot-url", help="HTTP snapshot URL")
    snapshot = camera_ops.add_parser("snapshot", help="Fetch a snapshot")
    snapshot.add_argument("-o", "--output", type=Path)

    # control
    control_parser = resources.add_parser("control", help="Direct printer control")
    control_ops = control_parser.add_subparsers(dest="operation", required=True)
    led = control_ops.add_parser("led", help="Set an LED")
    led.add_argument("node", choices=["chamber_light", "work_light", "logo_led"])
    led.add_argument("mode", choices=["on", "off", "flashing"])
    led.add_argument("--on-time", type=int, default=500)
    led.add_argument("--off-time", type=int, default=500)
    speed = control_ops.add_parser("speed", help="Set print speed percentage (50-166)")
    speed.add_argument("percent", type=float)
    home = control_ops.add_parser("home", help="Home all axes")
    fan = control_ops.add_parser("fan", help="Set a fan speed percentage")
    fan.add_argument("fan", choices=["part", "chamber"])
    fan.add_argument("percent", type=float)
    temperature = control_ops.add_parser("temperature", help="Set a heater target")
    temperature.add_argument("heater", choices=["bed", "nozzle"])
    temperature.add_argument("temperature", type=float)
    heaters_off = control_ops.add_parser("heaters-off", help="Turn all heaters off")
    gcode = control_ops.add_parser("gcode", help="Send a raw instruction")
    gcode.add_argument("instruction")
    gcode.add_argument("param", nargs="?", default="")
    estop = control_ops.add_parser("emergency-stop", help="Emergency stop (M112)")
    load = control_ops.add_parser("load-filament", help="Load filament from a tray")
    load.add_argument("tray_id", type=int)
    unload = control_ops.add_parser("unload-filament", help="Unload filament to a tray")
    unload.add_argument("tray_id", type=int)
    for sub in (led, speed, home, fan, temperature, heaters_off, gcode, estop, load, unload):
        _add_wait(sub)

    resources.add_parser("show-config", help="Print the resolved configuration and exit")

    return parser


_GLOBAL_ARGS = {"config", "log_level", "resource", "operation"}


def operation_params(args: argparse.Namespace) -> Dict[str, Any]:
    """Extract the keyword arguments for :meth:`PrinterOperations.dispatch`."""

    params = {key: value for key, value in vars(args).items() if key not in _GLOBAL_ARGS}

    if args.resource == "file" and args.operation == "upload":
        params["file_name"] = params.pop("file_name") or args.local_path.name

    if args.resource == "print" and args.operation == "start":
        params = {key: value for key, value in params.items() if value is not None}

    return params


async def run_operation(
    config: BambuConfig, resource: str, operation: str, params: Dict[str, Any]
) -> Dict[str, Any]:
    async with PrinterOperations(config) as operations:
        return await operations.dispatch(resource, operation, **params)


def _show_config(config: BambuConfig) -> None:
    print(f"Configuration loaded from {config.path!s}\n")
    for section in config.raw.sections():
        print(f"[{section}]")
        for key, value in config.raw[section].items():
            if key == "access_code" and value:
                value = "********"
            print(f"{key} = {value}")
        print()


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)
    configure_logging(
        args.log_level or config.logging.level,
        log_path=config.logging.path,
        log_network=config.logging.log_network,
    )

    if args.resource == "show-config":
        _show_config(config)
        return 0

    try:
        result = asyncio.run(
            run_operation(config, args.resource, args.operation, operation_params(args))
        )
    except BambuError as exc:
        LOGGER.error("%s", exc)
        print(json.dumps({"success": False, "error": str(exc)}, indent=2))
        return 1
    except ValueError as exc:
        LOGGER.error("Invalid argument: %s", exc)
        print(json.dumps({"success": False, "error": str(exc)}, indent=2))
        return 2

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
