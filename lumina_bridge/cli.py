"""Command-line interface for lumina-bridge."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from . import constants
from .adapters import DeviceRequestError, WledClient
from .app import BridgeApp
from .config import BridgeConfig, ConfigurationError, load_config
from .device_requests import CommandIntent, map_intent

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME,
        description="Relay queued lighting commands to a local WLED controller",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Start the bridge")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    probe_parser = subparsers.add_parser(
        "probe", help="Send one request to the configured device and print the reply"
    )
    probe_parser.add_argument(
        "--intent",
        default=CommandIntent.GET_STATE.value,
        choices=[CommandIntent.GET_STATE.value, CommandIntent.GET_INFO.value],
        help="Read intent to issue (default: getState)",
    )
    probe_parser.add_argument(
        "--target", help="Device address, overriding [device] host/port"
    )

    return parser


async def _probe(config: BridgeConfig, intent: str, target: str) -> Any:
    client = WledClient(default_port=config.device.port)
    try:
        return await client.execute(
            target, map_intent(intent), timeout=config.device.timeout_seconds
        )
    finally:
        await client.aclose()


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2

    if args.command == "start":
        try:
            BridgeApp.start(config)
        except ConfigurationError as exc:
            LOGGER.error("Cannot start: %s", exc)
            return 2
        return 0

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                print(f"{key} = {value}")
            print()
        return 0

    if args.command == "probe":
        target = args.target or config.device_target()
        if not target:
            LOGGER.error("No device configured; set [device] host or pass --target")
            return 2
        try:
            result = asyncio.run(_probe(config, args.intent, target))
        except DeviceRequestError as exc:
            LOGGER.error("Probe of %s failed: %s", target, exc)
            return 1
        print(json.dumps(result, indent=2) if not isinstance(result, str) else result)
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
