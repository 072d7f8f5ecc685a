"""Command line entry point: run a FastAGI server or talk to the manager."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import importlib
import logging
import sys
from collections.abc import Sequence

from agi.fastagi import AgiHandler, FastAgiServer
from ami.client import AsteriskManager
from config.settings import AgiConfig, ManagerConfig, Settings, get_settings
from telephony.errors import TelephonyError
from telephony.observability import LoggingFailureSink

LOGGER = logging.getLogger(__name__)


def load_handler(target: str) -> AgiHandler:
    """Resolve ``package.module:function`` to a coroutine function."""

    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Handler must look like module:function, got {target!r}")
    module = importlib.import_module(module_name)
    handler = getattr(module, attr, None)
    if not callable(handler):
        raise ValueError(f"{target!r} is not callable")
    return handler


def parse_route(value: str) -> tuple[str, str]:
    name, sep, target = value.partition("=")
    if not sep or not name or not target:
        raise argparse.ArgumentTypeError(f"Route must look like name=module:function, got {value!r}")
    return name, target


def _build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Asterisk AGI/AMI toolkit")
    parser.add_argument("--log-level", default=settings.log_level)
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run a FastAGI server")
    serve.add_argument("--host", default=settings.fastagi_host)
    serve.add_argument("--port", type=int, default=settings.fastagi_port)
    serve.add_argument(
        "--route",
        action="append",
        type=parse_route,
        default=[],
        metavar="NAME=MODULE:FUNCTION",
        help="Map an agi://host/NAME script to a handler (repeatable)",
    )

    ping = commands.add_parser("ping", help="Log in to the manager and send Ping")
    ping.add_argument("--server", default=None, help="host or host:port")

    command = commands.add_parser("command", help="Run an Asterisk CLI command through the manager")
    command.add_argument("--server", default=None, help="host or host:port")
    command.add_argument("text", nargs="+")
    return parser


async def _serve(args: argparse.Namespace, settings: Settings) -> int:
    server = FastAgiServer(
        args.host,
        args.port,
        config=AgiConfig.from_settings(settings),
        sink=LoggingFailureSink(),
    )
    for name, target in args.route:
        server.route(name, load_handler(target))
    await server.start()
    try:
        await server.run_forever()
    finally:
        await server.stop()
    return 0


def _manager_config(args: argparse.Namespace, settings: Settings) -> ManagerConfig:
    config = ManagerConfig.from_settings(settings)
    if args.server:
        config = dataclasses.replace(config, host=args.server)
    return config


async def _ping(args: argparse.Namespace, settings: Settings) -> int:
    async with AsteriskManager(_manager_config(args, settings)) as manager:
        response = await manager.ping()
    for key, value in response.fields.items():
        print(f"{key}: {value}")
    return 0 if response.get("Response") == "Success" else 1


async def _command(args: argparse.Namespace, settings: Settings) -> int:
    manager = AsteriskManager(_manager_config(args, settings))
    if not await manager.connect():
        LOGGER.error("Could not log in to manager")
        return 1
    try:
        response = await manager.command(" ".join(args.text))
    finally:
        await manager.disconnect()
    payload = getattr(response, "payload", None)
    if payload:
        print(payload)
    elif response.get("Message"):
        print(response.get("Message"))
    return 0 if response.get("Response") in ("Success", "Follows") else 1


_COMMANDS = {"serve": _serve, "ping": _ping, "command": _command}


def main(argv: Sequence[str] | None = None) -> int:
    settings = get_settings()
    args = _build_parser(settings).parse_args(argv)
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_COMMANDS[args.command](args, settings))
    except TelephonyError as exc:
        LOGGER.error("%s", exc.detail)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
