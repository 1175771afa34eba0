"""Command-line entry points.

``nexus-bridge-relay`` runs the stdio relay. ``nexus-bridge`` groups the
operator commands: ``status``, ``stage-credentials`` and ``serve``.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from nexus_bridge.app import BridgeApplication
from nexus_bridge.config.settings import Settings, get_settings
from nexus_bridge.errors import BridgeError
from nexus_bridge.relay.process import ProtocolRelay
from nexus_bridge.session.auth import stage_credentials

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Send every log record to stderr; stdout is reserved for protocol traffic."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )


def _parse_relay_args(argv: Sequence[str] | None, settings: Settings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="nexus-bridge-relay",
        description="Relay a child's JSON-RPC stdout and move everything else to stderr.",
    )
    parser.add_argument(
        "--mode-var",
        default=f"{settings.relay_mode_var}={settings.relay_mode_value}",
        help="Environment assignment passed to the child (default: %(default)s).",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        help="Relay log level; logs go to stderr (default: %(default)s).",
    )
    parser.add_argument(
        "--no-signal-forwarding",
        action="store_true",
        help="Do not forward SIGINT/SIGTERM to the child.",
    )
    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="Child command after '--' (default: %s)." % " ".join(settings.relay_command),
    )
    args = parser.parse_args(argv)
    if "=" not in args.mode_var:
        parser.error("--mode-var must look like NAME=VALUE")
    if args.command and args.command[0] == "--":
        args.command = args.command[1:]
    return args


def relay_main(argv: Sequence[str] | None = None) -> int:
    settings = get_settings()
    args = _parse_relay_args(argv, settings)
    configure_logging(args.log_level)

    mode_var, mode_value = args.mode_var.split("=", 1)
    relay = ProtocolRelay(
        args.command or settings.relay_command,
        stdin=sys.stdin.buffer,
        stdout=sys.stdout.buffer,
        stderr=sys.stderr.buffer,
        forward_signals=not args.no_signal_forwarding,
        mode_var=mode_var,
        mode_value=mode_value,
    )
    return asyncio.run(relay.run())


def _parse_args(argv: Sequence[str] | None, settings: Settings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="nexus-bridge", description="Nexus bridge operator tools.")
    parser.add_argument("--log-level", default=settings.log_level)
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("status", help="Print the locally stored session and resource state.")

    stage = commands.add_parser(
        "stage-credentials",
        help="Write a one-shot credentials file consumed on the next start.",
    )
    stage.add_argument("--email", required=True)
    stage.add_argument("--action", choices=("login", "register"), default="login")
    stage.add_argument(
        "--file",
        type=Path,
        default=settings.credentials_file,
        help="Credentials file path (default: %(default)s).",
    )

    serve = commands.add_parser("serve", help="Run the HTTP API with uvicorn.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    settings = get_settings()
    args = _parse_args(argv, settings)
    configure_logging(args.log_level)

    try:
        if args.command == "status":
            return _print_status(settings)
        if args.command == "stage-credentials":
            password = getpass.getpass("Password: ", stream=sys.stderr)
            path = stage_credentials(args.file, args.email, password, args.action)
            print(json.dumps({"staged": str(path), "action": args.action}))
            return 0
        if args.command == "serve":
            return _serve(args.host, args.port)
    except BridgeError as exc:
        print(json.dumps({"error": exc.to_dict()}), file=sys.stderr)
        return 1
    return 2


def _print_status(settings: Settings) -> int:
    bridge = BridgeApplication(settings)
    try:
        print(bridge.status().model_dump_json(indent=2))
    finally:
        asyncio.run(bridge.shutdown())
    return 0


def _serve(host: str, port: int) -> int:
    import uvicorn

    uvicorn.run("nexus_bridge.api.main:create_app", host=host, port=port, factory=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
