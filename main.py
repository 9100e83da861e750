"""MacBridge — command-line entry point.

Configures logging, loads settings and dispatches to the pairing and
build-cycle flows.  Build operations run on a worker thread so Ctrl+C can
cancel them cooperatively.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
import threading

from macbridge.bridge import MacBridge
from macbridge.config import DEFAULT_CONFIG, BridgeSettings, ConfigManager
from macbridge.lifecycle import BuildCycleCoordinator, HostEvent, HostEventKind
from macbridge.models import ProjectDescriptor
from macbridge.output import LoggingOutputSink
from macbridge.pairing import PairingService
from macbridge.storage import ConnectionStore

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

_BUILD_EVENTS = {
    "build": HostEventKind.BUILD,
    "clean": HostEventKind.CLEAN,
    "rebuild": HostEventKind.REBUILD,
    "debug": HostEventKind.DEBUG,
}

log = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="macbridge", description="Build and debug .NET MAUI apps on a paired Mac."
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    pair = commands.add_parser("pair", help="pair a new Mac")
    pair.add_argument("host", help="hostname or IP address")
    pair.add_argument("username")

    commands.add_parser("hosts", help="list paired Macs")

    forget = commands.add_parser("forget", help="forget a paired Mac")
    forget.add_argument("hostname")

    commands.add_parser("clear", help="forget every paired Mac")

    verify = commands.add_parser("verify", help="connect and verify a Mac's toolchain")
    verify.add_argument("hostname")

    identity = commands.add_parser("identity", help="show the signing identity for a bundle id")
    identity.add_argument("hostname")
    identity.add_argument("bundle_id")

    settings = commands.add_parser("config", help="show or change settings")
    settings.add_argument("key", nargs="?")
    settings.add_argument("value", nargs="?", help="new value, parsed as JSON when possible")

    for name in _BUILD_EVENTS:
        op = commands.add_parser(name, help=f"{name} a project on the Mac")
        op.add_argument("hostname")
        op.add_argument("project", help="path to the .csproj")
        op.add_argument(
            "-r", "--reference", action="append", default=[], help="referenced .csproj"
        )
        op.add_argument("-f", "--framework", help="target framework (default: from project)")
    return parser


def _run_cancellable(bridge: MacBridge, target) -> None:
    """Run *target* on a worker thread; Ctrl+C cancels the build session."""
    worker = threading.Thread(target=target, name="macbridge-operation", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(timeout=0.5)
        except KeyboardInterrupt:
            log.warning("Cancelling — waiting for the current step to stop")
            bridge.cancel_operation()


def _run_config(args: argparse.Namespace, config: ConfigManager) -> int:
    if args.key is None:
        for key, value in sorted(config.get_all().items()):
            print(f"{key} = {json.dumps(value)}")
        return 0
    if args.key not in DEFAULT_CONFIG:
        log.error("Unknown setting %s", args.key)
        return 2
    if args.value is None:
        print(json.dumps(config.get(args.key)))
        return 0
    try:
        value = json.loads(args.value)
    except json.JSONDecodeError:
        value = args.value
    config.set(args.key, value)
    return 0


def _run_build(args: argparse.Namespace, bridge: MacBridge, pairing: PairingService) -> int:
    try:
        if args.framework:
            project = ProjectDescriptor(args.project, args.framework, tuple(args.reference))
        else:
            project = ProjectDescriptor.from_project_file(args.project, tuple(args.reference))
    except ValueError as exc:
        log.error("%s", exc)
        return 2

    if not pairing.connect_and_verify(args.hostname):
        return 1

    coordinator = BuildCycleCoordinator(bridge)

    def _cycle() -> None:
        coordinator.handle(HostEvent(HostEventKind.CYCLE_BEGIN, project))
        coordinator.handle(HostEvent(_BUILD_EVENTS[args.command], project))
        coordinator.handle(HostEvent(HostEventKind.CYCLE_DONE, project))

    try:
        _run_cancellable(bridge, _cycle)
    finally:
        bridge.disconnect()
    return 0 if bridge.session.build_successful else 1


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and run MacBridge."""
    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose)

    config = ConfigManager()
    if args.command == "config":
        return _run_config(args, config)

    settings = BridgeSettings.from_config(config)
    bridge = MacBridge(settings, ConnectionStore(), LoggingOutputSink())
    pairing = PairingService(bridge)

    if args.command == "pair":
        password = getpass.getpass(f"Password for {args.username}@{args.host}: ")
        return 0 if pairing.pair_new_host(args.host, args.username, password) else 1

    if args.command == "hosts":
        for connection in pairing.list_hosts():
            print(
                f"{connection.hostname:<24} {connection.ip_address:<16} "
                f"{connection.username:<16} {connection.fingerprint}"
            )
        return 0

    if args.command == "forget":
        return 0 if pairing.forget_host(args.hostname) else 1

    if args.command == "clear":
        return 0 if bridge.store.clear() else 1

    if args.command == "verify":
        ok = pairing.connect_and_verify(args.hostname)
        bridge.disconnect()
        return 0 if ok else 1

    if args.command == "identity":
        if not pairing.connect_and_verify(args.hostname):
            return 1
        verifier = bridge.verifier
        try:
            identity = (
                verifier.get_signing_identity(args.bundle_id) if verifier is not None else None
            )
        finally:
            bridge.disconnect()
        if identity is None:
            return 1
        print(f"Certificate: {identity.certificate_name}")
        print(f"Team:        {identity.team_id}")
        print(f"Profile:     {identity.provisioning_profile}")
        print(f"App id:      {identity.app_id}")
        return 0

    return _run_build(args, bridge, pairing)


if __name__ == "__main__":
    sys.exit(main())
