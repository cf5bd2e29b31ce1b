"""
DirectLink command line.

    directlink host            Share the local service, interactive prompt
    directlink join <address>  Tunnel to a host and print the local port
"""

import sys
import logging
import argparse
import threading
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import TunnelConfig
from .errors import DirectLinkError
from .network_manager import HostManager, JoinManager, StatusFeed
from .protocol import normalize_share_code

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def share_code_arg(value: str) -> str:
    """argparse type for --code: accepts the same forms as join, stores the bare code."""
    code = normalize_share_code(value)
    if code is None:
        raise argparse.ArgumentTypeError(f"invalid share code: {value!r} (expected adjective-animal-NN)")
    return code


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="directlink", description="Direct P2P TCP tunnels over UDP")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.json")
    parser.add_argument("--registry", default=None, help="Registry base URL (overrides config)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")

    commands = parser.add_subparsers(dest="command", required=True)

    host = commands.add_parser("host", help="Share the local service")
    host.add_argument("--service-port", type=int, default=None, help="Local TCP service port")
    host.add_argument("--code", type=share_code_arg, default=None, help="Request this share code")

    join = commands.add_parser("join", help="Connect to a host by share code")
    join.add_argument("address", help="p2p://code, p2p.code or code")
    return parser


def configure_logging(debug: bool):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT
    )


def run_host(config: TunnelConfig, args: argparse.Namespace) -> int:
    if args.code:
        config.set_share_code(args.code)

    status = StatusFeed("Not hosting")
    status.subscribe(lambda text: print(f"[status] {text}"))
    manager = HostManager(config, status=status, service_port=args.service_port)

    if not manager.start().result():
        print("Failed to start hosting")
        manager.close()
        return 1

    print("\n=== DirectLink HOST ===")
    print(f"Share: {manager.full_uri}")
    print(f"Service: {manager.service_host}:{manager.service_port}")
    print("\nCommands:")
    print("  status      - Show status")
    print("  regenerate  - New share code")
    print("  stop        - Stop hosting")
    print("  start       - Start hosting again")
    print("  quit        - Exit")

    try:
        while True:
            cmd = input("\n> ").strip().lower()
            if not cmd:
                continue

            if cmd == "quit":
                break
            elif cmd == "stop":
                manager.stop()
            elif cmd == "start":
                if not manager.start().result():
                    print("Failed to start hosting")
            elif cmd == "status":
                print(f"State: {manager.state.value}")
                print(f"Share: {manager.full_uri}")
                print(f"Bridges: {manager.bridge_count}")
                print(f"Last: {status.latest}")
            elif cmd == "regenerate":
                print(f"Share code: {manager.regenerate_code()}")
            else:
                print("Unknown command")

    except (KeyboardInterrupt, EOFError):
        pass
    finally:
        manager.close()
    return 0


def run_join(config: TunnelConfig, args: argparse.Namespace) -> int:
    status = StatusFeed("Idle")
    status.subscribe(lambda text: print(f"[status] {text}"))
    manager = JoinManager(config, status=status)

    finished = threading.Event()
    # Session end (host closed, local client left) ends the process
    status.subscribe(lambda text: finished.set() if text == "Disconnected" else None)

    try:
        future = manager.join(args.address)
        port = future.result()
    except DirectLinkError as e:
        print(f"Join failed: {e}")
        manager.close()
        return 1

    print(f"\nConnect your client to 127.0.0.1:{port}")
    print("Press Ctrl+C to disconnect")

    try:
        finished.wait()
    except KeyboardInterrupt:
        pass
    finally:
        manager.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)

    config = TunnelConfig.load(args.config)
    if args.registry:
        config.registry_url = args.registry

    configure_logging(args.debug or config.debug)
    logger.debug(f"Config: {config.to_dict()}")

    if args.command == "host":
        return run_host(config, args)
    return run_join(config, args)


if __name__ == "__main__":
    sys.exit(main())
