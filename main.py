#!/usr/bin/env python3
"""
DHT Node - command line
=======================

[NODE] `start` runs a node in the foreground:
- loads or creates the identity in the data directory
- binds the UDP transport and the control socket
- joins the network through the configured seeds

[CONTROL] The other commands talk to a running node over its control socket.

Usage:
    python main.py [-c DATADIR] start
    python main.py [-c DATADIR] info
    python main.py [-c DATADIR] peers <key> [--limit N]
    python main.py [-c DATADIR] get <key>
    python main.py [-c DATADIR] put <key> <value>

Examples:
    # First node
    python main.py -c ~/.dhtnode-a start

    # Store and read a value through it
    python main.py -c ~/.dhtnode-a put greeting '"hello"'
    python main.py -c ~/.dhtnode-a get greeting
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from contextlib import suppress
from typing import Any, List, Optional

from dotenv import load_dotenv

# .env may set DHTNODE_HOME and PUBLIC_IP, read when dhtnode.config is imported
load_dotenv()

from dhtnode import (
    ControlClient,
    ControlError,
    DHTNode,
    IdentityCorrupt,
    IdentityStore,
    StorageUnavailable,
    __version__,
)
from dhtnode.config import default_datadir
from dhtnode.logger import configure_logging

logger = logging.getLogger("dhtnode.main")


def parse_value(raw: str) -> Any:
    """JSON when it parses, the raw string otherwise."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dhtnode",
        description="Kademlia DHT node",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run a node with its own data directory
  dhtnode -c ~/.dhtnode start

  # Query it from another terminal
  dhtnode -c ~/.dhtnode info
  dhtnode -c ~/.dhtnode put k '"v"'
  dhtnode -c ~/.dhtnode get k
""",
    )
    parser.add_argument(
        "-c", "--config",
        dest="datadir",
        default=None,
        help="Data directory (default: $DHTNODE_HOME or ~/.dhtnode)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("start", help="Run the node in the foreground")
    commands.add_parser("info", help="Show information about the running node")

    peers = commands.add_parser("peers", help="List contacts nearest to a key")
    peers.add_argument("key", help="Node id (40 hex chars) or any string")
    peers.add_argument("--limit", "-n", type=int, default=20, help="Maximum contacts (default: 20)")

    get = commands.add_parser("get", help="Read a value from the DHT")
    get.add_argument("key")

    put = commands.add_parser("put", help="Store a value in the DHT")
    put.add_argument("key")
    put.add_argument("value", help="JSON value (plain strings are accepted as-is)")

    return parser


async def run_node(datadir: str) -> int:
    node = DHTNode.from_datadir(datadir)
    configure_logging(node.config.logger, node.config.log_label)

    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("[MAIN] Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, signal_handler)

    try:
        await node.start()
        logger.info(f"[MAIN] Control socket: {node.config.ipc}")
        await shutdown_event.wait()
    finally:
        await node.stop()
        logger.info("[MAIN] Shutdown complete")
    return 0


async def run_command(args: argparse.Namespace) -> int:
    config = IdentityStore(args.datadir).load_config()

    async with ControlClient(config.ipc) as client:
        if args.command == "info":
            result = await client.getinfo()
        elif args.command == "peers":
            result = await client.getpeers(args.key, args.limit)
        elif args.command == "get":
            result = await client.getitem(args.key)
        else:
            result = await client.putitem(args.key, parse_value(args.value))

    print(json.dumps(result, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    args.datadir = str(args.datadir or default_datadir())

    if args.command != "start":
        configure_logging(verbosity=2)

    try:
        if args.command == "start":
            return asyncio.run(run_node(args.datadir))
        return asyncio.run(run_command(args))
    except (IdentityCorrupt, StorageUnavailable) as e:
        logger.error(f"[MAIN] {e}")
        return 1
    except ControlError as e:
        logger.error(f"[MAIN] {e.error_type}: {e.message}")
        return 2
    except OSError as e:
        logger.error(f"[MAIN] {e}")
        return 1


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
