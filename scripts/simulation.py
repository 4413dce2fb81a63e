#!/usr/bin/env python3
"""
Local network simulation
========================

Starts N in-memory nodes on one machine, each seeded with the previous one,
then keeps storing a random key through the first node and reading it back
through the last one.

Usage:
    python scripts/simulation.py [N]
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import List

ROOT_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT_DIR))

from dhtnode import DHTNode, ControlError, DHTNodeError  # noqa: E402
from dhtnode.logger import configure_logging  # noqa: E402

logger = logging.getLogger("dhtnode.simulation")


FIRST_PORT = 65535
ROUND_INTERVAL = 5.0


def node_overrides(index: int, previous: List[DHTNode], socket_dir: str) -> dict:
    seeds = [previous[-1].contact.to_dict()] if previous else []
    return {
        "address": "127.0.0.1",
        "port": FIRST_PORT - index,
        "ipc": os.path.join(socket_dir, f"node{index}.sock"),
        "seeds": seeds,
        "log_label": f"node{index}",
        "rpc_timeout": 2.0,
    }


async def simulate(count: int) -> None:
    socket_dir = tempfile.mkdtemp(prefix="dhtsim")
    nodes: List[DHTNode] = []

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, shutdown_event.set)

    try:
        for index in range(count):
            node = DHTNode.from_overrides(node_overrides(index, nodes, socket_dir))
            await node.start()
            await node.wait_joined()
            nodes.append(node)
            logger.info(f"[SIM] node{index} joined with {len(node.table)} peers")

        round_number = 0
        while not shutdown_event.is_set():
            round_number += 1
            key = os.urandom(8).hex()
            value = f"round-{round_number}"

            try:
                stored = await nodes[0].put_item(key, value)
                found = await nodes[-1].get_item(key)
            except (DHTNodeError, ControlError) as e:
                logger.warning(f"[SIM] Round {round_number} failed: {e}")
            else:
                status = "OK" if found == value else "MISMATCH"
                logger.info(f"[SIM] Round {round_number}: {key} stored on {stored} nodes, read back {status}")

            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(shutdown_event.wait(), timeout=ROUND_INTERVAL)
    finally:
        for node in reversed(nodes):
            await node.stop()
        logger.info("[SIM] All nodes stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Run N local DHT nodes")
    parser.add_argument("count", nargs="?", type=int, default=5, help="Number of nodes (default: 5)")
    parser.add_argument("--verbosity", "-v", type=int, default=3, help="0 silent .. 4 debug (default: 3)")
    args = parser.parse_args()

    configure_logging(args.verbosity, "simulation")
    asyncio.run(simulate(max(1, args.count)))


if __name__ == "__main__":
    main()
