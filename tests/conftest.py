"""
DHTNode Test Configuration
==========================

[QA] Central pytest configuration with fixtures for all test types:
- Unit tests: Isolated, no I/O, fast
- Integration tests: Real async I/O, temp databases and sockets
- E2E tests: Full node stack over localhost UDP

[FIXTURES]
- temp_dir: Per-test temporary directory
- socket_dir: Short directory for Unix sockets (path length limit)
- keypair / keypair_pair: Fresh Ed25519 identities
- node_factory: In-memory DHTNode instances on localhost

Usage:
    pytest tests/unit/          # Fast unit tests
    pytest tests/integration/   # Integration tests
    pytest tests/e2e/           # End-to-end tests
"""

import asyncio
import logging
import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import AsyncGenerator, Generator, List

import pytest
import pytest_asyncio

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (I/O, slower)")
    config.addinivalue_line("markers", "e2e: End-to-end tests (full stack)")
    config.addinivalue_line("markers", "slow: Slow tests (skip with -m 'not slow')")


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their path."""
    for item in items:
        path = str(item.fspath)
        if "/unit/" in path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in path:
            item.add_marker(pytest.mark.integration)
        elif "/e2e/" in path:
            item.add_marker(pytest.mark.e2e)


# ============================================================================
# Logging Configuration
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


# ============================================================================
# Temporary Directory Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp(prefix="dhtnode_test_"))
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture(scope="function")
def socket_dir() -> Generator[Path, None, None]:
    """
    Directory for control sockets.

    Unix socket paths are limited to ~100 bytes, so this stays short.
    """
    path = Path(tempfile.mkdtemp(prefix="dn", dir="/tmp" if os.path.isdir("/tmp") else None))
    yield path
    shutil.rmtree(path, ignore_errors=True)


# ============================================================================
# Crypto Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def keypair():
    """Create fresh Ed25519 identity for each test."""
    from dhtnode.identity import KeyPair
    return KeyPair()


@pytest.fixture(scope="function")
def keypair_pair():
    """Create a pair of identities for sender/receiver tests."""
    from dhtnode.identity import KeyPair
    return KeyPair(), KeyPair()


@pytest.fixture(scope="function")
def contact_factory():
    """Factory for contacts with fresh identities."""
    from dhtnode.contact import Contact
    from dhtnode.identity import KeyPair

    def _create(port: int = 40000, address: str = "127.0.0.1"):
        return Contact(address, port, KeyPair().public_key)

    return _create


# ============================================================================
# Node Factory Fixture
# ============================================================================

class NodeFactory:
    """
    Factory for in-memory nodes on localhost.

    [USAGE]
        a = await node_factory.create()
        b = await node_factory.create(seeds=[a])
        await node_factory.cleanup()
    """

    def __init__(self, socket_dir: Path):
        self.socket_dir = socket_dir
        self.nodes: List = []

    async def create(self, seeds=(), start: bool = True, **overrides):
        from dhtnode import DHTNode

        index = len(self.nodes)
        config = {
            "address": "127.0.0.1",
            "port": 0,
            "ipc": str(self.socket_dir / f"n{index}.sock"),
            "seeds": [seed.contact.to_dict() for seed in seeds],
            "log_label": f"node{index}",
            "rpc_timeout": 2.0,
        }
        config.update(overrides)

        node = DHTNode.from_overrides(config)
        self.nodes.append(node)
        if start:
            await node.start()
        return node

    async def cleanup(self) -> None:
        for node in reversed(self.nodes):
            await node.stop()
        self.nodes.clear()


@pytest_asyncio.fixture(scope="function")
async def node_factory(socket_dir: Path) -> AsyncGenerator[NodeFactory, None]:
    """Fixture providing NodeFactory for spawning test nodes."""
    factory = NodeFactory(socket_dir)
    yield factory
    await factory.cleanup()


# ============================================================================
# Async Utilities
# ============================================================================

@pytest.fixture(scope="function")
def async_timeout():
    """Helper for async test timeouts."""
    async def _timeout(coro, seconds: float = 5.0):
        return await asyncio.wait_for(coro, timeout=seconds)
    return _timeout
