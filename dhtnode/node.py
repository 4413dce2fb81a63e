"""
DHT Node
========

[COMPOSITION] One node instance wires together:
- identity + configuration (IdentityStore, or in-memory overrides)
- transport pipeline: UDP -> Reachability -> Telemetry, signed messages
- routing facade ranking the engine's table with telemetry
- Kademlia engine (routing, storage, RPCs)
- control plane on a Unix socket

[LIFECYCLE]
    CREATED -> TRANSPORT_STARTING -> TRANSPORT_READY -> JOINING_NETWORK -> JOINED

A single owner task consumes transport events (`ready`, `error`) from a
queue and is the only code that advances the lifecycle.

[USAGE]
```python
node = DHTNode.from_datadir("~/.dhtnode")
await node.start()
await node.wait_joined()
await node.put_item("k", "v")
```
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from . import __version__
from .bootstrap import BootstrapReport, BootstrapSequencer
from .config import TELEMETRY_FILE, NodeConfig, resolve_config
from .contact import Contact
from .control import ControlServer
from .dht import DHTStorage, KademliaNode, RoutingTable
from .dht.routing import K
from .errors import InvalidRequest
from .identity import IdentityStore, KeyPair
from .lifecycle import Lifecycle, NodeState
from .routing import TelemetryRouter
from .transport import compose_pipeline
from .validator import Validator, accept_all

logger = logging.getLogger(__name__)


DHT_DB_FILE = "dht.db"


class DHTNode:
    """A single participant of the DHT overlay."""

    def __init__(
        self,
        keypair: KeyPair,
        config: NodeConfig,
        storage_path: Union[str, Path] = ":memory:",
        telemetry_path: Optional[Path] = None,
        validator: Validator = accept_all,
    ):
        self.keypair = keypair
        self.config = config
        self.lifecycle = Lifecycle(label=config.log_label)

        contact = Contact(config.address, config.port, keypair.public_key)
        self.transport, self.telemetry = compose_pipeline(contact, keypair, config, telemetry_path)

        self.table = RoutingTable(contact.node_id)
        self.router = TelemetryRouter(self.table, self.telemetry)
        self.engine = KademliaNode(
            self.transport,
            DHTStorage(str(storage_path)),
            router=self.router,
            validator=validator,
            rpc_timeout=config.rpc_timeout,
        )
        self.control = ControlServer(self, config.ipc)

        self.bootstrap_report: Optional[BootstrapReport] = None

        self._events: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue()
        self._owner: Optional[asyncio.Task] = None
        self._join_task: Optional[asyncio.Task] = None

        self.transport.on("ready", lambda contact: self._events.put_nowait(("ready", contact)))
        self.transport.on("error", lambda error: self._events.put_nowait(("error", error)))

    # =========================================================================
    # Construction
    # =========================================================================

    @classmethod
    def from_datadir(
        cls,
        datadir: Union[str, Path],
        overrides: Optional[Mapping[str, Any]] = None,
        validator: Validator = accept_all,
    ) -> "DHTNode":
        """
        Node backed by a data directory (created on first use).

        Raises:
            IdentityCorrupt, StorageUnavailable
        """
        store = IdentityStore(datadir)
        keypair, config = store.load_or_create(overrides)
        return cls(
            keypair,
            config,
            storage_path=store.data_path / DHT_DB_FILE,
            telemetry_path=store.datadir / TELEMETRY_FILE,
            validator=validator,
        )

    @classmethod
    def from_overrides(
        cls,
        overrides: Optional[Mapping[str, Any]] = None,
        validator: Validator = accept_all,
    ) -> "DHTNode":
        """In-memory node for simulation and tests; never touches disk."""
        config = resolve_config(None, overrides)
        if config.private_key:
            keypair = KeyPair.from_private_key(config.private_key)
        else:
            keypair = KeyPair()
        return cls(keypair, config, validator=validator)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def contact(self) -> Contact:
        return self.transport.contact

    @property
    def state(self) -> NodeState:
        return self.lifecycle.state

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> Contact:
        """
        Start the transport and control plane; joining continues in the
        background once the transport reports ready.
        """
        self.lifecycle.advance(NodeState.TRANSPORT_STARTING)

        await self.engine.start()
        self._owner = asyncio.create_task(self._run_lifecycle())
        await self.transport.start()
        await self.control.start()

        logger.info(f"[NODE] Started as {self.contact} ({self.contact.node_id_hex[:16]}...)")
        return self.contact

    async def _run_lifecycle(self) -> None:
        while True:
            kind, payload = await self._events.get()
            if kind == "ready":
                if self._join_task is None:
                    self._join_task = asyncio.create_task(self._join(payload))
            elif kind == "error":
                logger.warning(f"[NODE] Transport error: {payload}")

    async def _join(self, contact: Contact) -> None:
        self.lifecycle.advance(NodeState.TRANSPORT_READY)
        logger.info(f"[NODE] Transport ready, advertising {contact}")

        self.lifecycle.advance(NodeState.JOINING_NETWORK)
        self.bootstrap_report = await BootstrapSequencer(self.engine, self.config.seeds).run()

        self.lifecycle.advance(NodeState.JOINED)

    async def wait_joined(self, timeout: Optional[float] = None) -> None:
        await self.lifecycle.wait_for(NodeState.JOINED, timeout=timeout)

    async def stop(self) -> None:
        if self.state is NodeState.STOPPED:
            return

        await self.control.stop()

        for task in (self._join_task, self._owner):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._join_task = None
        self._owner = None

        await self.engine.stop()
        await self.transport.close()

        self.lifecycle.advance(NodeState.STOPPED)
        logger.info("[NODE] Stopped")

    async def __aenter__(self) -> "DHTNode":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # =========================================================================
    # Control-plane operations
    # =========================================================================

    def get_info(self) -> Dict[str, Any]:
        return {
            "version": __version__,
            "state": self.state.value,
            "contact": self.contact.to_dict(),
            "node_id": self.contact.node_id_hex,
            "peers": len(self.table),
        }

    def get_peers(self, key: str, limit: int = K, exclude_id: Optional[str] = None) -> List[Contact]:
        """
        Raises:
            RoutingUnavailable: no known peers
        """
        return self.router.get_nearest_contacts(key, limit, exclude_id)

    async def get_item(self, key: str) -> Any:
        """
        Raises:
            InvalidRequest, PeerUnreachable, RequestTimeout
        """
        if not isinstance(key, str):
            raise InvalidRequest(f"Key must be a string, got {type(key).__name__}")
        return await self.engine.get(key)

    async def put_item(self, key: str, value: Any) -> int:
        """
        Publish a value; the validator is not consulted for local puts.

        Returns:
            number of nodes holding the value
        """
        if not isinstance(key, str):
            raise InvalidRequest(f"Key must be a string, got {type(key).__name__}")
        return await self.engine.put(key, value)
