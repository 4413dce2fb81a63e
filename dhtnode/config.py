"""
Node Configuration
==================

Layered, immutable configuration for a node instance:

    defaults  <-  persisted config.json  <-  in-memory overrides

Later layers win key by key (the nested `reachability` section merges key by
key as well). The result is one frozen NodeConfig value; nothing mutates a
shared default object.
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .contact import Contact

logger = logging.getLogger(__name__)


DEFAULT_ADDRESS = "127.0.0.1"
DEFAULT_PORT = 52398
DEFAULT_VERBOSITY = 4
DEFAULT_LABEL = "DHTNode"
DEFAULT_RPC_TIMEOUT = 5.0

CONFIG_FILE = "config.json"
KEY_FILE = "id_ecdsa"
DATA_DIR = "data"
TELEMETRY_FILE = "telemetry.dat"

# Public IP override from environment (.env: PUBLIC_IP)
PUBLIC_IP: str = os.getenv("PUBLIC_IP", "").strip()


def default_datadir() -> Path:
    """Data directory used when none is given (.env: DHTNODE_HOME)."""
    env = os.getenv("DHTNODE_HOME", "").strip()
    if env:
        return Path(env).expanduser()
    return Path.home() / ".dhtnode"


def default_ipc_path() -> str:
    return str(Path(tempfile.gettempdir()) / "dhtnode.sock")


@dataclass(frozen=True)
class ReachabilityOptions:
    """Options of the reachability (NAT) transport decorator."""

    # STUN discovery of the public address
    enabled: bool = False

    # Explicit advertised address; wins over STUN
    public_address: str = PUBLIC_IP

    stun_servers: Tuple[Tuple[str, int], ...] = (
        ("stun.l.google.com", 19302),
        ("stun.cloudflare.com", 3478),
    )

    # Seconds to wait for the whole negotiation before giving up
    timeout: float = 3.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ReachabilityOptions":
        servers = data.get("stun_servers", cls.stun_servers)
        return cls(
            enabled=bool(data.get("enabled", False)),
            public_address=str(data.get("public_address") or PUBLIC_IP),
            stun_servers=tuple((str(host), int(port)) for host, port in servers),
            timeout=float(data.get("timeout", 3.0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "public_address": self.public_address,
            "stun_servers": [list(server) for server in self.stun_servers],
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class NodeConfig:
    """Resolved node configuration."""

    # UDP endpoint advertised in our contact
    address: str = DEFAULT_ADDRESS
    port: int = DEFAULT_PORT

    # 0 silent, 1 error, 2 warning, 3 info, 4 debug
    logger: int = DEFAULT_VERBOSITY
    log_label: str = DEFAULT_LABEL

    # Control-plane Unix socket
    ipc: str = field(default_factory=default_ipc_path)

    # Bootstrap contacts, used once at startup
    seeds: Tuple[Contact, ...] = ()

    reachability: ReachabilityOptions = field(default_factory=ReachabilityOptions)

    # Per-RPC timeout (seconds) for connect/get/put round trips
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT

    # Only honoured as an in-memory override (simulation/tests)
    private_key: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NodeConfig":
        seeds = tuple(
            seed if isinstance(seed, Contact) else Contact.from_dict(seed)
            for seed in data.get("seeds") or ()
        )
        reachability = data.get("reachability") or {}
        if not isinstance(reachability, ReachabilityOptions):
            reachability = ReachabilityOptions.from_dict(reachability)
        return cls(
            address=str(data.get("address", DEFAULT_ADDRESS)),
            port=int(data.get("port", DEFAULT_PORT)),
            logger=int(data.get("logger", DEFAULT_VERBOSITY)),
            log_label=str(data.get("log_label", DEFAULT_LABEL)),
            ipc=str(data.get("ipc") or default_ipc_path()),
            seeds=seeds,
            reachability=reachability,
            rpc_timeout=float(data.get("rpc_timeout", DEFAULT_RPC_TIMEOUT)),
            private_key=data.get("private_key"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Document form, as written to config.json (never includes private_key)."""
        return {
            "address": self.address,
            "port": self.port,
            "logger": self.logger,
            "log_label": self.log_label,
            "ipc": self.ipc,
            "seeds": [seed.to_dict() for seed in self.seeds],
            "reachability": self.reachability.to_dict(),
            "rpc_timeout": self.rpc_timeout,
        }


# Keys understood by the resolver; camelCase aliases come from older documents
_KNOWN_KEYS = set(NodeConfig.__dataclass_fields__)
_ALIASES = {"logLabel": "log_label", "rpcTimeout": "rpc_timeout", "privateKey": "private_key"}


def default_document() -> Dict[str, Any]:
    """Default configuration document written on first run."""
    return NodeConfig().to_dict()


def _normalize(layer: Optional[Mapping[str, Any]], source: str) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for key, value in (layer or {}).items():
        key = _ALIASES.get(key, key)
        if key not in _KNOWN_KEYS:
            logger.debug(f"[CONFIG] Ignoring unknown key '{key}' from {source}")
            continue
        normalized[key] = value
    return normalized


def _reachability_dict(value: Any) -> Dict[str, Any]:
    if isinstance(value, ReachabilityOptions):
        return value.to_dict()
    return dict(value or {})


def resolve_config(
    persisted: Optional[Mapping[str, Any]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> NodeConfig:
    """
    Merge configuration layers into one immutable value.

    Args:
        persisted: Document loaded from config.json
        overrides: In-memory values (tests, simulation, CLI flags)

    Returns:
        NodeConfig
    """
    merged: Dict[str, Any] = default_document()
    layers: List[Dict[str, Any]] = [
        _normalize(persisted, "config file"),
        _normalize(overrides, "overrides"),
    ]

    for layer in layers:
        for key, value in layer.items():
            if key == "reachability":
                section = _reachability_dict(merged.get("reachability"))
                section.update(_reachability_dict(value))
                merged["reachability"] = section
            else:
                merged[key] = value

    return NodeConfig.from_dict(merged)
