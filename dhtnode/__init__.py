"""
DHTNode
=======

A single participant of a Kademlia DHT overlay:
- persistent Ed25519 identity and layered configuration
- decorated UDP transport with signed messages, NAT reachability and telemetry
- telemetry-ranked routing facade over the Kademlia engine
- local control plane (getinfo / getpeers / getitem / putitem)
"""

__version__ = "0.1.0"

from .errors import (
    DHTNodeError,
    IdentityCorrupt,
    StorageUnavailable,
    RoutingUnavailable,
    PeerUnreachable,
    RequestTimeout,
    InvalidRequest,
    AuthenticationFailed,
    InvalidTransition,
    ControlError,
)
from .contact import Contact
from .config import NodeConfig, ReachabilityOptions, resolve_config
from .identity import IdentityStore, KeyPair, load_or_create
from .lifecycle import Lifecycle, NodeState
from .validator import accept_all
from .node import DHTNode
from .control import ControlClient, ControlServer

__all__ = [
    "__version__",
    # Errors
    "DHTNodeError",
    "IdentityCorrupt",
    "StorageUnavailable",
    "RoutingUnavailable",
    "PeerUnreachable",
    "RequestTimeout",
    "InvalidRequest",
    "AuthenticationFailed",
    "InvalidTransition",
    "ControlError",
    # Identity and configuration
    "Contact",
    "NodeConfig",
    "ReachabilityOptions",
    "resolve_config",
    "IdentityStore",
    "KeyPair",
    "load_or_create",
    # Node
    "Lifecycle",
    "NodeState",
    "accept_all",
    "DHTNode",
    "ControlClient",
    "ControlServer",
]
