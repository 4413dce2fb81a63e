"""
Transport Pipeline
==================

UDP -> Reachability -> Telemetry, with authentication hooks attached last.
"""

from pathlib import Path
from typing import Optional, Tuple

from ..config import NodeConfig
from ..contact import Contact
from ..identity import KeyPair
from .auth import MessageSigner, install_authentication
from .base import HOOK_NAMES, Transport, TransportDecorator, UDPTransport
from .message import MAX_DATAGRAM_SIZE, MalformedMessage, Message, MessageKind
from .reachability import ReachabilityTransport
from .telemetry import LinkStats, TelemetryOptions, TelemetryTransport


def compose_pipeline(
    contact: Contact,
    keypair: KeyPair,
    config: NodeConfig,
    telemetry_path: Optional[Path] = None,
) -> Tuple[Transport, TelemetryTransport]:
    """
    Build the decorated transport stack of one node.

    Returns:
        (outermost transport, telemetry layer)
    """
    transport: Transport = UDPTransport(contact)
    transport = ReachabilityTransport.wrap(transport, config.reachability)
    telemetry = TelemetryTransport.wrap(
        transport,
        TelemetryOptions(path=telemetry_path, request_timeout=config.rpc_timeout),
    )
    install_authentication(telemetry, keypair)
    return telemetry, telemetry


__all__ = [
    "compose_pipeline",
    "HOOK_NAMES",
    "Transport",
    "TransportDecorator",
    "UDPTransport",
    "ReachabilityTransport",
    "TelemetryTransport",
    "TelemetryOptions",
    "LinkStats",
    "MessageSigner",
    "install_authentication",
    "Message",
    "MessageKind",
    "MalformedMessage",
    "MAX_DATAGRAM_SIZE",
]
