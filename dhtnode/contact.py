"""
Contact Descriptor
==================

[IDENTITY] A contact is the externally visible identity of a node:
- address/port: where the node can be reached right now
- fingerprint: base64 Ed25519 public key (the node's identity)

Two contacts denote the same peer iff their fingerprints match. Address and
port may change (mobility, NAT rebinding) without changing the peer.

[KADEMLIA] node_id = SHA-1(raw public key), 160 bits.
"""

import base64
import binascii
import hashlib
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Tuple

PUBLIC_KEY_SIZE = 32
MAX_PORT = 65535


def fingerprint_to_bytes(fingerprint: str) -> bytes:
    """Decode a fingerprint into the 32 raw public key bytes."""
    try:
        raw = base64.b64decode(fingerprint.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, AttributeError) as e:
        raise ValueError(f"Invalid fingerprint: {fingerprint!r}") from e
    if len(raw) != PUBLIC_KEY_SIZE:
        raise ValueError(f"Fingerprint must encode {PUBLIC_KEY_SIZE} bytes, got {len(raw)}")
    return raw


def fingerprint_to_node_id(fingerprint: str) -> bytes:
    """160-bit overlay id derived from the public key."""
    return hashlib.sha1(fingerprint_to_bytes(fingerprint)).digest()


@dataclass(frozen=True, eq=False)
class Contact:
    """Decorated address record: network address plus key fingerprint."""

    address: str
    port: int
    fingerprint: str
    node_id: bytes = field(init=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, "node_id", fingerprint_to_node_id(self.fingerprint))
        port = int(self.port)
        # 0 is only meaningful for a local socket that has not been bound yet
        if not 0 <= port <= MAX_PORT:
            raise ValueError(f"Port out of range: {port}")
        object.__setattr__(self, "port", port)

    @property
    def node_id_hex(self) -> str:
        return self.node_id.hex()

    @property
    def endpoint(self) -> Tuple[str, int]:
        return (self.address, self.port)

    def __eq__(self, other) -> bool:
        if isinstance(other, Contact):
            return self.fingerprint == other.fingerprint
        return False

    def __hash__(self) -> int:
        return hash(self.fingerprint)

    def with_endpoint(self, address: str, port: int) -> "Contact":
        """Same identity reachable at another address."""
        return replace(self, address=address, port=port)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "port": self.port,
            "fingerprint": self.fingerprint,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Contact":
        """
        Build a contact from a seed/wire record.

        `pubkey` is accepted as an alias of `fingerprint` for seed lists
        written by older tooling.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Contact record must be an object, got {type(data).__name__}")
        fingerprint = data.get("fingerprint") or data.get("pubkey")
        if not fingerprint:
            raise ValueError("Contact record has no fingerprint")
        try:
            address = str(data["address"])
            port = int(data["port"])
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed contact record: {data!r}") from e
        if port == 0:
            raise ValueError(f"Contact record has no usable port: {data!r}")
        return cls(address=address, port=port, fingerprint=fingerprint)

    def __str__(self) -> str:
        return f"{self.address}:{self.port}/{self.fingerprint[:8]}"
