"""
Kademlia DHT Engine
===================

Distributed hash table built on Kademlia:
- RoutingTable: k-bucket routing table
- DHTProtocol: PING, FIND_NODE, FIND_VALUE, STORE
- DHTStorage: local key-value store (aiosqlite)
- KademliaNode: engine driving RPCs over a transport pipeline

[KADEMLIA]
- XOR metric between 160-bit ids
- iterative lookups with alpha parallel requests
- republish keeps values alive in the network
"""

from .routing import (
    K,
    ALPHA,
    RoutingTable,
    KBucket,
    NodeInfo,
    xor_distance,
    distance_to_bucket_index,
    key_to_id,
)

from .storage import DHTStorage, StoredValue

from .protocol import DHTProtocol

from .node import KademliaNode

__all__ = [
    # Routing
    "K",
    "ALPHA",
    "RoutingTable",
    "KBucket",
    "NodeInfo",
    "xor_distance",
    "distance_to_bucket_index",
    "key_to_id",
    # Storage
    "DHTStorage",
    "StoredValue",
    # Protocol
    "DHTProtocol",
    "KademliaNode",
]
