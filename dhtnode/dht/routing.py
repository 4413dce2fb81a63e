"""
Kademlia Routing Table
======================

[KADEMLIA] K-bucket routing table:
- XOR distance between 160-bit node ids
- 160 k-buckets (one per bit of distance)
- k = 20 contacts per bucket
- LRU order: a full bucket keeps its live head and drops the newcomer

[XOR]
- XOR(a, a) = 0 (a node is closest to itself)
- XOR(a, b) = XOR(b, a)
- for any a and b there is exactly one c with XOR(a, c) = b

All access happens on the node's event loop; no locking.
"""

import hashlib
import logging
import os
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from ..contact import Contact

logger = logging.getLogger(__name__)


K = 20  # k-bucket size
ALPHA = 3  # lookup parallelism
ID_BITS = 160
ID_BYTES = ID_BITS // 8
BUCKET_REFRESH_INTERVAL = 3600  # seconds


@dataclass(eq=False)
class NodeInfo:
    """
    Routing table entry.

    [KADEMLIA] Identified by node_id = SHA-1(public key) of its contact;
    last_seen drives LRU ordering inside a bucket.
    """

    contact: Contact
    last_seen: float = field(default_factory=time.time)
    failed_requests: int = 0

    @property
    def node_id(self) -> bytes:
        return self.contact.node_id

    @property
    def node_id_hex(self) -> str:
        return self.contact.node_id_hex

    @property
    def address(self) -> Tuple[str, int]:
        return self.contact.endpoint

    def touch(self) -> None:
        self.last_seen = time.time()
        self.failed_requests = 0

    def mark_failed(self) -> None:
        self.failed_requests += 1

    def to_dict(self) -> Dict:
        data = self.contact.to_dict()
        data["node_id"] = self.node_id_hex
        data["last_seen"] = self.last_seen
        return data

    def __hash__(self) -> int:
        return hash(self.node_id)

    def __eq__(self, other) -> bool:
        if isinstance(other, NodeInfo):
            return self.node_id == other.node_id
        return False


def xor_distance(id1: bytes, id2: bytes) -> int:
    """
    XOR distance of two ids as an integer; smaller is closer.

    Raises:
        ValueError: ids of different length
    """
    if len(id1) != len(id2):
        raise ValueError(f"ID length mismatch: {len(id1)} vs {len(id2)}")
    return int.from_bytes(id1, "big") ^ int.from_bytes(id2, "big")


def distance_to_bucket_index(distance: int) -> int:
    """
    Bucket index = position of the highest set bit.

    Distance 1 -> 0, 2-3 -> 1, 4-7 -> 2, ..., 2^159.. -> 159.
    """
    if distance == 0:
        return 0
    return distance.bit_length() - 1


def node_id_to_bucket_index(local_id: bytes, remote_id: bytes) -> int:
    return distance_to_bucket_index(xor_distance(local_id, remote_id))


def generate_random_id_in_bucket(local_id: bytes, bucket_index: int) -> bytes:
    """
    Random id whose distance from local_id falls into bucket_index.

    Used for bucket refresh: a FIND_NODE towards this id repopulates the
    bucket.
    """
    low = 1 << bucket_index
    distance = low | (int.from_bytes(os.urandom(ID_BYTES), "big") & (low - 1))
    return (int.from_bytes(local_id, "big") ^ distance).to_bytes(ID_BYTES, "big")


class KBucket:
    """
    Contacts at one distance range, least recently seen first.

    [KADEMLIA]
    - at most k contacts
    - a known contact moves to the tail when seen again
    - a full bucket reports its head as eviction candidate
    """

    def __init__(self, k: int = K):
        self.k = k
        self._nodes: "OrderedDict[bytes, NodeInfo]" = OrderedDict()
        self.last_updated = time.time()

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[NodeInfo]:
        return iter(list(self._nodes.values()))

    def __contains__(self, node_id: bytes) -> bool:
        return node_id in self._nodes

    @property
    def is_full(self) -> bool:
        return len(self._nodes) >= self.k

    @property
    def nodes(self) -> List[NodeInfo]:
        return list(self._nodes.values())

    @property
    def head(self) -> Optional[NodeInfo]:
        """Least recently seen contact."""
        if self._nodes:
            return next(iter(self._nodes.values()))
        return None

    def get(self, node_id: bytes) -> Optional[NodeInfo]:
        return self._nodes.get(node_id)

    def add(self, node: NodeInfo) -> Tuple[bool, Optional[NodeInfo]]:
        """
        Add or refresh a contact.

        Returns:
            (True, None): added or refreshed
            (False, head): bucket full, head should be pinged
        """
        existing = self._nodes.get(node.node_id)
        if existing is not None:
            # same identity, possibly a new endpoint
            existing.contact = node.contact
            existing.touch()
            self._nodes.move_to_end(node.node_id)
            self.last_updated = time.time()
            return True, None

        if not self.is_full:
            self._nodes[node.node_id] = node
            self.last_updated = time.time()
            return True, None

        return False, self.head

    def remove(self, node_id: bytes) -> bool:
        if node_id in self._nodes:
            del self._nodes[node_id]
            return True
        return False

    def touch(self, node_id: bytes) -> bool:
        if node_id in self._nodes:
            self._nodes.move_to_end(node_id)
            self._nodes[node_id].touch()
            self.last_updated = time.time()
            return True
        return False

    def replace_stale(self, new_node: NodeInfo, stale_node_id: bytes) -> bool:
        """Swap a head that failed its ping for the waiting newcomer."""
        if stale_node_id in self._nodes:
            del self._nodes[stale_node_id]
            self._nodes[new_node.node_id] = new_node
            self.last_updated = time.time()
            return True
        return False

    def needs_refresh(self, interval: float = BUCKET_REFRESH_INTERVAL) -> bool:
        return time.time() - self.last_updated > interval


class RoutingTable:
    """
    Kademlia routing table.

    [KADEMLIA] Bucket i holds contacts at distance 2^i <= d < 2^(i+1);
    find_closest answers "k nearest contacts to any id".
    """

    def __init__(self, local_id: bytes, k: int = K):
        if len(local_id) != ID_BYTES:
            raise ValueError(f"local_id must be {ID_BYTES} bytes, got {len(local_id)}")

        self.local_id = local_id
        self.k = k
        self.buckets: List[KBucket] = [KBucket(k) for _ in range(ID_BITS)]

        logger.info(f"[DHT] RoutingTable initialized: local_id={local_id.hex()[:16]}...")

    def __len__(self) -> int:
        return sum(len(b) for b in self.buckets)

    def get_bucket(self, node_id: bytes) -> KBucket:
        return self.buckets[node_id_to_bucket_index(self.local_id, node_id)]

    def add_contact(self, contact: Contact) -> Tuple[bool, Optional[NodeInfo]]:
        """
        Add a contact (or refresh it when already known).

        Returns:
            (added, eviction_candidate)
        """
        if contact.node_id == self.local_id:
            return False, None
        return self.get_bucket(contact.node_id).add(NodeInfo(contact))

    def remove_contact(self, node_id: bytes) -> bool:
        if node_id == self.local_id:
            return False
        return self.get_bucket(node_id).remove(node_id)

    def get_node(self, node_id: bytes) -> Optional[NodeInfo]:
        return self.get_bucket(node_id).get(node_id)

    def find_closest(
        self,
        target_id: bytes,
        count: int = K,
        exclude: Optional[bytes] = None,
    ) -> List[Contact]:
        """
        Up to `count` contacts sorted by XOR distance to target_id.

        Args:
            target_id: 160-bit target
            count: maximum number of results
            exclude: node id left out of the result (usually the requester)
        """
        candidates: List[Tuple[int, Contact]] = []
        for bucket in self.buckets:
            for node in bucket:
                if exclude and node.node_id == exclude:
                    continue
                candidates.append((xor_distance(target_id, node.node_id), node.contact))

        candidates.sort(key=lambda x: x[0])
        return [contact for _, contact in candidates[:count]]

    def get_refresh_ids(self) -> List[bytes]:
        """Random lookup targets for every non-empty bucket idle too long."""
        return [
            generate_random_id_in_bucket(self.local_id, i)
            for i, bucket in enumerate(self.buckets)
            if len(bucket) > 0 and bucket.needs_refresh()
        ]

    def get_all_contacts(self) -> List[Contact]:
        return [node.contact for bucket in self.buckets for node in bucket]

    def get_stats(self) -> Dict:
        bucket_sizes = [len(b) for b in self.buckets if len(b) > 0]
        return {
            "local_id": self.local_id.hex(),
            "total_nodes": len(self),
            "non_empty_buckets": len(bucket_sizes),
            "total_buckets": ID_BITS,
            "k": self.k,
        }


def key_to_id(key: str) -> bytes:
    """160-bit DHT id of a string key."""
    return hashlib.sha1(key.encode("utf-8")).digest()
