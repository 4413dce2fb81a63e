"""
Routing Facade
==============

[ROUTING] Wraps the engine's routing table and ranks what it returns:
- primary order: XOR distance to the target
- tie-break: link confidence observed by the telemetry layer
- peers telemetry considers unreachable are left out

The same facade is handed to the engine, so network lookups and `getpeers`
answers use one ranking.
"""

import logging
import re
from typing import List, Optional

from .contact import Contact
from .dht.routing import K, RoutingTable, key_to_id, xor_distance
from .errors import InvalidRequest, RoutingUnavailable
from .transport.telemetry import TelemetryTransport

logger = logging.getLogger(__name__)


NODE_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{40}$")


def resolve_key(key: str) -> bytes:
    """
    160-bit target for a lookup key.

    A 40-character hex string is taken as a node id; anything else is hashed.
    """
    if not isinstance(key, str):
        raise InvalidRequest(f"Key must be a string, got {type(key).__name__}")
    if NODE_ID_PATTERN.match(key):
        return bytes.fromhex(key)
    return key_to_id(key)


class TelemetryRouter:
    """
    Telemetry-aware view of a RoutingTable.

    Anything not overridden here is delegated to the wrapped table.
    """

    def __init__(self, table: RoutingTable, telemetry: Optional[TelemetryTransport] = None):
        self.table = table
        self.telemetry = telemetry

    def __getattr__(self, name):
        return getattr(self.table, name)

    def __len__(self) -> int:
        return len(self.table)

    def _confidence(self, contact: Contact) -> float:
        if self.telemetry is None:
            return 0.5
        return self.telemetry.confidence(contact.fingerprint)

    def _reachable(self, contact: Contact) -> bool:
        return self.telemetry is None or self.telemetry.is_reachable(contact.fingerprint)

    def find_closest(
        self,
        target_id: bytes,
        count: int = K,
        exclude: Optional[bytes] = None,
    ) -> List[Contact]:
        """Ranked contacts, closest first, at most `count`."""
        if count <= 0:
            return []
        if self.telemetry is not None:
            self.telemetry.expire_outstanding()

        candidates = [
            c for c in self.table.find_closest(target_id, count=len(self.table), exclude=exclude)
            if self._reachable(c)
        ]
        candidates.sort(key=lambda c: (xor_distance(target_id, c.node_id), -self._confidence(c)))
        return candidates[:count]

    def get_nearest_contacts(
        self,
        key: str,
        limit: int = K,
        exclude_id: Optional[str] = None,
    ) -> List[Contact]:
        """
        Contacts nearest to `key`.

        Args:
            key: 40-char hex node id, or any string (hashed)
            limit: maximum number of contacts
            exclude_id: hex node id left out of the answer

        Raises:
            RoutingUnavailable: no known peers and `key` is not our own id
            InvalidRequest: malformed key or exclude_id
        """
        target = resolve_key(key)

        exclude = None
        if exclude_id:
            if not NODE_ID_PATTERN.match(str(exclude_id)):
                raise InvalidRequest(f"exclude_id must be a 40-char hex node id: {exclude_id!r}")
            exclude = bytes.fromhex(exclude_id)

        if len(self.table) == 0:
            if target == self.table.local_id:
                return []
            raise RoutingUnavailable("Routing table is empty")

        contacts = self.find_closest(target, count=int(limit), exclude=exclude)
        logger.debug(f"[ROUTING] {len(contacts)} contacts near {target.hex()[:16]}...")
        return contacts
