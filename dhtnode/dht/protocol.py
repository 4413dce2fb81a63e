"""
Kademlia Protocol - DHT RPC operations
======================================

[KADEMLIA] RPCs served by every node:
- PING: liveness check
- FIND_NODE: k closest contacts to a target id
- FIND_VALUE: the value for a key, or k closest contacts
- STORE: keep a key-value pair (subject to the validator)

[LOOKUP] Iterative lookup:
- alpha = 3 parallel requests per round
- continue while rounds find closer contacts
- one final round over every unqueried contact among the k best
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..contact import Contact
from ..errors import InvalidRequest, PeerUnreachable
from ..validator import Validator, accept_all, run_validator
from .routing import ALPHA, K, ID_BYTES, xor_distance
from .storage import DEFAULT_TTL, DHTStorage

logger = logging.getLogger(__name__)


PING = "PING"
FIND_NODE = "FIND_NODE"
FIND_VALUE = "FIND_VALUE"
STORE = "STORE"

METHODS = (PING, FIND_NODE, FIND_VALUE, STORE)

MAX_TTL = 7 * 86400

# async (contact, method, params) -> result
RPCCall = Callable[[Contact, str, Dict[str, Any]], Awaitable[Any]]


def parse_id(value: Any) -> bytes:
    """160-bit id from its hex form; ValueError otherwise."""
    try:
        raw = bytes.fromhex(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid id: {value!r}") from e
    if len(raw) != ID_BYTES:
        raise ValueError(f"Id must be {ID_BYTES} bytes, got {len(raw)}")
    return raw


def parse_contacts(records: Any) -> List[Contact]:
    """Contacts from a response; malformed records are skipped."""
    contacts = []
    for record in records if isinstance(records, list) else []:
        try:
            contacts.append(Contact.from_dict(record))
        except ValueError as e:
            logger.debug(f"[DHT] Skipping malformed contact record: {e}")
    return contacts


class DHTProtocol:
    """
    RPC handlers plus iterative lookups over a routing table.

    `router` is anything with the routing table's interface (local_id,
    add_contact, find_closest); the node hands in its ranking facade.
    """

    def __init__(
        self,
        router,
        storage: DHTStorage,
        rpc: RPCCall,
        validator: Validator = accept_all,
        k: int = K,
        alpha: int = ALPHA,
    ):
        self.router = router
        self.storage = storage
        self.rpc = rpc
        self.validator = validator
        self.k = k
        self.alpha = alpha

    @property
    def local_id(self) -> bytes:
        return self.router.local_id

    # =========================================================================
    # Request Handlers
    # =========================================================================

    async def dispatch(self, method: str, sender: Contact, params: Dict[str, Any]) -> Any:
        """
        Serve one inbound request.

        Raises:
            ValueError: unknown method or malformed parameters
        """
        handler = {
            PING: self.handle_ping,
            FIND_NODE: self.handle_find_node,
            FIND_VALUE: self.handle_find_value,
            STORE: self.handle_store,
        }.get(method)
        if handler is None:
            raise ValueError(f"Unknown method {method!r}")
        return await handler(sender, params)

    async def handle_ping(self, sender: Contact, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"pong": True}

    async def handle_find_node(self, sender: Contact, params: Dict[str, Any]) -> Dict[str, Any]:
        target = parse_id(params.get("target"))
        closest = self.router.find_closest(target, count=self.k, exclude=sender.node_id)

        logger.debug(f"[DHT] FIND_NODE: target={target.hex()[:16]}..., returning {len(closest)} nodes")
        return {"nodes": [c.to_dict() for c in closest]}

    async def handle_find_value(self, sender: Contact, params: Dict[str, Any]) -> Dict[str, Any]:
        key = parse_id(params.get("key"))

        stored = await self.storage.get(key)
        if stored:
            logger.debug(f"[DHT] FIND_VALUE: key={key.hex()[:16]}... FOUND")
            return {"found": True, "value": stored.value, "ttl": stored.remaining_ttl}

        closest = self.router.find_closest(key, count=self.k, exclude=sender.node_id)
        logger.debug(f"[DHT] FIND_VALUE: key={key.hex()[:16]}... NOT FOUND, returning {len(closest)} nodes")
        return {"found": False, "nodes": [c.to_dict() for c in closest]}

    async def handle_store(self, sender: Contact, params: Dict[str, Any]) -> Dict[str, Any]:
        key = parse_id(params.get("key"))
        if "value" not in params:
            raise ValueError("STORE without value")
        value = params["value"]
        ttl = max(1, min(int(params.get("ttl", DEFAULT_TTL)), MAX_TTL))

        if not await run_validator(self.validator, key.hex(), value):
            logger.info(f"[DHT] STORE: key={key.hex()[:16]}... rejected by validator")
            return {"stored": False, "reason": "rejected"}

        stored = await self.storage.store(key, value, sender.node_id, ttl)
        if stored:
            logger.debug(f"[DHT] STORE: key={key.hex()[:16]}... from {sender} OK")
        return {"stored": stored}

    # =========================================================================
    # Iterative Lookup
    # =========================================================================

    async def _query(self, contact: Contact, method: str, params: Dict[str, Any]) -> Optional[Any]:
        try:
            return await self.rpc(contact, method, params)
        except PeerUnreachable as e:
            logger.debug(f"[DHT] {method} to {contact} failed: {e}")
            return None

    async def _lookup(
        self,
        target: bytes,
        method: str,
        params: Dict[str, Any],
    ) -> Tuple[Optional[Any], List[Contact]]:
        """
        Shared iterative walk for FIND_NODE and FIND_VALUE.

        Returns:
            (value response or None, k closest responsive contacts)
        """
        shortlist: List[Contact] = self.router.find_closest(target, count=self.k)
        if not shortlist:
            return None, []

        queried: Set[bytes] = set()
        responded: Set[bytes] = set()
        best = xor_distance(target, shortlist[0].node_id)
        parallelism = self.alpha

        while True:
            to_query = [c for c in shortlist if c.node_id not in queried][:parallelism]
            if not to_query:
                break
            queried.update(c.node_id for c in to_query)

            responses = await asyncio.gather(*(self._query(c, method, params) for c in to_query))

            for contact, response in zip(to_query, responses):
                if not isinstance(response, dict):
                    continue
                responded.add(contact.node_id)

                if response.get("found"):
                    logger.debug(f"[DHT] {method}: key={target.hex()[:16]}... FOUND at {contact}")
                    return response, [c for c in shortlist if c.node_id in responded]

                for found in parse_contacts(response.get("nodes")):
                    if found.node_id == self.local_id:
                        continue
                    if all(c.node_id != found.node_id for c in shortlist):
                        shortlist.append(found)

            # contacts that failed to answer leave the shortlist
            shortlist = [c for c in shortlist if c.node_id in responded or c.node_id not in queried]
            shortlist.sort(key=lambda c: xor_distance(target, c.node_id))
            shortlist = shortlist[:self.k]
            if not shortlist:
                break

            closest = xor_distance(target, shortlist[0].node_id)
            if closest < best:
                best = closest
                parallelism = self.alpha
            elif parallelism == self.k:
                break
            else:
                parallelism = self.k

        closest_responsive = [c for c in shortlist if c.node_id in responded]
        logger.debug(
            f"[DHT] {method}: target={target.hex()[:16]}..., "
            f"found {len(closest_responsive)} nodes"
        )
        return None, closest_responsive

    async def iterative_find_node(self, target: bytes) -> List[Contact]:
        """k closest responsive contacts to target."""
        _, contacts = await self._lookup(target, FIND_NODE, {"target": target.hex()})
        return contacts

    async def iterative_find_value(self, key: bytes) -> Tuple[Optional[Any], bool]:
        """
        Look a key up in the network.

        Returns:
            (value, found)
        """
        local = await self.storage.get(key)
        if local:
            return local.value, True

        response, _ = await self._lookup(key, FIND_VALUE, {"key": key.hex()})
        if response is None:
            logger.debug(f"[DHT] iterative_find_value: key={key.hex()[:16]}... NOT FOUND")
            return None, False
        return response.get("value"), True

    async def iterative_store(self, key: bytes, value: Any, ttl: int = DEFAULT_TTL) -> int:
        """
        Store locally and on the k closest contacts.

        Returns:
            number of nodes holding the value (local copy included)
        """
        stored_locally = await self.storage.store(key, value, self.local_id, ttl)
        if not stored_locally:
            raise InvalidRequest("Value rejected by local storage")

        closest = await self.iterative_find_node(key)
        if not closest:
            return 1

        params = {"key": key.hex(), "value": value, "ttl": ttl}
        responses = await asyncio.gather(*(self._query(c, STORE, params) for c in closest))

        count = 1 + sum(1 for r in responses if isinstance(r, dict) and r.get("stored"))
        logger.debug(f"[DHT] iterative_store: key={key.hex()[:16]}..., stored on {count} nodes")
        return count
