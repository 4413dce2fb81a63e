"""
Kademlia Node - DHT engine on top of the transport pipeline
===========================================================

[KADEMLIA] KademliaNode ties the pieces together:
- RPC request/response over the transport, correlated by rpc_id
- every authenticated sender is welcomed into the routing table
- connect/get/put for the node and its control plane
- background tasks: bucket refresh, republish, cleanup

[INTEGRATION]
- subscribes to the transport's `message` event
- routes through whatever router it is given (the node passes its
  telemetry-ranked facade, so lookups and getpeers agree)
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from ..contact import Contact
from ..errors import InvalidRequest, PeerUnreachable, RequestTimeout
from ..transport import Message, Transport
from ..validator import Validator, accept_all
from .protocol import PING, DHTProtocol
from .routing import K, NodeInfo, RoutingTable, key_to_id
from .storage import DEFAULT_TTL, DHTStorage

logger = logging.getLogger(__name__)


# Background task intervals
REFRESH_INTERVAL = 3600  # bucket refresh
REPUBLISH_INTERVAL = 3600  # republish stored values
CLEANUP_INTERVAL = 300  # drop expired values

DEFAULT_RPC_TIMEOUT = 5.0
MAX_FAILED_REQUESTS = 3


class KademliaNode:
    """
    Kademlia DHT engine.

    [USAGE]
    ```python
    engine = KademliaNode(transport, DHTStorage("data/dht.db"))
    await engine.start()
    await engine.connect(seed)
    count = await engine.put("my_key", "my_value")
    value = await engine.get("my_key")
    ```
    """

    def __init__(
        self,
        transport: Transport,
        storage: DHTStorage,
        router=None,
        validator: Validator = accept_all,
        rpc_timeout: float = DEFAULT_RPC_TIMEOUT,
        k: int = K,
    ):
        self.transport = transport
        self.storage = storage
        self.router = router if router is not None else RoutingTable(transport.contact.node_id, k=k)
        self.validator = validator
        self.rpc_timeout = rpc_timeout

        self.protocol = DHTProtocol(
            router=self.router,
            storage=storage,
            rpc=self.call,
            validator=validator,
            k=k,
        )

        # rpc_id -> (expected responder fingerprint, future)
        self._pending: Dict[str, Tuple[str, asyncio.Future]] = {}
        self._evicting: Set[bytes] = set()

        self._tasks: List[asyncio.Task] = []
        self._running = False

        transport.on("message", self._on_message)
        logger.info(f"[KADEMLIA] Engine created: {self.local_id.hex()[:16]}...")

    @property
    def contact(self) -> Contact:
        return self.transport.contact

    @property
    def local_id(self) -> bytes:
        return self.transport.contact.node_id

    async def start(self) -> None:
        """Open storage and start maintenance tasks."""
        if self._running:
            return

        await self.storage.initialize()

        self._running = True
        self._tasks.append(asyncio.create_task(self._refresh_loop()))
        self._tasks.append(asyncio.create_task(self._republish_loop()))
        self._tasks.append(asyncio.create_task(self._cleanup_loop()))

        logger.info("[KADEMLIA] DHT started")

    async def stop(self) -> None:
        self._running = False

        for task in list(self._tasks):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

        for _, future in self._pending.values():
            if not future.done():
                future.set_exception(PeerUnreachable("Engine stopped"))
        self._pending.clear()

        await self.storage.close()
        logger.info("[KADEMLIA] DHT stopped")

    # =========================================================================
    # RPC
    # =========================================================================

    async def call(self, contact: Contact, method: str, params: Dict[str, Any]) -> Any:
        """
        Send one request and wait for the matching response.

        Raises:
            RequestTimeout: no response within rpc_timeout
            PeerUnreachable: send failed or the peer answered with an error
        """
        request = Message.request(method, params, self.contact)
        future = asyncio.get_running_loop().create_future()
        self._pending[request.rpc_id] = (contact.fingerprint, future)

        try:
            await self.transport.send(request, contact)
            return await asyncio.wait_for(future, timeout=self.rpc_timeout)
        except asyncio.TimeoutError:
            self._record_failure(contact)
            raise RequestTimeout(f"{method} to {contact} timed out after {self.rpc_timeout}s") from None
        except PeerUnreachable:
            self._record_failure(contact)
            raise
        finally:
            self._pending.pop(request.rpc_id, None)

    async def ping(self, contact: Contact) -> bool:
        try:
            await self.call(contact, PING, {})
            return True
        except PeerUnreachable:
            return False

    async def _on_message(self, message: Message, contact: Contact, addr: Tuple[str, int]) -> None:
        if contact.node_id == self.local_id:
            logger.debug(f"[KADEMLIA] Ignoring message carrying our own identity from {addr}")
            return

        self.welcome(contact)

        if message.is_request:
            await self._handle_request(message, contact)
        else:
            self._handle_response(message, contact)

    async def _handle_request(self, request: Message, contact: Contact) -> None:
        try:
            result = await self.protocol.dispatch(request.method, contact, request.params)
            response = Message.response(request, self.contact, result=result)
        except (ValueError, TypeError, KeyError) as e:
            logger.debug(f"[KADEMLIA] Bad {request.method} from {contact}: {e}")
            response = Message.response(request, self.contact, error=str(e))
        except Exception as e:
            logger.error(f"[KADEMLIA] {request.method} handler failed: {e}")
            response = Message.response(request, self.contact, error="internal error")

        try:
            await self.transport.send(response, contact)
        except PeerUnreachable as e:
            logger.debug(f"[KADEMLIA] Could not answer {request.method} from {contact}: {e}")

    def _handle_response(self, response: Message, contact: Contact) -> None:
        entry = self._pending.get(response.rpc_id)
        if entry is None:
            logger.debug(f"[KADEMLIA] Unsolicited {response.method} response from {contact}")
            return

        expected, future = entry
        if contact.fingerprint != expected:
            logger.warning(f"[KADEMLIA] Response {response.rpc_id[:8]} from unexpected peer {contact}")
            return
        if future.done():
            return

        if response.error:
            future.set_exception(PeerUnreachable(f"{contact} answered with error: {response.error}"))
        else:
            future.set_result(response.result)

    # =========================================================================
    # Routing maintenance
    # =========================================================================

    def welcome(self, contact: Contact) -> None:
        """
        Add or refresh a contact we just heard from.

        [KADEMLIA] On a full bucket the least recently seen contact is
        pinged; it is replaced only if it does not answer.
        """
        added, head = self.router.add_contact(contact)
        if added:
            return
        if head is not None and head.node_id not in self._evicting:
            self._evicting.add(head.node_id)
            task = asyncio.ensure_future(self._check_eviction(head.contact, contact))
            self._tasks.append(task)
            task.add_done_callback(self._forget_task)

    def _forget_task(self, task: asyncio.Task) -> None:
        if task in self._tasks:
            self._tasks.remove(task)

    async def _check_eviction(self, head: Contact, candidate: Contact) -> None:
        try:
            if await self.ping(head):
                logger.debug(f"[KADEMLIA] Bucket head {head} alive, dropping {candidate}")
                return
            bucket = self.router.get_bucket(head.node_id)
            if bucket.replace_stale(NodeInfo(candidate), head.node_id):
                logger.debug(f"[KADEMLIA] Replaced unresponsive {head} with {candidate}")
        finally:
            self._evicting.discard(head.node_id)

    def _record_failure(self, contact: Contact) -> None:
        node = self.router.get_node(contact.node_id)
        if node is None:
            return
        node.mark_failed()
        if node.failed_requests >= MAX_FAILED_REQUESTS:
            self.router.remove_contact(contact.node_id)
            logger.info(f"[KADEMLIA] Removed {contact} after {node.failed_requests} failed requests")

    # =========================================================================
    # Public API
    # =========================================================================

    async def connect(self, contact: Contact) -> Contact:
        """
        Join the network through one known contact.

        [KADEMLIA] Ping the contact (which adds it to the routing table),
        then look up our own id to populate nearby buckets.

        Raises:
            PeerUnreachable / RequestTimeout: contact did not answer
        """
        if contact.node_id == self.local_id:
            raise InvalidRequest("Cannot connect to ourselves")

        await self.call(contact, PING, {})
        found = await self.protocol.iterative_find_node(self.local_id)
        logger.info(f"[KADEMLIA] Connected via {contact}, {len(found)} nodes nearby")
        return contact

    async def put(self, key: str, value: Any, ttl: int = DEFAULT_TTL) -> int:
        """
        Publish a value under a string key.

        Returns:
            number of nodes holding the value, local copy included
        """
        count = await self.protocol.iterative_store(key_to_id(key), value, ttl)
        logger.info(f"[KADEMLIA] PUT '{key}' -> stored on {count} nodes")
        return count

    async def get(self, key: str) -> Optional[Any]:
        """Value stored under a string key, or None."""
        key_id = key_to_id(key)

        local = await self.storage.get(key_id)
        if local:
            logger.debug(f"[KADEMLIA] GET '{key}' -> found locally")
            return local.value

        value, found = await self.protocol.iterative_find_value(key_id)
        if found:
            await self.storage.store(key_id, value, self.local_id)
            logger.info(f"[KADEMLIA] GET '{key}' -> found in network")
            return value

        logger.debug(f"[KADEMLIA] GET '{key}' -> not found")
        return None

    async def find_node(self, target_id: bytes) -> List[Contact]:
        return await self.protocol.iterative_find_node(target_id)

    async def get_stats(self) -> Dict:
        return {
            "local_id": self.local_id.hex(),
            "routing_table": self.router.get_stats(),
            "storage": await self.storage.get_stats(),
            "running": self._running,
        }

    # =========================================================================
    # Background Tasks
    # =========================================================================

    async def _refresh_loop(self) -> None:
        """
        [KADEMLIA] Bucket refresh: FIND_NODE towards a random id inside
        every bucket that has been idle for an hour.
        """
        while self._running:
            try:
                await asyncio.sleep(REFRESH_INTERVAL)

                refresh_ids = self.router.get_refresh_ids()
                for target_id in refresh_ids:
                    if not self._running:
                        break
                    await self.find_node(target_id)

                if refresh_ids:
                    logger.debug(f"[KADEMLIA] Refreshed {len(refresh_ids)} buckets")

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[KADEMLIA] Refresh error: {e}")

    async def _republish_loop(self) -> None:
        """[KADEMLIA] Re-store held values on the current k closest nodes."""
        while self._running:
            try:
                await asyncio.sleep(REPUBLISH_INTERVAL)

                values = await self.storage.get_republish_values()
                for stored in values:
                    if not self._running:
                        break
                    await self.protocol.iterative_store(stored.key, stored.value, max(1, stored.remaining_ttl))
                    await self.storage.mark_republished(stored.key)

                if values:
                    logger.debug(f"[KADEMLIA] Republished {len(values)} values")

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[KADEMLIA] Republish error: {e}")

    async def _cleanup_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(CLEANUP_INTERVAL)
                await self.storage.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[KADEMLIA] Cleanup error: {e}")
