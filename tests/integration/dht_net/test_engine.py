"""
Kademlia Engine Integration Tests
=================================

[INTEGRATION] Tests for dhtnode/dht/node.py over real localhost UDP with the
full transport pipeline (signatures, telemetry).
"""

import asyncio
import socket
from typing import List

import pytest
import pytest_asyncio

from dhtnode.config import resolve_config
from dhtnode.contact import Contact, fingerprint_to_node_id
from dhtnode.dht import DHTStorage, KademliaNode, RoutingTable
from dhtnode.dht.protocol import PING
from dhtnode.dht.routing import key_to_id
from dhtnode.errors import InvalidRequest, PeerUnreachable, RequestTimeout
from dhtnode.identity import KeyPair
from dhtnode.routing import TelemetryRouter
from dhtnode.transport import Message, MessageSigner, compose_pipeline


class EngineFactory:
    """Builds started engines on ephemeral localhost ports."""

    def __init__(self):
        self.engines: List[KademliaNode] = []

    async def create(self, validator=None, rpc_timeout: float = 1.0) -> KademliaNode:
        keypair = KeyPair()
        config = resolve_config(overrides={"port": 0, "rpc_timeout": rpc_timeout})
        transport, telemetry = compose_pipeline(
            Contact("127.0.0.1", 0, keypair.public_key), keypair, config,
        )
        router = TelemetryRouter(RoutingTable(keypair.node_id), telemetry)
        kwargs = {"validator": validator} if validator else {}
        engine = KademliaNode(
            transport, DHTStorage(":memory:"), router=router, rpc_timeout=rpc_timeout, **kwargs,
        )
        await engine.start()
        await transport.start()
        self.engines.append(engine)
        return engine

    async def close(self) -> None:
        for engine in self.engines:
            await engine.stop()
            await engine.transport.close()


@pytest_asyncio.fixture
async def engines():
    factory = EngineFactory()
    yield factory
    await factory.close()


class TestEngineRPC:
    """Test request/response correlation."""

    @pytest.mark.asyncio
    async def test_ping(self, engines):
        """Test a PING round trip adds both sides to each other's table."""
        a = await engines.create()
        b = await engines.create()

        assert await a.call(b.contact, PING, {}) == {"pong": True}
        await asyncio.sleep(0.05)

        assert a.router.get_node(b.local_id) is not None
        assert b.router.get_node(a.local_id) is not None

    @pytest.mark.asyncio
    async def test_concurrent_calls_correlated(self, engines):
        """Test many in-flight calls each get their own answer."""
        a = await engines.create()
        b = await engines.create()
        await a.connect(b.contact)

        targets = [KeyPair().node_id for _ in range(10)]
        results = await asyncio.gather(
            *(a.call(b.contact, "FIND_NODE", {"target": t.hex()}) for t in targets)
        )

        assert all("nodes" in result for result in results)

    @pytest.mark.asyncio
    async def test_timeout(self, engines):
        """Test a silent peer raises RequestTimeout."""
        a = await engines.create(rpc_timeout=0.2)
        silent = Contact("127.0.0.1", 9, KeyPair().public_key)

        with pytest.raises(RequestTimeout):
            await a.call(silent, PING, {})

    @pytest.mark.asyncio
    async def test_error_response(self, engines):
        """Test a peer rejecting a request raises PeerUnreachable."""
        a = await engines.create()
        b = await engines.create()

        with pytest.raises(PeerUnreachable):
            await a.call(b.contact, "FIND_NODE", {"target": "not-an-id"})

    @pytest.mark.asyncio
    async def test_connect_to_self(self, engines):
        """Test connecting to our own contact is refused."""
        a = await engines.create()
        with pytest.raises(InvalidRequest):
            await a.connect(a.contact)

    @pytest.mark.asyncio
    async def test_wrong_fingerprint_times_out(self, engines):
        """Test an answer signed by another identity never satisfies the call."""
        a = await engines.create(rpc_timeout=0.3)
        b = await engines.create()
        impostor = Contact(b.contact.address, b.contact.port, KeyPair().public_key)

        with pytest.raises(RequestTimeout):
            await a.call(impostor, PING, {})

    @pytest.mark.asyncio
    async def test_unreachable_sender_record_ignored(self, engines):
        """Test a signed request advertising an impossible port neither enters the table nor breaks the socket."""
        a = await engines.create()
        stranger = KeyPair()
        message = Message.request(PING, {}, Contact("127.0.0.1", 40000, stranger.public_key))
        message.sender["port"] = 70000
        MessageSigner(stranger).sign(message, a.contact)

        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.sendto(message.to_bytes(), a.contact.endpoint)
        await asyncio.sleep(0.1)

        assert a.router.get_node(fingerprint_to_node_id(stranger.public_key)) is None
        b = await engines.create()
        assert await b.call(a.contact, PING, {}) == {"pong": True}


class TestEngineData:
    """Test put/get across engines."""

    @pytest.mark.asyncio
    async def test_put_get(self, engines):
        """Test a value put on one engine is found from the other."""
        a = await engines.create()
        b = await engines.create()
        await b.connect(a.contact)

        assert await b.put("greeting", {"text": "hello"}) == 2
        assert await a.get("greeting") == {"text": "hello"}

    @pytest.mark.asyncio
    async def test_get_from_network_cached(self, engines):
        """Test a value fetched from a peer is kept locally."""
        a = await engines.create()
        b = await engines.create()
        c = await engines.create()
        await b.connect(a.contact)
        await c.connect(a.contact)

        await b.put("k", "v")
        assert await c.get("k") == "v"

        assert (await c.storage.get(key_to_id("k"))).value == "v"

    @pytest.mark.asyncio
    async def test_get_missing(self, engines):
        """Test missing keys read as None."""
        a = await engines.create()
        b = await engines.create()
        await b.connect(a.contact)

        assert await b.get("never-stored") is None

    @pytest.mark.asyncio
    async def test_validator_rejects_remote_store(self, engines):
        """Test a peer's validator keeps rejected pairs out of its store."""
        def no_secrets(key, value):
            return value != "secret"

        a = await engines.create(validator=no_secrets)
        b = await engines.create()
        await b.connect(a.contact)

        assert await b.put("public", "ok") == 2
        assert await b.put("private", "secret") == 1

        assert await a.storage.get(key_to_id("private")) is None
        assert (await a.storage.get(key_to_id("public"))).value == "ok"

    @pytest.mark.asyncio
    async def test_put_alone(self, engines):
        """Test a lone engine keeps the value locally."""
        a = await engines.create()
        assert await a.put("solo", [1, 2, 3]) == 1
        assert await a.get("solo") == [1, 2, 3]
