"""
Control Plane Integration Tests
===============================

[INTEGRATION] Tests for dhtnode/control.py over a real Unix socket, with a
fake node behind the server.
"""

import asyncio
import os
import stat

import pytest
import pytest_asyncio

from dhtnode.control import ControlClient, ControlServer, pack_frame, read_frame
from dhtnode.errors import ControlError, InvalidRequest, RoutingUnavailable


class FakeNode:
    """Node double with a getitem that can be held open."""

    def __init__(self, contacts=()):
        self.contacts = list(contacts)
        self.items = {}
        self.release = asyncio.Event()
        self.slow_keys = set()
        self.peer_calls = []

    def get_info(self):
        return {"version": "test", "state": "joined"}

    def get_peers(self, key, limit, exclude_id=None):
        self.peer_calls.append((key, limit, exclude_id))
        if not self.contacts:
            raise RoutingUnavailable("Routing table is empty")
        return self.contacts[:limit]

    async def get_item(self, key):
        if key in self.slow_keys:
            await self.release.wait()
        if key == "explode":
            raise KeyError("unexpected")
        return self.items.get(key)

    async def put_item(self, key, value):
        if not isinstance(key, str):
            raise InvalidRequest("Key must be a string")
        self.items[key] = value
        return 1


@pytest_asyncio.fixture
async def served(socket_dir, contact_factory):
    node = FakeNode(contacts=[contact_factory(p) for p in (1, 2, 3)])
    server = ControlServer(node, socket_dir / "ctl.sock")
    await server.start()
    yield node, server
    node.release.set()
    await server.stop()


class TestControlServer:
    """Test serving control requests."""

    @pytest.mark.asyncio
    async def test_stale_socket_replaced(self, socket_dir):
        """Test a leftover socket file does not prevent binding."""
        path = socket_dir / "stale.sock"
        path.write_text("left behind")

        server = ControlServer(FakeNode(), path)
        await server.start()
        try:
            assert server.is_serving
            assert stat.S_ISSOCK(os.stat(path).st_mode)
            assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

            async with ControlClient(path) as client:
                assert (await client.getinfo())["version"] == "test"
        finally:
            await server.stop()

        assert not path.exists()

    @pytest.mark.asyncio
    async def test_methods(self, served):
        """Test the four methods end to end."""
        node, server = served

        async with ControlClient(server.path) as client:
            info = await client.getinfo()
            peers = await client.getpeers("key", 2)
            put = await client.putitem("k", {"v": [1, 2]})
            got = await client.getitem("k")
            missing = await client.getitem("absent")

        assert info == {"version": "test", "state": "joined"}
        assert [p["port"] for p in peers] == [1, 2]
        assert put == {"stored": 1}
        assert got == {"v": [1, 2]}
        assert missing is None

    @pytest.mark.asyncio
    async def test_getpeers_defaults(self, served):
        """Test getpeers defaults its limit and passes exclude_id through."""
        node, server = served

        async with ControlClient(server.path) as client:
            await client.call("getpeers", key="k")
            await client.call("getpeers", key="k", limit="2", exclude_id="ab" * 20)

        assert node.peer_calls == [("k", 20, None), ("k", 2, "ab" * 20)]

    @pytest.mark.asyncio
    async def test_slow_request_does_not_block(self, served):
        """Test getinfo answers while a getitem is still waiting."""
        node, server = served
        node.slow_keys.add("slow")

        async with ControlClient(server.path) as client:
            slow = asyncio.create_task(client.getitem("slow"))
            await asyncio.sleep(0.05)

            info = await asyncio.wait_for(client.getinfo(), timeout=1)
            assert info["state"] == "joined"
            assert not slow.done()

            node.items["slow"] = "finally"
            node.release.set()
            assert await asyncio.wait_for(slow, timeout=1) == "finally"

    @pytest.mark.asyncio
    async def test_other_session_not_blocked(self, served):
        """Test a slow request on one session leaves other sessions alone."""
        node, server = served
        node.slow_keys.add("slow")

        async with ControlClient(server.path) as first, ControlClient(server.path) as second:
            slow = asyncio.create_task(first.getitem("slow"))
            await asyncio.sleep(0.05)

            assert await asyncio.wait_for(second.putitem("x", 1), timeout=1) == {"stored": 1}
            node.release.set()
            await asyncio.wait_for(slow, timeout=1)

    @pytest.mark.asyncio
    async def test_routing_error_result(self, socket_dir):
        """Test node errors come back as structured results."""
        server = ControlServer(FakeNode(), socket_dir / "ctl.sock")
        await server.start()
        try:
            async with ControlClient(server.path) as client:
                with pytest.raises(ControlError) as exc_info:
                    await client.getpeers("key")
                # the session stays usable after an error
                assert (await client.getinfo())["version"] == "test"
        finally:
            await server.stop()

        assert exc_info.value.error_type == "RoutingUnavailable"
        assert "empty" in exc_info.value.message

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method, params, error_type", [
        ("nosuch", {}, "InvalidRequest"),
        ("getitem", {}, "InvalidRequest"),
        ("getpeers", {"key": "k", "limit": "many"}, "InvalidRequest"),
        ("putitem", {"key": 5, "value": 1}, "InvalidRequest"),
        ("getitem", {"key": "explode"}, "InternalError"),
    ])
    async def test_error_types(self, served, method, params, error_type):
        """Test invalid requests and unexpected failures are reported, not raised."""
        node, server = served

        async with ControlClient(server.path) as client:
            with pytest.raises(ControlError) as exc_info:
                await client.call(method, **params)
            assert (await client.getinfo())["state"] == "joined"

        assert exc_info.value.error_type == error_type

    @pytest.mark.asyncio
    async def test_raw_frames(self, served):
        """Test the wire format with a hand-written client."""
        node, server = served
        reader, writer = await asyncio.open_unix_connection(server.path)
        try:
            writer.write(pack_frame({"id": "a", "method": "getinfo"}))
            writer.write(pack_frame({"id": "b", "method": "getinfo", "params": [1]}))
            await writer.drain()

            responses = {}
            for _ in range(2):
                response = await asyncio.wait_for(read_frame(reader), timeout=1)
                responses[response["id"]] = response
        finally:
            writer.close()
            await writer.wait_closed()

        assert responses["a"]["result"]["version"] == "test"
        assert responses["b"]["error"]["type"] == "InvalidRequest"

    @pytest.mark.asyncio
    async def test_malformed_frame_closes_session(self, served):
        """Test garbage on the socket ends that session only."""
        node, server = served
        reader, writer = await asyncio.open_unix_connection(server.path)
        writer.write(b"\x00\x00\x00\x03abc")
        await writer.drain()

        assert await asyncio.wait_for(reader.read(), timeout=1) == b""
        writer.close()

        async with ControlClient(server.path) as client:
            assert (await client.getinfo())["state"] == "joined"


class TestControlClient:
    """Test client-side failures."""

    @pytest.mark.asyncio
    async def test_connection_failed(self, socket_dir):
        """Test connecting to a missing socket raises ControlError."""
        with pytest.raises(ControlError) as exc_info:
            await ControlClient(socket_dir / "nobody.sock").connect()
        assert exc_info.value.error_type == "ConnectionFailed"

    @pytest.mark.asyncio
    async def test_timeout(self, served):
        """Test calls give up after the client timeout."""
        node, server = served
        node.slow_keys.add("slow")

        async with ControlClient(server.path, timeout=0.1) as client:
            with pytest.raises(ControlError) as exc_info:
                await client.getitem("slow")

        assert exc_info.value.error_type == "Timeout"

    @pytest.mark.asyncio
    async def test_server_stop_fails_pending(self, socket_dir):
        """Test pending calls fail when the node goes away."""
        node = FakeNode()
        node.slow_keys.add("slow")
        server = ControlServer(node, socket_dir / "ctl.sock")
        await server.start()

        async with ControlClient(server.path) as client:
            pending = asyncio.create_task(client.getitem("slow"))
            await asyncio.sleep(0.05)
            await server.stop()

            with pytest.raises(ControlError) as exc_info:
                await asyncio.wait_for(pending, timeout=1)

        assert exc_info.value.error_type == "ConnectionClosed"
