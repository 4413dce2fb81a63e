"""
Message Envelope Unit Tests
===========================

[UNIT] Tests for dhtnode/transport/message.py.
"""

import json

import pytest

from dhtnode.transport.message import MalformedMessage, Message, MessageKind


class TestMessage:
    """Test the RPC envelope."""

    def test_request_response_pairing(self, contact_factory):
        """Test a response carries the request's rpc_id and method."""
        requester = contact_factory(4000)
        responder = contact_factory(4001)

        request = Message.request("PING", {}, requester)
        response = Message.response(request, responder, result={"pong": True})

        assert request.is_request
        assert not response.is_request
        assert response.kind is MessageKind.RESPONSE
        assert response.rpc_id == request.rpc_id
        assert response.method == "PING"
        assert len(request.rpc_id) == 40

    def test_rpc_ids_unique(self, contact_factory):
        """Test every request gets a fresh correlation id."""
        sender = contact_factory()
        ids = {Message.request("PING", {}, sender).rpc_id for _ in range(100)}
        assert len(ids) == 100

    def test_bytes_roundtrip(self, contact_factory):
        """Test wire encoding preserves every field."""
        sender = contact_factory()
        message = Message.request("STORE", {"key": "ab" * 20, "value": {"n": [1, 2]}}, sender)
        message.nonce = "00" * 16
        message.signature = "sig"

        decoded = Message.from_bytes(message.to_bytes())

        assert decoded == message
        assert decoded.sender_contact == sender

    def test_signing_data_excludes_signature(self, contact_factory):
        """Test the signature does not cover itself."""
        message = Message.request("PING", {}, contact_factory())
        before = message.get_signing_data()
        message.signature = "anything"

        assert message.get_signing_data() == before
        assert b"signature" not in before

    def test_signing_data_covers_payload(self, contact_factory):
        """Test every other field changes the signed bytes."""
        message = Message.request("STORE", {"value": 1}, contact_factory())
        before = message.get_signing_data()
        message.params["value"] = 2
        assert message.get_signing_data() != before

    @pytest.mark.parametrize("data", [
        b"\xff\xfe",
        b"not json",
        b"[1, 2]",
        json.dumps({"kind": "REQUEST"}).encode(),
        json.dumps({
            "kind": "GOSSIP", "method": "PING", "rpc_id": "1", "sender": {}, "timestamp": 0,
        }).encode(),
    ])
    def test_malformed(self, data):
        """Test undecodable datagrams raise MalformedMessage."""
        with pytest.raises(MalformedMessage):
            Message.from_bytes(data)

    def test_bad_sender_record(self, contact_factory):
        """Test an invalid sender record is reported as malformed."""
        message = Message.request("PING", {}, contact_factory())
        message.sender = {"address": "127.0.0.1", "port": 1}

        with pytest.raises(MalformedMessage):
            message.sender_contact
