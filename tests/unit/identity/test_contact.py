"""
Contact Unit Tests
==================

[UNIT] Tests for dhtnode/contact.py.
"""

import base64
import hashlib

import pytest

from dhtnode.contact import Contact


class TestContact:
    """Test Contact descriptor."""

    def test_node_id_from_public_key(self, keypair):
        """Test node_id is SHA-1 of the raw public key."""
        contact = Contact("127.0.0.1", 4000, keypair.public_key)
        expected = hashlib.sha1(base64.b64decode(keypair.public_key)).digest()

        assert contact.node_id == expected
        assert contact.node_id == keypair.node_id
        assert contact.node_id_hex == expected.hex()

    def test_identity_equality(self, keypair):
        """Test two contacts are the same peer iff fingerprints match."""
        a = Contact("127.0.0.1", 4000, keypair.public_key)
        b = Contact("10.0.0.5", 5000, keypair.public_key)

        assert a == b
        assert hash(a) == hash(b)
        assert len({a, b}) == 1

    def test_different_keys_differ(self, contact_factory):
        """Test contacts with different keys are different peers."""
        assert contact_factory(4000) != contact_factory(4000)

    def test_with_endpoint(self, contact_factory):
        """Test moving a contact keeps its identity."""
        contact = contact_factory(4000)
        moved = contact.with_endpoint("203.0.113.7", 4001)

        assert moved.endpoint == ("203.0.113.7", 4001)
        assert moved.fingerprint == contact.fingerprint
        assert moved.node_id == contact.node_id
        assert contact.endpoint == ("127.0.0.1", 4000)

    def test_dict_roundtrip(self, contact_factory):
        """Test wire record conversion."""
        contact = contact_factory(4321)
        record = contact.to_dict()

        assert set(record) == {"address", "port", "fingerprint"}
        assert Contact.from_dict(record) == contact

    def test_pubkey_alias(self, keypair):
        """Test seed records may name the key 'pubkey'."""
        contact = Contact.from_dict({"address": "127.0.0.1", "port": "4000", "pubkey": keypair.public_key})

        assert contact.fingerprint == keypair.public_key
        assert contact.port == 4000

    @pytest.mark.parametrize("record", [
        {"address": "127.0.0.1", "port": 1},
        {"address": "127.0.0.1", "port": 1, "fingerprint": "not-base64"},
        {"address": "127.0.0.1", "port": 1, "fingerprint": base64.b64encode(b"short").decode()},
        {"port": 1, "fingerprint": base64.b64encode(b"x" * 32).decode()},
        "127.0.0.1:1",
    ])
    def test_malformed_records(self, record):
        """Test malformed records raise ValueError."""
        with pytest.raises(ValueError):
            Contact.from_dict(record)

    @pytest.mark.parametrize("port", [-1, 65536, 70000])
    def test_port_out_of_range(self, keypair, port):
        """Test ports outside the UDP range are refused."""
        with pytest.raises(ValueError):
            Contact("127.0.0.1", port, keypair.public_key)

    def test_unbound_local_port(self, keypair):
        """Test port 0 is allowed for a socket that is not bound yet."""
        assert Contact("127.0.0.1", 0, keypair.public_key).port == 0

    @pytest.mark.parametrize("port", [0, 70000, "70000"])
    def test_record_port_unusable(self, keypair, port):
        """Test peer and seed records must name a reachable port."""
        with pytest.raises(ValueError):
            Contact.from_dict({"address": "127.0.0.1", "port": port, "fingerprint": keypair.public_key})
