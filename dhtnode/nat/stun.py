"""
Public Address Discovery
========================

[STUN] Binding requests (RFC 5389) used by the reachability layer to learn
the address a node is seen from. Only the mapped IP is used; the mapped
port belongs to the probe socket, not to the node socket.
"""

import asyncio
import ipaddress
import logging
import os
import socket
import struct
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


# STUN Message Types
STUN_BINDING_REQUEST = 0x0001
STUN_BINDING_RESPONSE = 0x0101

# STUN Attributes
ATTR_MAPPED_ADDRESS = 0x0001
ATTR_XOR_MAPPED_ADDRESS = 0x0020

# STUN Magic Cookie (RFC 5389)
STUN_MAGIC_COOKIE = 0x2112A442

DEFAULT_STUN_SERVERS = (
    ("stun.l.google.com", 19302),
    ("stun.cloudflare.com", 3478),
)

STUN_TIMEOUT = 1.5  # seconds per attempt
STUN_RETRIES = 1


@dataclass
class MappedAddress:
    """Public endpoint reported by a STUN server."""
    ip: str
    port: int
    server: str = ""

    @property
    def is_public(self) -> bool:
        try:
            return ipaddress.ip_address(self.ip).is_global
        except ValueError:
            return False

    def to_dict(self) -> dict:
        return {
            "ip": self.ip,
            "port": self.port,
            "server": self.server,
            "is_public": self.is_public,
        }


class STUNClient:
    """
    Queries the configured servers one after another until one answers.

    [USAGE]
    ```python
    mapped = await STUNClient(config.reachability.stun_servers).get_mapped_address()
    if mapped and mapped.is_public:
        transport.advertise(mapped.ip)
    ```
    """

    def __init__(
        self,
        stun_servers: Optional[Sequence[Tuple[str, int]]] = None,
        local_port: int = 0,
    ):
        self.stun_servers = tuple(stun_servers or DEFAULT_STUN_SERVERS)
        self.local_port = local_port

    async def get_mapped_address(self) -> Optional[MappedAddress]:
        """
        Ask each configured server in turn.

        Returns:
            MappedAddress or None when every server failed
        """
        for stun_host, stun_port in self.stun_servers:
            try:
                result = await self._query_stun(stun_host, stun_port)
            except OSError as e:
                logger.debug(f"[STUN] {stun_host}:{stun_port} failed: {e}")
                continue
            if result:
                result.server = f"{stun_host}:{stun_port}"
                logger.info(f"[STUN] Mapped address: {result.ip}:{result.port} (via {stun_host})")
                return result

        logger.warning("[STUN] All servers failed")
        return None

    async def _query_stun(self, stun_host: str, stun_port: int) -> Optional[MappedAddress]:
        loop = asyncio.get_running_loop()

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setblocking(False)

        try:
            sock.bind(("0.0.0.0", self.local_port))

            transaction_id = os.urandom(12)
            request = build_binding_request(transaction_id)

            infos = await loop.getaddrinfo(stun_host, stun_port, family=socket.AF_INET, type=socket.SOCK_DGRAM)
            stun_addr = infos[0][4]

            for attempt in range(STUN_RETRIES + 1):
                await loop.sock_sendto(sock, request, stun_addr)
                try:
                    data = await asyncio.wait_for(loop.sock_recv(sock, 1024), timeout=STUN_TIMEOUT)
                except asyncio.TimeoutError:
                    if attempt < STUN_RETRIES:
                        logger.debug(f"[STUN] Retry {attempt + 1}/{STUN_RETRIES}")
                    continue

                mapped = parse_binding_response(data, transaction_id)
                if mapped:
                    return mapped

            return None
        finally:
            sock.close()


def build_binding_request(transaction_id: bytes) -> bytes:
    """
    STUN Binding Request without attributes.

    [FORMAT] type (2) + length (2) + magic cookie (4) + transaction id (12)
    """
    return struct.pack(">HHI", STUN_BINDING_REQUEST, 0, STUN_MAGIC_COOKIE) + transaction_id


def parse_binding_response(data: bytes, expected_transaction_id: bytes) -> Optional[MappedAddress]:
    if len(data) < 20:
        return None

    msg_type, _msg_length, magic_cookie = struct.unpack(">HHI", data[:8])
    transaction_id = data[8:20]

    if msg_type != STUN_BINDING_RESPONSE:
        logger.debug(f"[STUN] Unexpected message type: 0x{msg_type:04x}")
        return None
    if magic_cookie != STUN_MAGIC_COOKIE:
        logger.debug(f"[STUN] Invalid magic cookie: 0x{magic_cookie:08x}")
        return None
    if transaction_id != expected_transaction_id:
        logger.debug("[STUN] Transaction ID mismatch")
        return None

    offset = 20
    mapped_ip = None
    mapped_port = None

    while offset + 4 <= len(data):
        attr_type, attr_length = struct.unpack(">HH", data[offset:offset + 4])
        offset += 4
        if offset + attr_length > len(data):
            break

        attr_value = data[offset:offset + attr_length]
        if attr_type == ATTR_XOR_MAPPED_ADDRESS:
            mapped_ip, mapped_port = _parse_address(attr_value, xor=True)
        elif attr_type == ATTR_MAPPED_ADDRESS and not mapped_ip:
            mapped_ip, mapped_port = _parse_address(attr_value, xor=False)

        # attributes are padded to 4 bytes
        offset += attr_length
        if attr_length % 4:
            offset += 4 - (attr_length % 4)

    if mapped_ip and mapped_port:
        return MappedAddress(ip=mapped_ip, port=mapped_port)
    return None


def _parse_address(data: bytes, xor: bool) -> Tuple[Optional[str], Optional[int]]:
    # IPv4 only
    if len(data) < 8 or data[1] != 0x01:
        return None, None

    port = struct.unpack(">H", data[2:4])[0]
    addr = struct.unpack(">I", data[4:8])[0]
    if xor:
        port ^= STUN_MAGIC_COOKIE >> 16
        addr ^= STUN_MAGIC_COOKIE
    return socket.inet_ntoa(struct.pack(">I", addr)), port
