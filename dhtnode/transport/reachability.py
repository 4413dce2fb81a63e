"""
Reachability Layer
==================

[NAT] Decides which address the node advertises to its peers:

1. An explicit `public_address` always wins.
2. Otherwise, when enabled, STUN discovery is attempted.
3. Otherwise (or when discovery fails) the configured address is kept.

Discovery failures are logged and never block startup.
"""

import asyncio
import logging
from typing import Optional

from ..config import ReachabilityOptions
from ..nat import MappedAddress, STUNClient
from .base import Transport, TransportDecorator

logger = logging.getLogger(__name__)


class ReachabilityTransport(TransportDecorator):
    """Transport layer that negotiates the public endpoint after bind."""

    def __init__(
        self,
        inner: Transport,
        options: Optional[ReachabilityOptions] = None,
        stun_client: Optional[STUNClient] = None,
    ):
        super().__init__(inner, options or ReachabilityOptions())
        self.stun_client = stun_client
        self.mapped: Optional[MappedAddress] = None

    async def open(self) -> None:
        await self.inner.open()
        await self.negotiate()

    async def negotiate(self) -> None:
        options: ReachabilityOptions = self.options

        if options.public_address:
            contact = self.advertise(options.public_address)
            logger.info(f"[NAT] Advertising configured public address {contact.address}:{contact.port}")
            return

        if not options.enabled:
            logger.debug("[NAT] Reachability negotiation disabled")
            return

        client = self.stun_client or STUNClient(options.stun_servers)
        try:
            mapped = await asyncio.wait_for(client.get_mapped_address(), timeout=options.timeout)
        except asyncio.TimeoutError:
            mapped = None

        if mapped is None:
            logger.warning(
                f"[NAT] Public address discovery failed, advertising {self.contact.address}"
            )
            return

        self.mapped = mapped
        if not mapped.is_public:
            logger.info(f"[NAT] Mapped address {mapped.ip} is not public, keeping {self.contact.address}")
            return

        # the mapping belongs to the STUN socket, so keep our own port
        contact = self.advertise(mapped.ip)
        logger.info(f"[NAT] Advertising discovered address {contact.address}:{contact.port}")
