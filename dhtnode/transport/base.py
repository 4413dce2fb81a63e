"""
Transport Pipeline
==================

[PIPELINE] A base datagram transport plus capability layers that wrap it.
Every layer satisfies the same contract (open/start/send/on/before/close),
holds the layer below it and forwards whatever it does not add itself.

[HOOKS] Three extension points, all owned by the base transport:
- serialize: (message, contact) before encoding, in registration order
- send:      (bytes, contact) after encoding, in registration order
- receive:   (message, contact) after decoding, in REVERSE registration order

Inbound traffic unwinds the stack: the most recently attached concern sees
outbound messages last and inbound messages first. Authentication is
attached last, so signing is the final transformation before the wire and
verification is the first one after it.

[EVENTS]
- ready:   exactly once, after bind and every layer's negotiation
- error:   non-fatal transport fault (send failure, malformed datagram)
- message: authenticated inbound message (message, contact, address)
"""

import asyncio
import ipaddress
import logging
import socket
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..contact import MAX_PORT, Contact
from ..errors import AuthenticationFailed, PeerUnreachable
from ..events import EventEmitter
from .message import MAX_DATAGRAM_SIZE, MalformedMessage, Message

logger = logging.getLogger(__name__)


HOOK_NAMES = ("serialize", "send", "receive")

# datagrams waiting for verification; beyond this they are dropped
INBOUND_QUEUE_SIZE = 1024

Hook = Callable[[Any, Contact], Any]


class Transport(ABC):
    """Capability contract shared by the base transport and every decorator."""

    @property
    @abstractmethod
    def contact(self) -> Contact:
        """Contact currently advertised for this node."""

    @abstractmethod
    def advertise(self, address: str, port: Optional[int] = None) -> Contact:
        """Change the advertised endpoint; the fingerprint never changes."""

    @abstractmethod
    async def open(self) -> None:
        """Bind and run this layer's negotiation."""

    @abstractmethod
    async def send(self, message: Message, contact: Contact) -> None:
        """Run outbound hooks and transmit to `contact`."""

    @abstractmethod
    def on(self, event_name: str, callback: Callable[..., Any]) -> None:
        pass

    @abstractmethod
    def emit(self, event_name: str, *args: Any) -> None:
        pass

    @abstractmethod
    def emit_once(self, event_name: str, *args: Any) -> bool:
        pass

    @abstractmethod
    def before(self, hook_name: str, hook: Hook) -> None:
        """Register a hook at one of HOOK_NAMES."""

    @abstractmethod
    async def close(self) -> None:
        pass

    async def start(self) -> Contact:
        """
        Open the whole stack, then announce readiness.

        Called on the outermost layer only; `ready` fires once no matter how
        many times start() is invoked.
        """
        await self.open()
        self.emit_once("ready", self.contact)
        return self.contact


class _DatagramEndpoint(asyncio.DatagramProtocol):
    """asyncio protocol glue; hands everything to the owning UDPTransport."""

    def __init__(self, transport: "UDPTransport"):
        self.owner = transport

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.owner._enqueue(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"[TRANSPORT] Socket error: {exc}")
        self.owner.emit("error", exc)


class UDPTransport(Transport):
    """
    Base UDP transport.

    Inbound datagrams are queued and processed one at a time by a single
    receive task, so verification happens in arrival order. Handlers of the
    resulting `message` events run concurrently.
    """

    def __init__(
        self,
        contact: Contact,
        bind_host: Optional[str] = None,
        max_datagram_size: int = MAX_DATAGRAM_SIZE,
        inbound_queue_size: int = INBOUND_QUEUE_SIZE,
    ):
        self._contact = contact
        self.bind_host = bind_host or contact.address
        self.max_datagram_size = max_datagram_size
        self.inbound_queue_size = inbound_queue_size
        self.dropped_datagrams = 0

        self.events = EventEmitter()
        self._hooks: Dict[str, List[Hook]] = {name: [] for name in HOOK_NAMES}

        self._endpoint: Optional[asyncio.DatagramTransport] = None
        self._inbound: Optional[asyncio.Queue] = None
        self._receiver: Optional[asyncio.Task] = None

    @property
    def contact(self) -> Contact:
        return self._contact

    @property
    def is_open(self) -> bool:
        return self._endpoint is not None

    def advertise(self, address: str, port: Optional[int] = None) -> Contact:
        self._contact = self._contact.with_endpoint(address, port or self._contact.port)
        return self._contact

    # ------------------------------------------------------------------
    # Events and hooks
    # ------------------------------------------------------------------

    def on(self, event_name: str, callback: Callable[..., Any]) -> None:
        self.events.on(event_name, callback)

    def emit(self, event_name: str, *args: Any) -> None:
        self.events.emit(event_name, *args)

    def emit_once(self, event_name: str, *args: Any) -> bool:
        return self.events.emit_once(event_name, *args)

    def before(self, hook_name: str, hook: Hook) -> None:
        if hook_name not in self._hooks:
            raise ValueError(f"Unknown hook '{hook_name}', expected one of {HOOK_NAMES}")
        self._hooks[hook_name].append(hook)

    async def _run_hooks(self, hook_name: str, value: Any, contact: Contact) -> Any:
        hooks = self._hooks[hook_name]
        if hook_name == "receive":
            hooks = list(reversed(hooks))
        for hook in hooks:
            result = hook(value, contact)
            if asyncio.iscoroutine(result):
                result = await result
            if result is not None:
                value = result
        return value

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        if self._endpoint is not None:
            return

        loop = asyncio.get_running_loop()
        self._inbound = asyncio.Queue(maxsize=self.inbound_queue_size)
        endpoint, _ = await loop.create_datagram_endpoint(
            lambda: _DatagramEndpoint(self),
            local_addr=(self.bind_host, self._contact.port),
        )
        self._endpoint = endpoint

        bound_port = endpoint.get_extra_info("sockname")[1]
        if bound_port != self._contact.port:
            # port 0 requested: advertise what the OS picked
            self.advertise(self._contact.address, bound_port)

        self._receiver = asyncio.create_task(self._receive_loop())
        logger.info(f"[TRANSPORT] Listening on {self.bind_host}:{bound_port}")

    async def close(self) -> None:
        if self._receiver:
            self._receiver.cancel()
            try:
                await self._receiver
            except asyncio.CancelledError:
                pass
            self._receiver = None

        if self._endpoint:
            self._endpoint.close()
            self._endpoint = None
            logger.info("[TRANSPORT] Closed")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, message: Message, contact: Contact) -> None:
        if self._endpoint is None:
            raise PeerUnreachable("Transport is not open")

        try:
            message = await self._run_hooks("serialize", message, contact)
            data = message.to_bytes()
            data = await self._run_hooks("send", data, contact)
            if len(data) > self.max_datagram_size:
                raise MalformedMessage(
                    f"Datagram too large: {len(data)} > {self.max_datagram_size}"
                )
            destination = await self._resolve(contact)
            if self._endpoint is None:
                raise PeerUnreachable("Transport closed while resolving")
            self._endpoint.sendto(data, destination)
        except (OSError, OverflowError, ValueError) as e:
            logger.warning(f"[TRANSPORT] Send to {contact} failed: {e}")
            self.emit("error", e)
            raise PeerUnreachable(f"Send to {contact} failed: {e}") from e

    async def _resolve(self, contact: Contact) -> Tuple[str, int]:
        """
        Numeric (ip, port) for a contact.

        asyncio closes the whole endpoint when sendto() fails with anything
        but OSError, so bad ports and unencodable host names must fail here.
        Host names are resolved off the event loop.

        Raises:
            OSError, ValueError, OverflowError
        """
        address, port = contact.endpoint
        if not 0 < port <= MAX_PORT:
            raise OverflowError(f"Port out of range: {port}")
        try:
            return str(ipaddress.ip_address(address)), port
        except ValueError:
            pass

        sock = self._endpoint.get_extra_info("socket")
        family = sock.family if sock is not None else socket.AF_INET
        infos = await asyncio.get_running_loop().getaddrinfo(
            address, port, family=family, type=socket.SOCK_DGRAM,
        )
        if not infos:
            raise OSError(f"Cannot resolve {address}")
        return infos[0][4][0], infos[0][4][1]

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _enqueue(self, data: bytes, addr: Tuple[str, int]) -> None:
        if self._inbound is None:
            return
        try:
            self._inbound.put_nowait((data, addr))
        except asyncio.QueueFull:
            self.dropped_datagrams += 1
            logger.warning(
                f"[TRANSPORT] Inbound queue full, dropped datagram from {addr[0]}:{addr[1]} "
                f"({self.dropped_datagrams} dropped so far)"
            )

    async def _receive_loop(self) -> None:
        while True:
            data, addr = await self._inbound.get()
            await self.receive(data, addr)

    async def receive(self, data: bytes, addr: Tuple[str, int]) -> Optional[Message]:
        """
        Decode, run receive hooks and dispatch one datagram.

        Returns the delivered message, or None when it was dropped.
        Nothing raised here ever reaches the routing layer.
        """
        try:
            message = Message.from_bytes(data)
            contact = message.sender_contact
        except MalformedMessage as e:
            logger.warning(f"[TRANSPORT] Malformed datagram from {addr[0]}:{addr[1]}: {e}")
            self.emit("error", e)
            return None

        try:
            message = await self._run_hooks("receive", message, contact)
        except AuthenticationFailed as e:
            logger.warning(f"[TRANSPORT] Dropped message from {contact}: {e}")
            return None
        except Exception as e:
            logger.exception(f"[TRANSPORT] Receive hook failed for message from {contact}")
            self.emit("error", e)
            return None

        self.emit("message", message, contact, addr)
        return message


class TransportDecorator(Transport):
    """
    Capability layer wrapping another transport.

    Subclasses add behaviour by overriding open()/send()/close() and by
    registering hooks on the stack; everything else is delegated.
    """

    def __init__(self, inner: Transport, options: Any = None):
        self.inner = inner
        self.options = options

    @classmethod
    def wrap(cls, inner: Transport, options: Any = None) -> "TransportDecorator":
        return cls(inner, options)

    @property
    def contact(self) -> Contact:
        return self.inner.contact

    def advertise(self, address: str, port: Optional[int] = None) -> Contact:
        return self.inner.advertise(address, port)

    async def open(self) -> None:
        await self.inner.open()

    async def send(self, message: Message, contact: Contact) -> None:
        await self.inner.send(message, contact)

    def on(self, event_name: str, callback: Callable[..., Any]) -> None:
        self.inner.on(event_name, callback)

    def emit(self, event_name: str, *args: Any) -> None:
        self.inner.emit(event_name, *args)

    def emit_once(self, event_name: str, *args: Any) -> bool:
        return self.inner.emit_once(event_name, *args)

    def before(self, hook_name: str, hook: Hook) -> None:
        self.inner.before(hook_name, hook)

    async def close(self) -> None:
        await self.inner.close()
