"""
Message Authentication
======================

[SECURITY] Every outbound message is signed with the node's Ed25519 key as
the last serialize hook; every inbound message is verified against the
fingerprint in its sender record as the first receive hook.

A forged, tampered or unsigned message raises AuthenticationFailed, which
the transport turns into a logged drop.
"""

import logging
import os

from ..contact import Contact
from ..errors import AuthenticationFailed
from ..identity import KeyPair
from .base import Transport
from .message import Message

logger = logging.getLogger(__name__)


class MessageSigner:
    """Signs outbound and verifies inbound messages for one identity."""

    def __init__(self, keypair: KeyPair):
        self.keypair = keypair

    def sign(self, message: Message, contact: Contact) -> Message:
        if message.sender.get("fingerprint") != self.keypair.public_key:
            raise AuthenticationFailed("Refusing to sign a message on behalf of another identity")
        message.nonce = os.urandom(16).hex()
        message.signature = self.keypair.sign(message.get_signing_data())
        return message

    def verify(self, message: Message, contact: Contact) -> Message:
        if not message.signature:
            raise AuthenticationFailed(f"Unsigned {message.method} from {contact}")
        if not KeyPair.verify(contact.fingerprint, message.get_signing_data(), message.signature):
            raise AuthenticationFailed(f"Bad signature on {message.method} from {contact}")
        return message


def install_authentication(transport: Transport, keypair: KeyPair) -> MessageSigner:
    """
    Attach signing and verification to a transport stack.

    Must be called after every other layer has registered its hooks.
    """
    signer = MessageSigner(keypair)
    transport.before("serialize", signer.sign)
    transport.before("receive", signer.verify)
    logger.debug(f"[AUTH] Message authentication installed for {keypair.public_key[:8]}")
    return signer
