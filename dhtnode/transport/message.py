"""
RPC Message Envelope
====================

[WIRE] One JSON object per UDP datagram:
- kind: REQUEST / RESPONSE
- method: PING, FIND_NODE, FIND_VALUE, STORE
- rpc_id: correlation id (hex, 20 bytes) chosen by the requester
- sender: contact record of the sending node
- params / result / error: call payload
- timestamp, nonce: freshness and uniqueness
- signature: Ed25519 over every other field (see get_signing_data)
"""

import json
import os
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, Optional

from ..contact import Contact

MAX_DATAGRAM_SIZE = 8192


class MalformedMessage(ValueError):
    """Datagram is not a valid message envelope."""
    pass


class MessageKind(Enum):
    REQUEST = auto()
    RESPONSE = auto()


def new_rpc_id() -> str:
    return os.urandom(20).hex()


@dataclass
class Message:
    """Signed RPC envelope exchanged between nodes."""

    kind: MessageKind
    method: str
    rpc_id: str
    sender: Dict[str, Any]
    params: Dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    nonce: Optional[str] = None
    signature: Optional[str] = None

    @classmethod
    def request(cls, method: str, params: Dict[str, Any], sender: Contact) -> "Message":
        return cls(
            kind=MessageKind.REQUEST,
            method=method,
            rpc_id=new_rpc_id(),
            sender=sender.to_dict(),
            params=params,
        )

    @classmethod
    def response(
        cls,
        request: "Message",
        sender: Contact,
        result: Any = None,
        error: Optional[str] = None,
    ) -> "Message":
        return cls(
            kind=MessageKind.RESPONSE,
            method=request.method,
            rpc_id=request.rpc_id,
            sender=sender.to_dict(),
            result=result,
            error=error,
        )

    @property
    def is_request(self) -> bool:
        return self.kind is MessageKind.REQUEST

    @property
    def sender_contact(self) -> Contact:
        try:
            return Contact.from_dict(self.sender)
        except ValueError as e:
            raise MalformedMessage(f"Invalid sender record: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.name,
            "method": self.method,
            "rpc_id": self.rpc_id,
            "sender": self.sender,
            "params": self.params,
            "result": self.result,
            "error": self.error,
            "timestamp": self.timestamp,
            "nonce": self.nonce,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        try:
            return cls(
                kind=MessageKind[data["kind"]],
                method=str(data["method"]),
                rpc_id=str(data["rpc_id"]),
                sender=dict(data["sender"]),
                params=dict(data.get("params") or {}),
                result=data.get("result"),
                error=data.get("error"),
                timestamp=float(data["timestamp"]),
                nonce=data.get("nonce"),
                signature=data.get("signature"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedMessage(f"Invalid message envelope: {e}") from e

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "Message":
        try:
            decoded = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedMessage(f"Undecodable datagram: {e}") from e
        if not isinstance(decoded, dict):
            raise MalformedMessage("Datagram is not a JSON object")
        return cls.from_dict(decoded)

    def get_signing_data(self) -> bytes:
        """
        Bytes covered by the signature.

        [SECURITY] Every field except the signature itself, serialized
        deterministically so both ends produce identical bytes.
        """
        data = self.to_dict()
        data.pop("signature")
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")
