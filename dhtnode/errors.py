"""
Error taxonomy
==============

[FATAL] Only identity/storage faults at startup may stop the process:
- IdentityCorrupt
- StorageUnavailable

[RECOVERABLE] Everything else is contained per operation and surfaced to
control-plane callers as a structured error result.
"""


class DHTNodeError(Exception):
    """Base class for node errors."""
    pass


class IdentityCorrupt(DHTNodeError):
    """Key file or configuration document cannot be parsed."""
    pass


class StorageUnavailable(DHTNodeError):
    """Data directory cannot be created, read or written."""
    pass


class RoutingUnavailable(DHTNodeError):
    """Routing table has no known peers."""
    pass


class PeerUnreachable(DHTNodeError):
    """Peer could not be contacted or answered with an error."""
    pass


class RequestTimeout(PeerUnreachable):
    """Peer did not answer within the RPC timeout."""
    pass


class InvalidRequest(DHTNodeError):
    """Request parameters or value rejected before reaching the network."""
    pass


class AuthenticationFailed(DHTNodeError):
    """Inbound message failed signature verification."""
    pass


class InvalidTransition(DHTNodeError):
    """Lifecycle transition not allowed from the current state."""
    pass


class ControlError(DHTNodeError):
    """
    Error result returned by the control plane.

    Carries the remote error type name so callers can branch on it.
    """

    def __init__(self, error_type: str, message: str = ""):
        super().__init__(f"{error_type}: {message}" if message else error_type)
        self.error_type = error_type
        self.message = message
