"""
NAT Traversal
=============

Public address discovery for nodes behind a NAT.
"""

from .stun import STUNClient, MappedAddress, build_binding_request, parse_binding_response

__all__ = [
    "STUNClient",
    "MappedAddress",
    "build_binding_request",
    "parse_binding_response",
]
