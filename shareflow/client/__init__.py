"""Expose the peer-side relay client."""
from .connection import RelayClient, connect
from .peer import Outbound, PeerAgent, PeerLost

__all__ = [
    "Outbound",
    "PeerAgent",
    "PeerLost",
    "RelayClient",
    "connect",
]
