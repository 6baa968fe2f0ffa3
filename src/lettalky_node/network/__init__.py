"""Networking layer — peer registry, proximity discovery and HTTP transport."""

from lettalky_node.network.discovery import DiscoveryService
from lettalky_node.network.peer import Location, PeerRecord, PeerStatus
from lettalky_node.network.registry import RegistryStore
from lettalky_node.network.transport import Transport

__all__ = [
    "DiscoveryService",
    "Location",
    "PeerRecord",
    "PeerStatus",
    "RegistryStore",
    "Transport",
]
