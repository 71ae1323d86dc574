"""
Network Host Layer

Connection events, publish/subscribe and protocol streams for the relay.
"""

from .base import (
    NetworkHost,
    PeerEvent,
    PubsubMessage,
    Stream,
    PEER_CONNECT,
    PEER_DISCONNECT
)
from .tcp_host import (
    TCPHost,
    Frame,
    MessageType,
    PeerConnection,
    MESSAGE_SIZE_LIMIT
)

__all__ = [
    "NetworkHost",
    "PeerEvent",
    "PubsubMessage",
    "Stream",
    "PEER_CONNECT",
    "PEER_DISCONNECT",
    "TCPHost",
    "Frame",
    "MessageType",
    "PeerConnection",
    "MESSAGE_SIZE_LIMIT"
]
