"""
Storage Node Directory

Peer directory protocol served by the relay.
"""

from .directory import (
    PeerDirectory,
    StorageNodeInfo,
    encode_directory_response,
    decode_directory_response,
    PROTOCOL_PEER_DIRECTORY,
    STALE_NODE_THRESHOLD
)

__all__ = [
    "PeerDirectory",
    "StorageNodeInfo",
    "encode_directory_response",
    "decode_directory_response",
    "PROTOCOL_PEER_DIRECTORY",
    "STALE_NODE_THRESHOLD"
]
