"""
Storage Node Directory

Tracks storage nodes seen on the announce topic and serves them to peers
over the directory protocol.

Wire format (response only, the request carries no payload):
    [length:4 bytes big-endian][JSON body]
    body = {"peers": [{"peerId", "multiaddrs", "lastSeen"}], "timestamp"}
"""

import json
import logging
import struct
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


PROTOCOL_PEER_DIRECTORY = "/bytecave/relay/peers/1.0.0"
LENGTH_PREFIX_SIZE = 4
MAX_DIRECTORY_SIZE = 10 * 1024 * 1024  # Upper bound accepted when decoding
STALE_NODE_THRESHOLD = 300.0  # Seconds without an announcement before removal


@dataclass
class StorageNodeInfo:
    """A storage node reachable through this relay."""

    peer_id: str
    multiaddrs: List[str] = field(default_factory=list)
    last_seen: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "peerId": self.peer_id,
            "multiaddrs": list(self.multiaddrs),
            "lastSeen": int(self.last_seen * 1000),
        }


class PeerDirectory:
    """Storage nodes known from announcements (peer_id -> StorageNodeInfo)."""

    def __init__(
        self,
        stale_threshold: float = STALE_NODE_THRESHOLD,
        clock: Callable[[], float] = time.time
    ):
        self.stale_threshold = stale_threshold
        self.clock = clock
        self.nodes: Dict[str, StorageNodeInfo] = {}

    def track(self, peer_id: str, multiaddrs: List[str]) -> StorageNodeInfo:
        """Record (or refresh) a storage node."""
        info = StorageNodeInfo(
            peer_id=peer_id,
            multiaddrs=list(multiaddrs),
            last_seen=self.clock()
        )
        self.nodes[peer_id] = info
        return info

    def prune_stale(self) -> int:
        """Remove nodes not seen within the stale threshold."""
        now = self.clock()
        stale = [
            peer_id for peer_id, info in self.nodes.items()
            if now - info.last_seen > self.stale_threshold
        ]
        for peer_id in stale:
            del self.nodes[peer_id]
            logger.info(f"Removed stale storage node: {peer_id[:12]}...")
        return len(stale)

    def snapshot(self) -> Dict[str, Any]:
        """Directory response body."""
        return {
            "peers": [info.to_dict() for info in self.nodes.values()],
            "timestamp": int(self.clock() * 1000),
        }

    def __len__(self) -> int:
        return len(self.nodes)


def encode_directory_response(body: Dict[str, Any]) -> bytes:
    """Serialize a directory response with its length prefix."""
    payload = json.dumps(body).encode("utf-8")
    return struct.pack(">I", len(payload)) + payload


def decode_directory_response(data: bytes) -> Dict[str, Any]:
    """
    Parse a length-prefixed directory response.

    Raises:
        ValueError: Truncated, oversized or non-JSON data
    """
    if len(data) < LENGTH_PREFIX_SIZE:
        raise ValueError("Directory response too short")

    length = struct.unpack(">I", data[:LENGTH_PREFIX_SIZE])[0]
    if length > MAX_DIRECTORY_SIZE:
        raise ValueError(f"Directory response too large: {length} bytes")
    if len(data) < LENGTH_PREFIX_SIZE + length:
        raise ValueError("Incomplete directory response")

    body = json.loads(data[LENGTH_PREFIX_SIZE:LENGTH_PREFIX_SIZE + length].decode("utf-8"))
    if not isinstance(body, dict) or not isinstance(body.get("peers"), list):
        raise ValueError("Malformed directory response")
    return body
