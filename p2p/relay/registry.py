"""
Backend Registry

Live mapping from storage node peer ID to its relay channel.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .channel import Channel
from .errors import BackendNotConnected, NoBackendAvailable

logger = logging.getLogger(__name__)


@dataclass
class BackendConnection:
    """A registered storage node."""

    backend_id: str  # Storage node peer ID
    channel: Channel
    node_name: Optional[str] = None  # Human-readable nodeId
    connected_at: float = field(default_factory=time.time)


class BackendRegistry:
    """
    Registered storage nodes, in registration order.

    Re-registering a backend ID replaces its channel (last write wins)
    and keeps its position in the selection order.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.backends: Dict[str, BackendConnection] = {}  # backend_id -> connection

    def register(
        self,
        backend_id: str,
        channel: Channel,
        node_name: Optional[str] = None
    ) -> BackendConnection:
        """Insert or replace the connection for a backend."""
        if not backend_id:
            raise ValueError("backend_id must not be empty")

        previous = self.backends.get(backend_id)
        connection = BackendConnection(
            backend_id=backend_id,
            channel=channel,
            node_name=node_name,
            connected_at=self.clock()
        )
        self.backends[backend_id] = connection

        if previous is not None and previous.channel is not channel:
            logger.info(f"Backend {backend_id[:16]}... re-registered on a new channel")

        return connection

    def deregister(self, backend_id: str, channel: Optional[Channel] = None) -> bool:
        """
        Remove a backend.

        Args:
            backend_id: Backend to remove
            channel: Only remove if this is still the registered channel

        Returns:
            True if an entry was removed
        """
        connection = self.backends.get(backend_id)
        if connection is None:
            return False
        if channel is not None and connection.channel is not channel:
            return False

        del self.backends[backend_id]
        return True

    def find_by_channel(self, channel: Channel) -> Optional[str]:
        for backend_id, connection in self.backends.items():
            if connection.channel is channel:
                return backend_id
        return None

    def get(self, backend_id: str) -> Optional[BackendConnection]:
        return self.backends.get(backend_id)

    def select(
        self,
        target_backend_id: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> BackendConnection:
        """
        Pick the backend for a request.

        Without a target the first registered backend is used (no load
        awareness).

        Raises:
            NoBackendAvailable: No target given and the registry is empty
            BackendNotConnected: The named target is not registered
        """
        if target_backend_id is None:
            if not self.backends:
                raise NoBackendAvailable(request_id)
            return next(iter(self.backends.values()))

        connection = self.backends.get(target_backend_id)
        if connection is None:
            raise BackendNotConnected(target_backend_id, request_id)
        return connection

    def summary(self) -> List[Dict]:
        return [
            {
                "peer_id": connection.backend_id[:12],
                "node_id": connection.node_name,
                "connected_at": connection.connected_at,
            }
            for connection in self.backends.values()
        ]

    def __len__(self) -> int:
        return len(self.backends)

    def __contains__(self, backend_id: str) -> bool:
        return backend_id in self.backends
