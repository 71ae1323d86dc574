"""
Storage Request Relay

Routes storage requests from clients to storage nodes and routes the
asynchronous responses back by request ID.

Flow:
1. Storage node connects and sends 'register' with its peerId
2. Client sends 'storage-request' (optionally naming a targetPeerId)
3. Relay records the pending request and forwards it to the node
4. Node processes and sends 'storage-response' back
5. Relay forwards the response to the client and forgets the request

Delivery is at-most-once. Requests that never get a response (including
those whose node went away) are answered with a timeout by the sweep.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .channel import Channel
from .errors import (
    REQUEST_TIMED_OUT,
    DuplicateRequest,
    ForwardFailed,
    MessageFormatError,
    RelayError
)
from .messages import (
    RegisterMessage,
    StorageRequestMessage,
    StorageResponseMessage,
    error_message,
    parse_message,
    registered_message
)
from .registry import BackendConnection, BackendRegistry

logger = logging.getLogger(__name__)


REQUEST_TIMEOUT = 60.0  # Seconds before a pending request is answered with a timeout
SWEEP_INTERVAL = 30.0  # Seconds between timeout sweeps


class RequestState(Enum):
    """Lifecycle of a relayed request."""

    REJECTED = "rejected"  # Never forwarded (bad target, duplicate id, ...)
    FORWARDED = "forwarded"
    RESPONDED = "responded"
    TIMED_OUT = "timed-out"
    FORWARD_FAILED = "forward-failed"


@dataclass
class PendingRequest:
    """A forwarded request awaiting its response."""

    request_id: str
    origin: Channel
    backend_id: str
    created_at: float = field(default_factory=time.time)

    def is_expired(self, now: float, timeout: float) -> bool:
        return now - self.created_at > timeout


class RequestRelay:
    """
    Store-and-forward router between clients and storage nodes.

    Owns the backend registry and the pending-request table; both are
    mutated only from the event loop through the methods below.
    """

    def __init__(
        self,
        request_timeout: float = REQUEST_TIMEOUT,
        sweep_interval: float = SWEEP_INTERVAL,
        registry: Optional[BackendRegistry] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize request relay.

        Args:
            request_timeout: Seconds a request may stay pending
            sweep_interval: Seconds between timeout sweeps
            registry: Backend registry (created if not given)
            clock: Time source returning seconds
        """
        self.request_timeout = request_timeout
        self.sweep_interval = sweep_interval
        self.clock = clock
        self.registry = registry or BackendRegistry(clock=clock)

        # Active requests (request_id -> PendingRequest)
        self.pending: Dict[str, PendingRequest] = {}

        self._sweep_task: Optional[asyncio.Task] = None

        # Statistics
        self.stats = {
            "requests_forwarded": 0,
            "requests_rejected": 0,
            "responses_delivered": 0,
            "responses_discarded": 0,
            "forward_failures": 0,
            "timeouts": 0
        }

    # Backend registry

    def register_backend(
        self,
        backend_id: str,
        channel: Channel,
        node_name: Optional[str] = None
    ) -> BackendConnection:
        """Register (or replace) a storage node's channel."""
        connection = self.registry.register(backend_id, channel, node_name)
        logger.info(
            f"Storage node registered: {backend_id[:16]}... "
            f"(node: {node_name}, total: {len(self.registry)})"
        )
        return connection

    def deregister_backend(self, backend_id: str, channel: Optional[Channel] = None) -> bool:
        """
        Remove a storage node.

        Pending requests already routed to it are left for the timeout sweep.
        """
        removed = self.registry.deregister(backend_id, channel)
        if removed:
            logger.info(f"Storage node disconnected: {backend_id[:16]}...")
        return removed

    def channel_closed(self, channel: Channel) -> Optional[str]:
        """Deregister whichever backend is bound to a closed channel."""
        backend_id = self.registry.find_by_channel(channel)
        if backend_id is not None:
            self.deregister_backend(backend_id, channel)
        return backend_id

    # Request routing

    async def submit_request(
        self,
        request_id: str,
        payload: Dict[str, Any],
        origin: Channel,
        target_backend_id: Optional[str] = None
    ) -> RequestState:
        """
        Forward a client request to a storage node.

        Routing failures are answered to the origin with an `error` message.

        Args:
            request_id: Client correlation ID (unique among pending requests)
            payload: Message forwarded to the storage node
            origin: Client channel that receives the eventual response
            target_backend_id: Storage node to use (first registered if None)

        Returns:
            FORWARDED, FORWARD_FAILED or REJECTED
        """
        try:
            backend = self._route(request_id, target_backend_id)
        except RelayError as e:
            self.stats["requests_rejected"] += 1
            logger.warning(f"Rejected storage request {request_id}: {e.message}")
            await self.reply_error(origin, e.message, e.request_id)
            return RequestState.REJECTED

        # Recorded before sending so a response can always find it
        self.pending[request_id] = PendingRequest(
            request_id=request_id,
            origin=origin,
            backend_id=backend.backend_id,
            created_at=self.clock()
        )

        try:
            await backend.channel.send(payload)
        except Exception as e:
            self.pending.pop(request_id, None)
            self.stats["forward_failures"] += 1
            logger.error(f"Failed to forward request {request_id}: {e}")
            failure = ForwardFailed(request_id)
            await self.reply_error(origin, failure.message, request_id)
            return RequestState.FORWARD_FAILED

        self.stats["requests_forwarded"] += 1
        logger.info(
            f"Forwarded storage request {request_id} "
            f"to {backend.backend_id[:12]}..."
        )
        return RequestState.FORWARDED

    def _route(self, request_id: str, target_backend_id: Optional[str]) -> BackendConnection:
        if request_id in self.pending:
            raise DuplicateRequest(request_id)

        backend = self.registry.select(target_backend_id or None, request_id)
        if not target_backend_id:
            logger.info(f"Auto-selected storage node: {backend.backend_id[:12]}...")
        return backend

    async def deliver_response(self, request_id: str, result: Dict[str, Any]) -> bool:
        """
        Route a storage node's response back to the requesting client.

        Responses for unknown requests (duplicates, or already timed out)
        are discarded.

        Returns:
            True if a pending request matched
        """
        pending = self.pending.pop(request_id, None)
        if pending is None:
            self.stats["responses_discarded"] += 1
            logger.warning(f"Received response for unknown request: {request_id}")
            return False

        try:
            await pending.origin.send(result)
            self.stats["responses_delivered"] += 1
            logger.info(f"Forwarded storage response for {request_id}")
        except Exception as e:
            logger.error(f"Failed to forward response for {request_id}: {e}")

        return True

    async def expire_requests(self) -> int:
        """
        Answer and drop every request older than the timeout.

        Returns:
            Number of requests timed out
        """
        now = self.clock()
        expired: List[PendingRequest] = [
            pending for pending in self.pending.values()
            if pending.is_expired(now, self.request_timeout)
        ]

        for pending in expired:
            del self.pending[pending.request_id]
            self.stats["timeouts"] += 1
            logger.warning(
                f"Request timed out: {pending.request_id} "
                f"(node {pending.backend_id[:12]}...)"
            )
            await self.reply_error(pending.origin, REQUEST_TIMED_OUT, pending.request_id)

        return len(expired)

    async def reply_error(self, channel: Channel, error: str, request_id: Optional[str] = None):
        """Send an `error` message, logging (not raising) on failure."""
        try:
            await channel.send(error_message(error, request_id))
        except Exception as e:
            logger.error(f"Failed to send error to {channel.remote}: {e}")

    # Wire protocol

    async def handle_message(self, channel: Channel, raw: Union[str, bytes]):
        """
        Decode and dispatch a frame received on a channel.

        Malformed frames are answered with an `error`; the channel stays open.
        """
        try:
            message = parse_message(raw)
        except MessageFormatError as e:
            logger.warning(f"Bad message from {channel.remote}: {e.message}")
            await self.reply_error(channel, e.message, e.request_id)
            return

        if isinstance(message, RegisterMessage):
            self.register_backend(message.peer_id, channel, message.node_id)
            try:
                await channel.send(
                    registered_message(message.peer_id, int(self.clock() * 1000))
                )
            except Exception as e:
                logger.error(f"Failed to confirm registration of {message.peer_id[:16]}...: {e}")

        elif isinstance(message, StorageRequestMessage):
            await self.submit_request(
                message.request_id,
                message.forward_payload(),
                channel,
                message.target_peer_id or None
            )

        elif isinstance(message, StorageResponseMessage):
            await self.deliver_response(message.request_id, message.to_wire())

    # Lifecycle

    async def start(self):
        """Start the periodic timeout sweep."""
        if self._sweep_task is not None:
            logger.warning("Request relay already running")
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        """Stop the sweep and forget all state."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None

        self.registry.backends.clear()
        self.pending.clear()
        logger.info("Request relay stopped")

    async def _sweep_loop(self):
        """Background task for periodic timeout sweeps."""
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                await self.expire_requests()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in request sweep loop: {e}")

    def get_stats(self) -> Dict:
        """Get relay statistics."""
        pending_by_node: Dict[str, int] = {}
        for pending in self.pending.values():
            key = pending.backend_id[:12]
            pending_by_node[key] = pending_by_node.get(key, 0) + 1

        return {
            **self.stats,
            "connected_nodes": len(self.registry),
            "pending_requests": len(self.pending),
            "pending_by_node": pending_by_node,
            "nodes": self.registry.summary()
        }
