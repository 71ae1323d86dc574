"""
Connection Admission Controller

Decides whether an incoming peer connection is allowed and auto-blocks
abusive peers and addresses.

Checks (first failing check wins):
- Global limit on peers active within the connection window
- Standing address blocks (manual or escalated)
- Per-address connection rate (overflow escalates to a standing block)
- Time-bounded peer blocks
- Per-peer connection rate (overflow blocks the peer for block_duration)

Bandwidth is tracked per peer in 1-second windows. A background sweep
expires idle peer and address state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from bytecave.core.config import RateLimitConfig

logger = logging.getLogger(__name__)


BANDWIDTH_WINDOW = 1.0  # Seconds per bandwidth accounting window


class DenyReason(Enum):
    """Why a connection or transfer was refused."""

    INVALID_PEER = "invalid peer id"
    GLOBAL_LIMIT = "global limit"
    ADDRESS_BLOCKED = "address blocked"
    IP_LIMIT = "ip limit exceeded"
    PEER_BLOCKED = "peer blocked"
    PEER_RATE_EXCEEDED = "peer rate exceeded"
    BANDWIDTH_EXCEEDED = "bandwidth exceeded"


@dataclass
class AdmissionDecision:
    """Outcome of an admission check."""

    allowed: bool
    reason: Optional[DenyReason] = None
    blocked_until: Optional[float] = None  # Set for PEER_BLOCKED / PEER_RATE_EXCEEDED

    @classmethod
    def allow(cls) -> "AdmissionDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason, blocked_until: Optional[float] = None) -> "AdmissionDecision":
        return cls(allowed=False, reason=reason, blocked_until=blocked_until)


@dataclass
class PeerState:
    """Connection and bandwidth counters for a single peer."""

    last_connection: float  # Start of the current connection window
    last_bandwidth_reset: float
    connections: int = 0
    bandwidth: int = 0  # Bytes seen in the current bandwidth window
    blocked: bool = False
    blocked_until: float = 0.0

    def window_elapsed(self, now: float, window: float) -> bool:
        return now - self.last_connection >= window

    def is_block_active(self, now: float) -> bool:
        return self.blocked and now < self.blocked_until


@dataclass
class IPState:
    """Connection counters for a single source address."""

    last_connection: float
    connections: int = 1
    peer_ids: Set[str] = field(default_factory=set)


class AdmissionController:
    """
    Rate limiting and abuse prevention for incoming connections.

    All state lives in memory and is owned by this object. Every method is
    synchronous and intended to be called from a single event loop.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize admission controller.

        Args:
            config: Limits and window lengths (defaults to RateLimitConfig())
            clock: Time source returning seconds
        """
        self.config = config or RateLimitConfig()
        self.clock = clock

        self.peers: Dict[str, PeerState] = {}  # peer_id -> PeerState
        self.addresses: Dict[str, IPState] = {}  # address -> IPState
        self.blocked_addresses: Set[str] = set()

        self._cleanup_task: Optional[asyncio.Task] = None

        logger.info(
            f"Admission controller ready: {self.config.max_connections_per_peer}/peer, "
            f"{self.config.max_connections_per_ip}/ip per {self.config.connection_window}s, "
            f"global max {self.config.global_max_connections}"
        )

    def evaluate_connection(
        self,
        peer_id: str,
        source_address: Optional[str] = None
    ) -> AdmissionDecision:
        """
        Check if a peer connection should be allowed.

        Args:
            peer_id: Connecting peer's ID
            source_address: Remote IP address, if known

        Returns:
            AdmissionDecision (allowed, or denied with a reason)
        """
        if not peer_id:
            return AdmissionDecision.deny(DenyReason.INVALID_PEER)

        now = self.clock()
        window = self.config.connection_window

        if self._active_peer_count(now) >= self.config.global_max_connections:
            return AdmissionDecision.deny(DenyReason.GLOBAL_LIMIT)

        if source_address:
            if source_address in self.blocked_addresses:
                return AdmissionDecision.deny(DenyReason.ADDRESS_BLOCKED)

            if not self._check_address(source_address, peer_id, now):
                return AdmissionDecision.deny(DenyReason.IP_LIMIT)

        state = self.peers.get(peer_id)
        if state is None:
            state = PeerState(last_connection=now, last_bandwidth_reset=now)
            self.peers[peer_id] = state

        if state.blocked:
            if now < state.blocked_until:
                return AdmissionDecision.deny(
                    DenyReason.PEER_BLOCKED, blocked_until=state.blocked_until
                )
            # Block period over
            state.blocked = False
            state.connections = 0

        if not state.window_elapsed(now, window):
            if state.connections >= self.config.max_connections_per_peer:
                state.blocked = True
                state.blocked_until = now + self.config.block_duration
                logger.warning(
                    f"Peer {peer_id[:16]}... blocked for {self.config.block_duration}s "
                    f"(connection rate exceeded)"
                )
                return AdmissionDecision.deny(
                    DenyReason.PEER_RATE_EXCEEDED, blocked_until=state.blocked_until
                )
            state.connections += 1
        else:
            state.connections = 1
            state.last_connection = now

        return AdmissionDecision.allow()

    def _check_address(self, address: str, peer_id: str, now: float) -> bool:
        """Apply the per-address window; escalate overflow to a standing block."""
        ip_state = self.addresses.get(address)

        if ip_state is None:
            self.addresses[address] = IPState(last_connection=now, peer_ids={peer_id})
            return True

        if now - ip_state.last_connection >= self.config.connection_window:
            ip_state.connections = 1
            ip_state.last_connection = now
            ip_state.peer_ids = {peer_id}
            return True

        if ip_state.connections >= self.config.max_connections_per_ip:
            self.blocked_addresses.add(address)
            logger.warning(f"Address {address} blocked for excessive connections")
            return False

        ip_state.connections += 1
        ip_state.peer_ids.add(peer_id)
        return True

    def _active_peer_count(self, now: float) -> int:
        window = self.config.connection_window
        return sum(
            1 for state in self.peers.values()
            if now - state.last_connection < window
        )

    def record_bandwidth(self, peer_id: str, byte_count: int) -> AdmissionDecision:
        """
        Track bandwidth usage for a peer.

        Unknown peers are not bandwidth-limited; they are gated at the
        connection level instead.

        Args:
            peer_id: Peer that sent or received the bytes
            byte_count: Number of bytes transferred

        Returns:
            Deny decision once the peer exceeds its per-second ceiling
        """
        if not peer_id:
            return AdmissionDecision.deny(DenyReason.INVALID_PEER)

        state = self.peers.get(peer_id)
        if state is None:
            return AdmissionDecision.allow()

        now = self.clock()
        if now - state.last_bandwidth_reset >= BANDWIDTH_WINDOW:
            state.bandwidth = 0
            state.last_bandwidth_reset = now

        state.bandwidth += byte_count

        if state.bandwidth > self.config.max_bytes_per_second:
            logger.warning(f"Peer {peer_id[:16]}... exceeded bandwidth limit")
            return AdmissionDecision.deny(DenyReason.BANDWIDTH_EXCEEDED)

        return AdmissionDecision.allow()

    def record_disconnection(self, peer_id: str):
        """Record a peer disconnection (state is kept for window bookkeeping)."""
        state = self.peers.get(peer_id)
        if state and state.connections > 0:
            state.connections -= 1

    def block_peer(self, peer_id: str, duration: Optional[float] = None):
        """
        Manually block a peer.

        Args:
            peer_id: Peer to block
            duration: Block length in seconds (defaults to block_duration)
        """
        if not peer_id:
            raise ValueError("peer_id must not be empty")
        if duration is not None and duration <= 0:
            raise ValueError(f"Block duration must be positive, got {duration}")

        now = self.clock()
        state = self.peers.get(peer_id)
        if state is None:
            state = PeerState(last_connection=now, last_bandwidth_reset=now)
            self.peers[peer_id] = state

        state.blocked = True
        state.blocked_until = now + (duration or self.config.block_duration)
        logger.info(f"Manually blocked peer {peer_id[:16]}...")

    def unblock_peer(self, peer_id: str):
        """Lift a peer block."""
        if not peer_id:
            raise ValueError("peer_id must not be empty")

        state = self.peers.get(peer_id)
        if state:
            state.blocked = False
            state.blocked_until = 0.0
            logger.info(f"Unblocked peer {peer_id[:16]}...")

    def block_address(self, address: str):
        """Manually add a standing block on a source address."""
        if not address:
            raise ValueError("address must not be empty")

        self.blocked_addresses.add(address)
        logger.info(f"Manually blocked address {address}")

    def unblock_address(self, address: str):
        """Lift a standing address block."""
        if not address:
            raise ValueError("address must not be empty")

        self.blocked_addresses.discard(address)
        logger.info(f"Unblocked address {address}")

    def is_address_blocked(self, address: str) -> bool:
        return address in self.blocked_addresses

    def get_peer_state(self, peer_id: str) -> Optional[PeerState]:
        return self.peers.get(peer_id)

    def cleanup(self) -> int:
        """
        Remove stale peer and address state.

        Peers still flagged as blocked are kept; their block is lifted
        lazily on the next evaluation.

        Returns:
            Number of entries removed
        """
        now = self.clock()
        expiry = self.config.connection_window * 2

        stale_peers: List[str] = [
            peer_id for peer_id, state in self.peers.items()
            if not state.blocked and now - state.last_connection > expiry
        ]
        for peer_id in stale_peers:
            del self.peers[peer_id]

        stale_addresses: List[str] = [
            address for address, state in self.addresses.items()
            if now - state.last_connection > expiry
        ]
        for address in stale_addresses:
            del self.addresses[address]

        logger.debug(
            f"Admission cleanup: {len(self.peers)} peers, "
            f"{len(self.addresses)} addresses tracked"
        )
        return len(stale_peers) + len(stale_addresses)

    def get_stats(self) -> Dict[str, int]:
        """Get admission statistics."""
        now = self.clock()
        window = self.config.connection_window

        return {
            "total_peers": len(self.peers),
            "blocked_peers": sum(
                1 for state in self.peers.values() if state.is_block_active(now)
            ),
            "blocked_addresses": len(self.blocked_addresses),
            "active_connections": sum(
                state.connections for state in self.peers.values()
                if now - state.last_connection < window
            ),
        }

    async def start(self):
        """Start the periodic cleanup sweep."""
        if self._cleanup_task is not None:
            logger.warning("Admission cleanup already running")
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self):
        """Stop the periodic cleanup sweep."""
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        await asyncio.gather(self._cleanup_task, return_exceptions=True)
        self._cleanup_task = None

    async def _cleanup_loop(self):
        """Background task for periodic cleanup."""
        while True:
            try:
                await asyncio.sleep(self.config.cleanup_interval)
                removed = self.cleanup()
                if removed:
                    logger.info(f"Admission cleanup removed {removed} stale entries")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in admission cleanup loop: {e}")
