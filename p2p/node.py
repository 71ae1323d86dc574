"""
Relay Node - Connection brokering for the ByteCave storage network.

The relay node:
- Gates every peer connection through the admission controller
- Disconnects peers that exceed their bandwidth ceiling
- Tracks storage nodes from announcements on the announce topic
- Serves the storage node directory to peers
- Announces its own HTTP endpoint

This node does NOT store data - it only facilitates connections.
"""

import asyncio
import json
import logging
import time
from typing import Callable, Dict, List, Optional, Set

from bytecave.core.config import RelayConfig
from bytecave.p2p.admission import AdmissionController
from bytecave.p2p.directory import (
    PROTOCOL_PEER_DIRECTORY,
    PeerDirectory,
    encode_directory_response
)
from bytecave.p2p.host import (
    PEER_CONNECT,
    PEER_DISCONNECT,
    NetworkHost,
    PeerEvent,
    PubsubMessage,
    Stream
)

logger = logging.getLogger(__name__)


ANNOUNCE_TOPIC = "bytecave-announce"
BROADCAST_TOPIC = "bytecave-broadcast"


class RelayNode:
    """
    Relay node wiring the admission controller and peer directory to a
    network host.
    """

    def __init__(
        self,
        host: NetworkHost,
        config: Optional[RelayConfig] = None,
        admission: Optional[AdmissionController] = None,
        directory: Optional[PeerDirectory] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize relay node.

        Args:
            host: Network host providing events, pubsub and streams
            config: Relay configuration
            admission: Admission controller (built from config if not given)
            directory: Storage node directory (built from config if not given)
            clock: Time source returning seconds
        """
        self.host = host
        self.config = config or RelayConfig()
        self.clock = clock
        self.admission = admission or AdmissionController(self.config.rate_limit, clock=clock)
        self.directory = directory or PeerDirectory(
            stale_threshold=self.config.stale_node_threshold, clock=clock
        )

        # Admitted, currently connected peers
        self.connected: Set[str] = set()
        self.rejected_connections = 0
        self.bandwidth_disconnects = 0

        self.start_time: Optional[float] = None
        self._background_tasks: List[asyncio.Task] = []

        self.host.on(PEER_CONNECT, self._on_peer_connect)
        self.host.on(PEER_DISCONNECT, self._on_peer_disconnect)
        self.host.add_traffic_listener(self._on_traffic)
        self.host.add_message_listener(self._on_pubsub_message)
        self.host.handle(PROTOCOL_PEER_DIRECTORY, self._serve_directory)

    @property
    def peer_id(self) -> str:
        return self.host.peer_id

    @property
    def running(self) -> bool:
        return self.start_time is not None

    async def start(self):
        """Start the host, subscriptions and maintenance loops."""
        if self.running:
            logger.warning("Relay node already running")
            return

        logger.info("Starting ByteCave relay node...")

        await self.host.start()
        await self.host.subscribe(ANNOUNCE_TOPIC)
        await self.host.subscribe(BROADCAST_TOPIC)
        logger.info(f"Subscribed to {ANNOUNCE_TOPIC} and {BROADCAST_TOPIC}")

        await self.admission.start()
        self._background_tasks.append(asyncio.create_task(self._prune_loop()))

        self.start_time = self.clock()

        logger.info(f"Relay node started: {self.peer_id[:16]}...")
        for address in self.host.get_addresses():
            logger.info(f"  Listening on {address}")
        logger.info(f"Registered protocols: {self.host.get_protocols()}")

        await self._dial_bootstrap_peers()

    async def stop(self):
        """Stop maintenance loops and the host."""
        if not self.running:
            return

        logger.info("Stopping relay node...")

        for task in self._background_tasks:
            task.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        await self.admission.stop()
        await self.host.stop()

        self.connected.clear()
        self.start_time = None
        logger.info("Relay node stopped")

    def get_addresses(self) -> List[str]:
        """Dialable addresses: configured announce addresses, else the host's listen addresses."""
        if self.config.announce_addresses:
            return list(self.config.announce_addresses)
        return self.host.get_addresses()

    async def _dial_bootstrap_peers(self):
        for address in self.config.bootstrap_peers:
            peer_id = await self.host.dial(address)
            if peer_id is None:
                logger.warning(f"Bootstrap peer unreachable: {address}")

    async def _on_peer_connect(self, event: PeerEvent):
        decision = self.admission.evaluate_connection(event.peer_id, event.address)

        if not decision.allowed:
            self.rejected_connections += 1
            logger.info(
                f"Connection rejected: {event.peer_id[:16]}... - {decision.reason.value}"
            )
            await self.host.hang_up(event.peer_id)
            return

        self.connected.add(event.peer_id)
        logger.info(
            f"Peer connected: {event.peer_id[:16]}... ({len(self.connected)} total)"
        )

    async def _on_peer_disconnect(self, event: PeerEvent):
        if event.peer_id not in self.connected:
            return

        self.connected.discard(event.peer_id)
        self.admission.record_disconnection(event.peer_id)
        logger.info(
            f"Peer disconnected: {event.peer_id[:16]}... ({len(self.connected)} total)"
        )

    async def _on_traffic(self, peer_id: str, byte_count: int):
        decision = self.admission.record_bandwidth(peer_id, byte_count)
        if not decision.allowed:
            self.bandwidth_disconnects += 1
            logger.warning(f"Disconnecting {peer_id[:16]}...: {decision.reason.value}")
            await self.host.hang_up(peer_id)

    async def _on_pubsub_message(self, message: PubsubMessage):
        if message.topic != ANNOUNCE_TOPIC:
            return

        logger.debug(f"Peer announcement received from {message.sender[:16]}...")

        try:
            announcement = json.loads(message.data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.debug(f"Ignoring unparseable announcement from {message.sender[:16]}...")
            return

        if not isinstance(announcement, dict):
            return
        if not announcement.get("nodeId") or announcement.get("isRelay"):
            return

        # Storage nodes are reached through this relay
        multiaddrs = [
            f"{address}/p2p-circuit/p2p/{message.sender}"
            for address in self.get_addresses()
        ]
        self.directory.track(message.sender, multiaddrs)
        logger.info(
            f"Tracked storage node: {announcement['nodeId']} ({message.sender[:12]}...)"
        )

    async def _serve_directory(self, stream: Stream):
        try:
            body = self.directory.snapshot()
            await stream.write(encode_directory_response(body))
            await stream.close()
            logger.info(f"Sent peer directory: {len(body['peers'])} peers")
        except Exception as e:
            logger.error(f"Peer directory error: {e}")

    async def announce_http_endpoint(self, http_url: str) -> int:
        """
        Publish this relay's HTTP endpoint on the announce topic.

        Returns:
            Number of peers the announcement was sent to
        """
        announcement = {
            "peerId": self.peer_id,
            "httpEndpoint": http_url,
            "contentTypes": "all",
            "nodeId": "relay",
            "isRelay": True,
            "timestamp": int(self.clock() * 1000)
        }
        sent = await self.host.publish(
            ANNOUNCE_TOPIC, json.dumps(announcement).encode("utf-8")
        )
        logger.info(f"Announced HTTP endpoint: {http_url}")
        return sent

    async def _prune_loop(self):
        """Background task removing storage nodes that stopped announcing."""
        while True:
            try:
                await asyncio.sleep(self.config.stale_node_sweep_interval)
                self.directory.prune_stale()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in directory prune loop: {e}")

    def get_stats(self) -> Dict:
        """Get node statistics."""
        if not self.running:
            return {
                "peer_id": "",
                "uptime": 0,
                "connections": 0,
                "rejected_connections": self.rejected_connections,
                "bandwidth_disconnects": self.bandwidth_disconnects,
                "storage_nodes": len(self.directory),
                "addresses": [],
                "rate_limit": self.admission.get_stats()
            }

        return {
            "peer_id": self.peer_id,
            "uptime": int(self.clock() - self.start_time),
            "connections": len(self.host.get_peers()),
            "rejected_connections": self.rejected_connections,
            "bandwidth_disconnects": self.bandwidth_disconnects,
            "storage_nodes": len(self.directory),
            "addresses": self.get_addresses(),
            "rate_limit": self.admission.get_stats()
        }
