"""
Relay Node Tests

Test Coverage:
- Admission gating of peer connections
- Bandwidth disconnects
- Storage node tracking from announcements
- Directory protocol
- HTTP endpoint announcement
- Node statistics
"""

import json
from typing import List, Optional

import pytest

from bytecave.core.config import RateLimitConfig, RelayConfig
from bytecave.p2p.directory import PROTOCOL_PEER_DIRECTORY, decode_directory_response
from bytecave.p2p.host import (
    PEER_CONNECT,
    PEER_DISCONNECT,
    NetworkHost,
    PeerEvent,
    PubsubMessage,
    Stream
)
from bytecave.p2p.node import ANNOUNCE_TOPIC, BROADCAST_TOPIC, RelayNode


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class FakeHost(NetworkHost):
    """In-memory host driven by the test."""

    def __init__(self, peer_id: str = "relay-peer"):
        super().__init__(peer_id)
        self.peers: List[str] = []
        self.hung_up: List[str] = []
        self.published: List[tuple] = []
        self.dialed: List[str] = []
        self.started = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.started = False

    async def subscribe(self, topic: str):
        self.topics.add(topic)

    async def publish(self, topic: str, data: bytes) -> int:
        self.published.append((topic, data))
        return len(self.peers)

    async def dial(self, address: str) -> Optional[str]:
        self.dialed.append(address)
        return None

    async def hang_up(self, peer_id: str):
        if peer_id in self.peers:
            self.peers.remove(peer_id)
            self.hung_up.append(peer_id)
            await self._emit_peer_event(PEER_DISCONNECT, PeerEvent(peer_id))

    def get_peers(self) -> List[str]:
        return list(self.peers)

    def get_addresses(self) -> List[str]:
        return ["/ip4/203.0.113.5/tcp/4001"]

    # Test drivers

    async def connect(self, peer_id: str, address: Optional[str] = None):
        self.peers.append(peer_id)
        await self._emit_peer_event(PEER_CONNECT, PeerEvent(peer_id, address))

    async def disconnect(self, peer_id: str):
        self.peers.remove(peer_id)
        await self._emit_peer_event(PEER_DISCONNECT, PeerEvent(peer_id))

    async def deliver(self, topic: str, sender: str, payload):
        data = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        await self._emit_message(PubsubMessage(topic=topic, sender=sender, data=data))

    async def open_stream(self, protocol: str) -> "RecordingStream":
        stream = RecordingStream("client-peer", protocol)
        await self._stream_handlers[protocol](stream)
        return stream


class RecordingStream(Stream):
    def __init__(self, remote_peer: str, protocol: str):
        self.remote_peer = remote_peer
        self.protocol = protocol
        self.data = b""
        self.closed = False

    async def write(self, data: bytes):
        self.data += data

    async def close(self):
        self.closed = True


def make_node(clock=None, **limits) -> RelayNode:
    config = RelayConfig(rate_limit=RateLimitConfig(**limits))
    return RelayNode(FakeHost(), config, clock=clock or FakeClock())


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_subscribes_and_dials_bootstrap_peers(self):
        config = RelayConfig(bootstrap_peers=["10.0.0.1:4001", "10.0.0.2:4001"])
        host = FakeHost()
        node = RelayNode(host, config, clock=FakeClock())

        await node.start()

        assert host.started
        assert host.topics == {ANNOUNCE_TOPIC, BROADCAST_TOPIC}
        assert host.dialed == ["10.0.0.1:4001", "10.0.0.2:4001"]
        assert PROTOCOL_PEER_DIRECTORY in host.get_protocols()
        assert node.running

        await node.stop()
        assert not host.started
        assert not node.running


class TestAdmission:
    """Connections gated by the admission controller."""

    @pytest.mark.asyncio
    async def test_rate_exceeded_peer_is_hung_up(self):
        node = make_node(max_connections_per_peer=2)
        host = node.host

        await host.connect("peer-P", "10.0.0.1")
        await host.disconnect("peer-P")
        await host.connect("peer-P", "10.0.0.1")
        await host.disconnect("peer-P")
        await host.connect("peer-P", "10.0.0.1")

        # Two disconnections freed the count, so the third is admitted
        assert "peer-P" in node.connected

        await host.connect("peer-Q")
        await host.connect("peer-Q")
        await host.connect("peer-Q")

        assert host.hung_up == ["peer-Q"]
        assert node.rejected_connections == 1
        assert node.admission.get_peer_state("peer-Q").blocked

    @pytest.mark.asyncio
    async def test_rejected_peer_disconnect_is_not_counted(self):
        node = make_node(max_connections_per_peer=2)
        node.admission.evaluate_connection("peer-A")
        node.admission.evaluate_connection("peer-A")

        await node.host.connect("peer-A")  # Rejected and hung up

        assert node.host.hung_up == ["peer-A"]
        assert "peer-A" not in node.connected
        assert node.admission.get_peer_state("peer-A").connections == 2

    @pytest.mark.asyncio
    async def test_disconnect_records_with_admission(self):
        node = make_node()
        host = node.host

        await host.connect("peer-A")
        await host.disconnect("peer-A")

        assert "peer-A" not in node.connected
        assert node.admission.get_peer_state("peer-A").connections == 0

    @pytest.mark.asyncio
    async def test_blocked_address_is_rejected(self):
        node = make_node()
        node.admission.block_address("198.51.100.7")

        await node.host.connect("peer-A", "198.51.100.7")

        assert node.host.hung_up == ["peer-A"]
        assert node.rejected_connections == 1

    @pytest.mark.asyncio
    async def test_bandwidth_overrun_disconnects_peer(self):
        node = make_node(max_bandwidth_per_peer_mbps=8.0)
        host = node.host
        await host.connect("peer-A")

        await host._emit_traffic("peer-A", 1024)
        assert host.hung_up == []

        await host._emit_traffic("peer-A", 2 * 1024 * 1024)

        assert host.hung_up == ["peer-A"]
        assert node.bandwidth_disconnects == 1
        assert "peer-A" not in node.connected


class TestAnnouncements:
    """Storage node tracking."""

    @pytest.mark.asyncio
    async def test_storage_node_announcement_is_tracked(self):
        node = make_node()
        await node.start()

        await node.host.deliver(ANNOUNCE_TOPIC, "storage-1", {
            "peerId": "storage-1", "nodeId": "node-eu-1", "httpEndpoint": "http://x"
        })

        info = node.directory.nodes["storage-1"]
        assert info.multiaddrs == ["/ip4/203.0.113.5/tcp/4001/p2p-circuit/p2p/storage-1"]
        await node.stop()

    @pytest.mark.asyncio
    async def test_announce_addresses_are_served_when_configured(self):
        config = RelayConfig(announce_addresses=["/dns4/relay.example.com/tcp/4001"])
        node = RelayNode(FakeHost(), config, clock=FakeClock())
        await node.start()

        await node.host.deliver(ANNOUNCE_TOPIC, "storage-1", {"nodeId": "node-eu-1"})
        stream = await node.host.open_stream(PROTOCOL_PEER_DIRECTORY)

        body = decode_directory_response(stream.data)
        assert body["peers"][0]["multiaddrs"] == [
            "/dns4/relay.example.com/tcp/4001/p2p-circuit/p2p/storage-1"
        ]
        assert node.get_stats()["addresses"] == ["/dns4/relay.example.com/tcp/4001"]
        await node.stop()

    @pytest.mark.asyncio
    async def test_relay_and_anonymous_announcements_are_ignored(self):
        node = make_node()
        await node.start()

        await node.host.deliver(ANNOUNCE_TOPIC, "relay-2", {"nodeId": "relay", "isRelay": True})
        await node.host.deliver(ANNOUNCE_TOPIC, "peer-x", {"peerId": "peer-x"})
        await node.host.deliver(ANNOUNCE_TOPIC, "peer-y", b"\xff not json")
        await node.host.deliver(BROADCAST_TOPIC, "peer-z", {"nodeId": "node-z"})

        assert len(node.directory) == 0
        await node.stop()

    @pytest.mark.asyncio
    async def test_directory_protocol_serves_snapshot(self):
        node = make_node()
        node.directory.track("storage-1", ["/ip4/1.2.3.4/tcp/4001/p2p-circuit/p2p/storage-1"])

        stream = await node.host.open_stream(PROTOCOL_PEER_DIRECTORY)

        assert stream.closed
        body = decode_directory_response(stream.data)
        assert body["peers"][0]["peerId"] == "storage-1"
        assert body["timestamp"] == 1_700_000_000_000

    @pytest.mark.asyncio
    async def test_announce_http_endpoint(self):
        node = make_node()
        await node.host.connect("peer-A")

        sent = await node.announce_http_endpoint("https://relay.example.com")

        assert sent == 1
        topic, data = node.host.published[0]
        announcement = json.loads(data)
        assert topic == ANNOUNCE_TOPIC
        assert announcement == {
            "peerId": "relay-peer",
            "httpEndpoint": "https://relay.example.com",
            "contentTypes": "all",
            "nodeId": "relay",
            "isRelay": True,
            "timestamp": 1_700_000_000_000
        }


class TestStats:
    @pytest.mark.asyncio
    async def test_stats_before_and_after_start(self):
        clock = FakeClock()
        node = make_node(clock=clock)

        assert node.get_stats()["peer_id"] == ""
        assert node.get_stats()["uptime"] == 0

        await node.start()
        await node.host.connect("peer-A", "10.0.0.1")
        clock.now += 125

        stats = node.get_stats()
        assert stats["peer_id"] == "relay-peer"
        assert stats["uptime"] == 125
        assert stats["connections"] == 1
        assert stats["addresses"] == ["/ip4/203.0.113.5/tcp/4001"]
        assert stats["rate_limit"]["total_peers"] == 1
        await node.stop()
