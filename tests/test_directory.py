"""
Peer Directory Tests

Test Coverage:
- Tracking and refreshing storage nodes
- Stale node pruning
- Length-prefixed response encoding
"""

import json
import struct

import pytest

from bytecave.p2p.directory import (
    PeerDirectory,
    decode_directory_response,
    encode_directory_response
)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class TestPeerDirectory:
    """Directory contents."""

    def test_track_and_snapshot(self):
        clock = FakeClock()
        directory = PeerDirectory(clock=clock)

        directory.track("node-1", ["/ip4/1.2.3.4/tcp/4001/p2p-circuit/p2p/node-1"])
        body = directory.snapshot()

        assert body == {
            "peers": [{
                "peerId": "node-1",
                "multiaddrs": ["/ip4/1.2.3.4/tcp/4001/p2p-circuit/p2p/node-1"],
                "lastSeen": 1_700_000_000_000
            }],
            "timestamp": 1_700_000_000_000
        }

    def test_track_refreshes_last_seen(self):
        clock = FakeClock()
        directory = PeerDirectory(clock=clock)

        directory.track("node-1", [])
        clock.now += 100
        directory.track("node-1", ["/ip4/5.6.7.8/tcp/4001"])

        assert len(directory) == 1
        assert directory.nodes["node-1"].last_seen == clock.now
        assert directory.nodes["node-1"].multiaddrs == ["/ip4/5.6.7.8/tcp/4001"]

    def test_prune_stale(self):
        clock = FakeClock()
        directory = PeerDirectory(stale_threshold=300.0, clock=clock)

        directory.track("old", [])
        clock.now += 200
        directory.track("recent", [])
        clock.now += 150

        assert directory.prune_stale() == 1
        assert list(directory.nodes) == ["recent"]


class TestDirectoryCodec:
    """Length-prefixed JSON responses."""

    def test_length_prefix_is_big_endian(self):
        body = {"peers": [], "timestamp": 1}

        data = encode_directory_response(body)
        payload = json.dumps(body).encode("utf-8")

        assert data[:4] == struct.pack(">I", len(payload))
        assert data[4:] == payload
        assert decode_directory_response(data) == body

    def test_decode_rejects_truncated_data(self):
        data = encode_directory_response({"peers": [], "timestamp": 1})

        with pytest.raises(ValueError):
            decode_directory_response(data[:3])
        with pytest.raises(ValueError):
            decode_directory_response(data[:-1])

    def test_decode_rejects_oversized_length(self):
        with pytest.raises(ValueError):
            decode_directory_response(struct.pack(">I", 11 * 1024 * 1024) + b"{}")

    def test_decode_rejects_body_without_peers(self):
        payload = json.dumps({"timestamp": 1}).encode("utf-8")

        with pytest.raises(ValueError):
            decode_directory_response(struct.pack(">I", len(payload)) + payload)
