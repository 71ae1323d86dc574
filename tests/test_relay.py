"""
Storage Request Relay Tests

Test Coverage:
- Request forwarding and exactly-once response delivery
- Timeout sweep and late responses
- Backend selection (first registered, explicit target)
- Routing errors answered to the client
- Wire protocol handling (register, malformed frames)
- Channel close handling
"""

import asyncio
import json

import pytest

from bytecave.p2p.relay import (
    BackendRegistry,
    Channel,
    ChannelClosedError,
    NoBackendAvailable,
    BackendNotConnected,
    RequestRelay,
    RequestState
)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeChannel(Channel):
    """Records every message sent on it."""

    def __init__(self, remote: str = "fake", fail: bool = False):
        self.remote = remote
        self.fail = fail
        self.sent = []

    async def send(self, message):
        if self.fail:
            raise ChannelClosedError(f"{self.remote} is closed")
        self.sent.append(message)

    @property
    def closed(self) -> bool:
        return self.fail


def storage_request(request_id: str, target: str = None) -> dict:
    message = {
        "type": "storage-request",
        "requestId": request_id,
        "data": "aGVsbG8=",
        "contentType": "text/plain"
    }
    if target is not None:
        message["targetPeerId"] = target
    return message


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def relay(clock):
    return RequestRelay(request_timeout=60.0, clock=clock)


class TestForwarding:
    """Request forwarding and response routing."""

    @pytest.mark.asyncio
    async def test_response_is_delivered_exactly_once(self, relay):
        """Request r1 to backend B1, then a duplicate response is discarded."""
        backend = FakeChannel("B1")
        client = FakeChannel("client")
        relay.register_backend("B1", backend)

        state = await relay.submit_request("r1", storage_request("r1"), client)

        assert state == RequestState.FORWARDED
        assert backend.sent == [storage_request("r1")]
        assert "r1" in relay.pending

        response = {"type": "storage-response", "requestId": "r1", "success": True, "cid": "C"}
        assert await relay.deliver_response("r1", response)
        assert client.sent == [response]
        assert "r1" not in relay.pending

        # Second response is a no-op
        assert not await relay.deliver_response("r1", response)
        assert client.sent == [response]
        assert relay.stats["responses_delivered"] == 1
        assert relay.stats["responses_discarded"] == 1

    @pytest.mark.asyncio
    async def test_first_registered_backend_is_selected(self, relay):
        b1, b2 = FakeChannel("B1"), FakeChannel("B2")
        relay.register_backend("B1", b1)
        relay.register_backend("B2", b2)

        await relay.submit_request("r1", storage_request("r1"), FakeChannel())

        assert len(b1.sent) == 1
        assert b2.sent == []
        assert relay.pending["r1"].backend_id == "B1"

    @pytest.mark.asyncio
    async def test_explicit_target_is_used(self, relay):
        b1, b2 = FakeChannel("B1"), FakeChannel("B2")
        relay.register_backend("B1", b1)
        relay.register_backend("B2", b2)

        await relay.submit_request("r1", storage_request("r1"), FakeChannel(), "B2")

        assert b1.sent == []
        assert len(b2.sent) == 1

    @pytest.mark.asyncio
    async def test_unknown_target_is_rejected(self, relay):
        """Target B3 is not registered: error to client, no pending entry."""
        relay.register_backend("B1", FakeChannel("B1"))
        relay.register_backend("B2", FakeChannel("B2"))
        client = FakeChannel("client")

        state = await relay.submit_request("r2", storage_request("r2", "B3"), client, "B3")

        assert state == RequestState.REJECTED
        assert client.sent == [
            {"type": "error", "requestId": "r2", "error": "backend not connected"}
        ]
        assert relay.pending == {}

    @pytest.mark.asyncio
    async def test_no_backend_available(self, relay):
        client = FakeChannel("client")

        state = await relay.submit_request("r1", storage_request("r1"), client)

        assert state == RequestState.REJECTED
        assert client.sent[0]["error"] == "no backend available"
        assert client.sent[0]["requestId"] == "r1"
        assert relay.stats["requests_rejected"] == 1

    @pytest.mark.asyncio
    async def test_duplicate_request_id_is_rejected(self, relay):
        backend = FakeChannel("B1")
        first_client, second_client = FakeChannel("c1"), FakeChannel("c2")
        relay.register_backend("B1", backend)

        await relay.submit_request("r1", storage_request("r1"), first_client)
        state = await relay.submit_request("r1", storage_request("r1"), second_client)

        assert state == RequestState.REJECTED
        assert second_client.sent[0]["error"] == "duplicate request id"
        assert len(backend.sent) == 1
        # Original entry untouched
        assert relay.pending["r1"].origin is first_client

    @pytest.mark.asyncio
    async def test_forward_failure_removes_pending_entry(self, relay):
        relay.register_backend("B1", FakeChannel("B1", fail=True))
        client = FakeChannel("client")

        state = await relay.submit_request("r1", storage_request("r1"), client)

        assert state == RequestState.FORWARD_FAILED
        assert relay.pending == {}
        assert client.sent == [
            {"type": "error", "requestId": "r1", "error": "failed to forward request"}
        ]
        assert relay.stats["forward_failures"] == 1

    @pytest.mark.asyncio
    async def test_response_to_closed_client_is_dropped(self, relay):
        relay.register_backend("B1", FakeChannel("B1"))
        client = FakeChannel("client")
        await relay.submit_request("r1", storage_request("r1"), client)

        client.fail = True
        matched = await relay.deliver_response(
            "r1", {"type": "storage-response", "requestId": "r1", "success": True}
        )

        assert matched
        assert relay.pending == {}


class TestTimeouts:
    """Timeout sweep."""

    @pytest.mark.asyncio
    async def test_expired_request_gets_one_timeout(self, relay, clock):
        relay.register_backend("B1", FakeChannel("B1"))
        client = FakeChannel("client")
        await relay.submit_request("r1", storage_request("r1"), client)

        clock.advance(61)
        assert await relay.expire_requests() == 1
        assert client.sent == [
            {"type": "error", "requestId": "r1", "error": "request timed out"}
        ]

        # Sweeping again does not repeat the notification
        assert await relay.expire_requests() == 0
        assert len(client.sent) == 1

        # Late response is discarded
        assert not await relay.deliver_response(
            "r1", {"type": "storage-response", "requestId": "r1", "success": True}
        )
        assert len(client.sent) == 1

    @pytest.mark.asyncio
    async def test_fresh_requests_survive_sweep(self, relay, clock):
        relay.register_backend("B1", FakeChannel("B1"))
        await relay.submit_request("old", storage_request("old"), FakeChannel())
        clock.advance(40)
        await relay.submit_request("new", storage_request("new"), FakeChannel())
        clock.advance(30)

        assert await relay.expire_requests() == 1
        assert list(relay.pending) == ["new"]

    @pytest.mark.asyncio
    async def test_request_at_exact_timeout_is_kept(self, relay, clock):
        relay.register_backend("B1", FakeChannel("B1"))
        await relay.submit_request("r1", storage_request("r1"), FakeChannel())
        clock.advance(60)

        assert await relay.expire_requests() == 0

    @pytest.mark.asyncio
    async def test_requests_of_departed_backend_time_out(self, relay, clock):
        backend = FakeChannel("B1")
        client = FakeChannel("client")
        relay.register_backend("B1", backend)
        await relay.submit_request("r1", storage_request("r1"), client)

        relay.channel_closed(backend)
        assert "r1" in relay.pending

        clock.advance(61)
        await relay.expire_requests()
        assert client.sent[-1]["error"] == "request timed out"

    @pytest.mark.asyncio
    async def test_sweep_loop(self, clock):
        relay = RequestRelay(request_timeout=60.0, sweep_interval=0.01, clock=clock)
        relay.register_backend("B1", FakeChannel("B1"))
        client = FakeChannel("client")
        await relay.submit_request("r1", storage_request("r1"), client)
        clock.advance(120)

        await relay.start()
        await asyncio.sleep(0.05)
        await relay.stop()

        assert client.sent[-1]["error"] == "request timed out"
        assert relay.stats["timeouts"] == 1


class TestRegistry:
    """Backend registry."""

    def test_reregistration_replaces_channel_and_keeps_order(self, clock):
        registry = BackendRegistry(clock=clock)
        old, new = FakeChannel("old"), FakeChannel("new")
        registry.register("B1", old)
        registry.register("B2", FakeChannel())
        registry.register("B1", new)

        assert registry.get("B1").channel is new
        assert registry.select().backend_id == "B1"
        assert len(registry) == 2

    def test_stale_channel_does_not_evict_new_registration(self, clock):
        registry = BackendRegistry(clock=clock)
        old, new = FakeChannel("old"), FakeChannel("new")
        registry.register("B1", old)
        registry.register("B1", new)

        assert not registry.deregister("B1", old)
        assert "B1" in registry
        assert registry.deregister("B1", new)
        assert "B1" not in registry

    def test_select_errors(self, clock):
        registry = BackendRegistry(clock=clock)

        with pytest.raises(NoBackendAvailable):
            registry.select(request_id="r1")

        registry.register("B1", FakeChannel())
        with pytest.raises(BackendNotConnected) as exc_info:
            registry.select("B9", "r1")
        assert exc_info.value.backend_id == "B9"
        assert exc_info.value.request_id == "r1"

    def test_empty_backend_id_raises(self, clock):
        with pytest.raises(ValueError):
            BackendRegistry(clock=clock).register("", FakeChannel())


class TestWireProtocol:
    """Frames handled by handle_message."""

    @pytest.mark.asyncio
    async def test_register_confirms_with_timestamp(self, relay, clock):
        channel = FakeChannel("node")

        await relay.handle_message(
            channel, json.dumps({"type": "register", "peerId": "B1", "nodeId": "node-1"})
        )

        assert "B1" in relay.registry
        assert relay.registry.get("B1").node_name == "node-1"
        assert channel.sent == [
            {"type": "registered", "peerId": "B1", "timestamp": int(clock() * 1000)}
        ]

    @pytest.mark.asyncio
    async def test_full_round_trip_through_frames(self, relay):
        node, client = FakeChannel("node"), FakeChannel("client")
        await relay.handle_message(node, json.dumps({"type": "register", "peerId": "B1"}))

        request = storage_request("r1", "B1")
        request["authorization"] = {"signature": "0xabc", "sender": "0x1"}
        await relay.handle_message(client, json.dumps(request))

        forwarded = node.sent[-1]
        assert forwarded["type"] == "storage-request"
        assert forwarded["requestId"] == "r1"
        assert forwarded["authorization"] == {"signature": "0xabc", "sender": "0x1"}
        assert "targetPeerId" not in forwarded

        await relay.handle_message(node, json.dumps({
            "type": "storage-response", "requestId": "r1", "success": True, "cid": "bafy"
        }))

        assert client.sent == [
            {"type": "storage-response", "requestId": "r1", "success": True, "cid": "bafy"}
        ]

    @pytest.mark.asyncio
    async def test_failed_response_is_forwarded(self, relay):
        node, client = FakeChannel("node"), FakeChannel("client")
        relay.register_backend("B1", node)
        await relay.handle_message(client, json.dumps(storage_request("r1")))

        await relay.handle_message(node, json.dumps({
            "type": "storage-response", "requestId": "r1", "success": False, "error": "disk full"
        }))

        assert client.sent[0]["success"] is False
        assert client.sent[0]["error"] == "disk full"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw,expected", [
        ("not json", "invalid message format"),
        ("[1, 2]", "invalid message format"),
        (json.dumps({"type": "ping"}), "unknown message type"),
        (json.dumps({"requestId": "r1"}), "unknown message type"),
        (json.dumps({"type": "register"}), "missing peerId in register message"),
        (json.dumps({"type": "register", "peerId": ""}), "missing peerId in register message"),
        (
            json.dumps({"type": "storage-request", "requestId": "r1"}),
            "missing required fields in storage request"
        ),
    ])
    async def test_malformed_frames_get_error_reply(self, relay, raw, expected):
        channel = FakeChannel()

        await relay.handle_message(channel, raw)

        assert len(channel.sent) == 1
        assert channel.sent[0]["type"] == "error"
        assert channel.sent[0]["error"] == expected
        assert relay.pending == {}
        assert len(relay.registry) == 0

    @pytest.mark.asyncio
    async def test_incomplete_request_error_carries_request_id(self, relay):
        channel = FakeChannel()

        await relay.handle_message(
            channel, json.dumps({"type": "storage-request", "requestId": "r7"})
        )

        assert channel.sent == [{
            "type": "error",
            "requestId": "r7",
            "error": "missing required fields in storage request"
        }]

    @pytest.mark.asyncio
    async def test_channel_close_deregisters_backend(self, relay):
        node = FakeChannel("node")
        await relay.handle_message(node, json.dumps({"type": "register", "peerId": "B1"}))

        assert relay.channel_closed(node) == "B1"
        assert len(relay.registry) == 0
        assert relay.channel_closed(FakeChannel()) is None

    @pytest.mark.asyncio
    async def test_stop_clears_state(self, relay):
        relay.register_backend("B1", FakeChannel("B1"))
        await relay.submit_request("r1", storage_request("r1"), FakeChannel())

        await relay.start()
        await relay.stop()

        assert relay.pending == {}
        assert len(relay.registry) == 0

    def test_stats(self, relay):
        relay.register_backend("B1abcdefghijklmnop", FakeChannel(), "node-1")

        stats = relay.get_stats()

        assert stats["connected_nodes"] == 1
        assert stats["pending_requests"] == 0
        assert stats["nodes"][0]["peer_id"] == "B1abcdefghij"
        assert stats["nodes"][0]["node_id"] == "node-1"

    @pytest.mark.asyncio
    async def test_pending_requests_counted_per_node(self, relay):
        relay.register_backend("B1", FakeChannel("B1"))
        relay.register_backend("B2", FakeChannel("B2"))
        await relay.submit_request("r1", storage_request("r1"), FakeChannel())
        await relay.submit_request("r2", storage_request("r2"), FakeChannel())
        await relay.submit_request("r3", storage_request("r3"), FakeChannel(), "B2")

        assert relay.get_stats()["pending_by_node"] == {"B1": 2, "B2": 1}
