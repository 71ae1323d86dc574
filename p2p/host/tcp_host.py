"""
Framed TCP Network Host

Minimal NetworkHost over TCP so the relay can run without an external
peer-to-peer library.

Features:
- HELLO handshake exchanging peer IDs
- Message framing: [type:1byte][length:4bytes big-endian][payload]
- msgpack-encoded payloads
- Topic subscribe/publish with one-hop fan-out
- Protocol streams (request opens, handler output returned in one frame)
- Per-frame traffic events for bandwidth accounting
"""

import asyncio
import logging
import struct
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

import msgpack

from .base import (
    PEER_CONNECT,
    PEER_DISCONNECT,
    NetworkHost,
    PeerEvent,
    PubsubMessage,
    Stream
)

logger = logging.getLogger(__name__)


# Transport constants
MAX_CONNECTIONS = 1000  # Maximum concurrent connections
HEADER_SIZE = 5
MESSAGE_SIZE_LIMIT = 10 * 1024 * 1024  # 10MB max frame payload
CONNECTION_TIMEOUT = 10  # Seconds allowed for dial and handshake
STREAM_TIMEOUT = 30  # Seconds to wait for a stream response


class MessageType(Enum):
    """Types of host frames."""

    HELLO = 0x01
    HEARTBEAT = 0x02
    SUBSCRIBE = 0x03
    PUBLISH = 0x04
    STREAM_OPEN = 0x05
    STREAM_DATA = 0x06


@dataclass
class Frame:
    """
    Host frame.

    Format: [type:1byte][length:4bytes][payload:N bytes]
    """

    msg_type: MessageType
    payload: bytes = b""

    @classmethod
    def build(cls, msg_type: MessageType, body: Optional[Dict[str, Any]] = None) -> "Frame":
        payload = msgpack.packb(body, use_bin_type=True) if body is not None else b""
        return cls(msg_type=msg_type, payload=payload)

    def body(self) -> Dict[str, Any]:
        """Decode the msgpack payload into a dict."""
        try:
            decoded = msgpack.unpackb(self.payload, raw=False)
        except Exception as e:
            raise ValueError(f"Undecodable {self.msg_type.name} payload: {e}") from e
        if not isinstance(decoded, dict):
            raise ValueError(f"{self.msg_type.name} payload is not a map")
        return decoded

    def to_bytes(self) -> bytes:
        """Serialize frame to wire format."""
        return struct.pack(">BI", self.msg_type.value, len(self.payload)) + self.payload

    @staticmethod
    def from_bytes(data: bytes) -> "Frame":
        """Deserialize frame from wire format."""
        if len(data) < HEADER_SIZE:
            raise ValueError("Frame too short")

        msg_type_val, payload_length = struct.unpack(">BI", data[:HEADER_SIZE])

        if payload_length > MESSAGE_SIZE_LIMIT:
            raise ValueError(f"Frame too large: {payload_length} bytes")

        if len(data) < HEADER_SIZE + payload_length:
            raise ValueError("Incomplete frame")

        return Frame(
            msg_type=MessageType(msg_type_val),
            payload=data[HEADER_SIZE:HEADER_SIZE + payload_length]
        )


async def read_frame(reader: asyncio.StreamReader) -> Frame:
    """Read one frame from a stream."""
    header = await reader.readexactly(HEADER_SIZE)
    msg_type_val, payload_length = struct.unpack(">BI", header)

    if payload_length > MESSAGE_SIZE_LIMIT:
        raise ValueError(f"Frame too large: {payload_length} bytes")

    payload = await reader.readexactly(payload_length)
    return Frame(msg_type=MessageType(msg_type_val), payload=payload)


@dataclass
class PeerConnection:
    """Represents an active connection to a peer."""

    peer_id: str
    address: str  # IP:port
    ip: Optional[str]
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter

    topics: Set[str] = field(default_factory=set)  # Topics the peer subscribed to
    connected_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)

    bytes_sent: int = 0
    bytes_received: int = 0


class FrameStream(Stream):
    """Buffers handler output and returns it as one STREAM_DATA frame on close."""

    def __init__(self, host: "TCPHost", connection: PeerConnection, protocol: str):
        self.host = host
        self.connection = connection
        self.remote_peer = connection.peer_id
        self.protocol = protocol
        self._buffer = bytearray()
        self._closed = False

    async def write(self, data: bytes):
        if self._closed:
            raise RuntimeError(f"Stream {self.protocol} already closed")
        self._buffer.extend(data)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        await self.host._send_frame(
            self.connection,
            Frame.build(
                MessageType.STREAM_DATA,
                {"protocol": self.protocol, "data": bytes(self._buffer)}
            )
        )


class TCPHost(NetworkHost):
    """
    TCP-based network host.

    Manages connections, message framing, topics and protocol streams.
    """

    def __init__(
        self,
        peer_id: str,
        listen_host: str = "0.0.0.0",
        listen_port: int = 4001,
        max_connections: int = MAX_CONNECTIONS
    ):
        """
        Initialize TCP host.

        Args:
            peer_id: Our node's peer ID
            listen_host: Host to listen on
            listen_port: Port to listen on (0 picks a free port)
            max_connections: Connection cap
        """
        super().__init__(peer_id)
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.max_connections = max_connections

        # Active connections (peer_id -> PeerConnection)
        self.connections: Dict[str, PeerConnection] = {}

        self.server: Optional[asyncio.AbstractServer] = None
        self._tasks: Set[asyncio.Task] = set()
        self._stream_waiters: Dict[Tuple[str, str], asyncio.Future] = {}

        # Statistics
        self.stats = {
            "connections_accepted": 0,
            "connections_initiated": 0,
            "connections_failed": 0,
            "messages_sent": 0,
            "messages_received": 0,
            "bytes_sent": 0,
            "bytes_received": 0
        }

    async def start(self):
        """Start TCP server to accept incoming connections."""
        self.server = await asyncio.start_server(
            self._handle_incoming_connection,
            self.listen_host,
            self.listen_port
        )
        # Resolve port 0 to the bound port
        self.listen_port = self.server.sockets[0].getsockname()[1]
        logger.info(f"Host listening on {self.listen_host}:{self.listen_port}")

    async def stop(self):
        """Close all connections and the listener."""
        logger.info("Shutting down host...")

        for peer_id in list(self.connections):
            await self.hang_up(peer_id)

        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        logger.info("Host shutdown complete")

    def get_peers(self) -> List[str]:
        return list(self.connections)

    def get_addresses(self) -> List[str]:
        if self.server is None:
            return []
        return [f"/ip4/{self.listen_host}/tcp/{self.listen_port}"]

    async def _handle_incoming_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter
    ):
        """Handshake an accepted connection, then serve its frames."""
        peername = writer.get_extra_info("peername")
        ip = peername[0] if peername else None
        address = f"{peername[0]}:{peername[1]}" if peername else "unknown"

        try:
            hello = await asyncio.wait_for(read_frame(reader), timeout=CONNECTION_TIMEOUT)
            if hello.msg_type != MessageType.HELLO:
                raise ValueError(f"Expected HELLO, got {hello.msg_type.name}")
            peer_id = hello.body().get("peer_id")
            if not isinstance(peer_id, str) or not peer_id:
                raise ValueError("HELLO without peer_id")
        except (asyncio.TimeoutError, asyncio.IncompleteReadError, ValueError) as e:
            logger.warning(f"Handshake with {address} failed: {e}")
            await self._close_writer(writer)
            return

        if not self._can_accept(peer_id, address):
            await self._close_writer(writer)
            return

        connection = PeerConnection(
            peer_id=peer_id, address=address, ip=ip, reader=reader, writer=writer
        )
        self.stats["connections_accepted"] += 1
        if await self._register(connection, send_hello=True):
            await self._handle_peer_frames(connection)

    def _can_accept(self, peer_id: str, address: str) -> bool:
        if peer_id in self.connections:
            logger.warning(f"Duplicate connection from {peer_id[:16]}... at {address}, rejecting")
            return False
        if len(self.connections) >= self.max_connections:
            logger.warning(f"Max connections reached, rejecting {address}")
            return False
        return True

    async def dial(self, address: str) -> Optional[str]:
        """
        Connect to a remote host.

        Args:
            address: Remote address (IP:port)

        Returns:
            Remote peer ID if connected, None otherwise
        """
        try:
            host, port = address.rsplit(":", 1)
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, int(port)),
                timeout=CONNECTION_TIMEOUT
            )
        except (OSError, ValueError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to connect to {address}: {e}")
            self.stats["connections_failed"] += 1
            return None

        try:
            writer.write(Frame.build(MessageType.HELLO, {"peer_id": self.peer_id}).to_bytes())
            await writer.drain()
            hello = await asyncio.wait_for(read_frame(reader), timeout=CONNECTION_TIMEOUT)
            if hello.msg_type != MessageType.HELLO:
                raise ValueError(f"Expected HELLO, got {hello.msg_type.name}")
            peer_id = hello.body().get("peer_id")
            if not isinstance(peer_id, str) or not peer_id:
                raise ValueError("HELLO without peer_id")
        except (OSError, ValueError, asyncio.TimeoutError, asyncio.IncompleteReadError) as e:
            logger.error(f"Handshake with {address} failed: {e}")
            self.stats["connections_failed"] += 1
            await self._close_writer(writer)
            return None

        if not self._can_accept(peer_id, address):
            await self._close_writer(writer)
            return None

        connection = PeerConnection(
            peer_id=peer_id,
            address=address,
            ip=host,
            reader=reader,
            writer=writer
        )
        self.stats["connections_initiated"] += 1
        logger.info(f"Connected to {peer_id[:16]}... at {address}")

        if not await self._register(connection, send_hello=False):
            return None

        task = asyncio.create_task(self._handle_peer_frames(connection))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return peer_id

    async def _register(self, connection: PeerConnection, send_hello: bool) -> bool:
        """
        Register a handshaken connection and notify listeners.

        Returns:
            False if a connect listener hung up on the peer
        """
        peer_id = connection.peer_id
        self.connections[peer_id] = connection

        if send_hello:
            await self._send_frame(
                connection, Frame.build(MessageType.HELLO, {"peer_id": self.peer_id})
            )
        for topic in self.topics:
            await self._send_frame(connection, Frame.build(MessageType.SUBSCRIBE, {"topic": topic}))

        await self._emit_peer_event(PEER_CONNECT, PeerEvent(peer_id=peer_id, address=connection.ip))

        return self.connections.get(peer_id) is connection

    async def _handle_peer_frames(self, connection: PeerConnection):
        """Serve frames from a peer until the connection ends."""
        try:
            while True:
                frame = await read_frame(connection.reader)
                size = HEADER_SIZE + len(frame.payload)

                connection.bytes_received += size
                connection.last_activity = time.time()
                self.stats["messages_received"] += 1
                self.stats["bytes_received"] += size

                await self._emit_traffic(connection.peer_id, size)
                if self.connections.get(connection.peer_id) is not connection:
                    break

                try:
                    await self._dispatch_frame(connection, frame)
                except ValueError as e:
                    logger.warning(f"Malformed frame from {connection.peer_id[:16]}...: {e}")

        except asyncio.IncompleteReadError:
            logger.info(f"Connection closed by {connection.peer_id[:16]}...")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error handling frames from {connection.peer_id[:16]}...: {e}")
        finally:
            if self.connections.get(connection.peer_id) is connection:
                del self.connections[connection.peer_id]
                await self._close_writer(connection.writer)
                await self._emit_peer_event(
                    PEER_DISCONNECT, PeerEvent(peer_id=connection.peer_id, address=connection.ip)
                )

    async def _dispatch_frame(self, connection: PeerConnection, frame: Frame):
        if frame.msg_type == MessageType.HEARTBEAT:
            return

        body = frame.body()

        if frame.msg_type == MessageType.SUBSCRIBE:
            connection.topics.add(str(body.get("topic")))

        elif frame.msg_type == MessageType.PUBLISH:
            topic = str(body.get("topic"))
            data = body.get("data") or b""
            sender = str(body.get("sender") or connection.peer_id)
            await self._emit_message(PubsubMessage(topic=topic, sender=sender, data=data))
            if not body.get("relayed"):
                await self._fan_out(
                    topic,
                    {"topic": topic, "sender": sender, "data": data, "relayed": True},
                    exclude=connection.peer_id
                )

        elif frame.msg_type == MessageType.STREAM_OPEN:
            protocol = str(body.get("protocol"))
            handler = self._stream_handlers.get(protocol)
            if handler is None:
                logger.warning(f"No handler for protocol {protocol}")
                return
            await handler(FrameStream(self, connection, protocol))

        elif frame.msg_type == MessageType.STREAM_DATA:
            waiter = self._stream_waiters.pop((connection.peer_id, str(body.get("protocol"))), None)
            if waiter is not None and not waiter.done():
                waiter.set_result(body.get("data") or b"")

        elif frame.msg_type == MessageType.HELLO:
            logger.warning(f"Unexpected HELLO from {connection.peer_id[:16]}...")

    async def subscribe(self, topic: str):
        """Subscribe to a topic and tell connected peers."""
        if topic in self.topics:
            return
        self.topics.add(topic)
        for connection in list(self.connections.values()):
            await self._send_frame(connection, Frame.build(MessageType.SUBSCRIBE, {"topic": topic}))

    async def publish(self, topic: str, data: bytes) -> int:
        """Publish to every connected peer subscribed to a topic."""
        return await self._fan_out(topic, {"topic": topic, "sender": self.peer_id, "data": data})

    async def _fan_out(self, topic: str, body: Dict[str, Any], exclude: Optional[str] = None) -> int:
        frame = Frame.build(MessageType.PUBLISH, body)
        sent = 0
        for connection in list(self.connections.values()):
            if connection.peer_id == exclude or topic not in connection.topics:
                continue
            if await self._send_frame(connection, frame):
                sent += 1
        return sent

    async def request_stream(self, peer_id: str, protocol: str, timeout: float = STREAM_TIMEOUT) -> bytes:
        """
        Open a protocol stream on a peer and return the handler's output.

        Raises:
            ConnectionError: Not connected, or the request could not be sent
            asyncio.TimeoutError: No response within the timeout
        """
        connection = self.connections.get(peer_id)
        if connection is None:
            raise ConnectionError(f"Not connected to {peer_id[:16]}...")

        key = (peer_id, protocol)
        waiter = asyncio.get_running_loop().create_future()
        self._stream_waiters[key] = waiter

        try:
            sent = await self._send_frame(
                connection, Frame.build(MessageType.STREAM_OPEN, {"protocol": protocol})
            )
            if not sent:
                raise ConnectionError(f"Failed to open {protocol} on {peer_id[:16]}...")
            return await asyncio.wait_for(waiter, timeout=timeout)
        finally:
            self._stream_waiters.pop(key, None)

    async def hang_up(self, peer_id: str):
        """Close the connection to a peer."""
        connection = self.connections.pop(peer_id, None)
        if connection is None:
            return
        await self._close_writer(connection.writer)
        logger.info(f"Hung up on {peer_id[:16]}...")
        await self._emit_peer_event(
            PEER_DISCONNECT, PeerEvent(peer_id=peer_id, address=connection.ip)
        )

    async def _send_frame(self, connection: PeerConnection, frame: Frame) -> bool:
        """Send a frame; returns False (and drops the peer) on failure."""
        data = frame.to_bytes()
        try:
            connection.writer.write(data)
            await connection.writer.drain()
        except (ConnectionError, OSError) as e:
            logger.error(f"Error sending to {connection.peer_id[:16]}...: {e}")
            if self.connections.get(connection.peer_id) is connection:
                await self.hang_up(connection.peer_id)
            return False

        connection.bytes_sent += len(data)
        connection.last_activity = time.time()
        self.stats["messages_sent"] += 1
        self.stats["bytes_sent"] += len(data)
        return True

    @staticmethod
    async def _close_writer(writer: asyncio.StreamWriter):
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    def get_stats(self) -> Dict:
        """Get host statistics."""
        return {
            **self.stats,
            "active_connections": len(self.connections),
            "max_connections": self.max_connections,
            "peers": {
                peer_id[:16]: {
                    "address": connection.address,
                    "bytes_sent": connection.bytes_sent,
                    "bytes_received": connection.bytes_received,
                    "last_activity": connection.last_activity
                }
                for peer_id, connection in self.connections.items()
            }
        }
