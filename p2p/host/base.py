"""
Network Host Interface

The peer-to-peer networking layer the relay node sits on. A host provides:
- Connect/disconnect events (peer ID and, where known, source address)
- Per-peer traffic events for bandwidth accounting
- Topic publish/subscribe
- Stream handlers keyed by protocol ID
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


PEER_CONNECT = "peer:connect"
PEER_DISCONNECT = "peer:disconnect"


@dataclass
class PeerEvent:
    """A peer connected or disconnected."""

    peer_id: str
    address: Optional[str] = None  # Remote IP, if known


@dataclass
class PubsubMessage:
    """A message received on a subscribed topic."""

    topic: str
    sender: str  # Publishing peer ID
    data: bytes


class Stream(ABC):
    """One side of a protocol stream opened by a remote peer."""

    remote_peer: str
    protocol: str

    @abstractmethod
    async def write(self, data: bytes):
        ...

    @abstractmethod
    async def close(self):
        ...


PeerListener = Callable[[PeerEvent], Awaitable[None]]
MessageListener = Callable[[PubsubMessage], Awaitable[None]]
TrafficListener = Callable[[str, int], Awaitable[None]]
StreamHandler = Callable[[Stream], Awaitable[None]]


class NetworkHost(ABC):
    """Base class for network hosts; keeps listener and handler registries."""

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self.topics: Set[str] = set()

        self._peer_listeners: Dict[str, List[PeerListener]] = {
            PEER_CONNECT: [],
            PEER_DISCONNECT: []
        }
        self._message_listeners: List[MessageListener] = []
        self._traffic_listeners: List[TrafficListener] = []
        self._stream_handlers: Dict[str, StreamHandler] = {}

    def on(self, event: str, listener: PeerListener):
        """
        Register a connect/disconnect listener.

        Args:
            event: PEER_CONNECT or PEER_DISCONNECT
            listener: Coroutine function receiving a PeerEvent
        """
        if event not in self._peer_listeners:
            raise ValueError(f"Unknown host event: {event}")
        self._peer_listeners[event].append(listener)

    def add_message_listener(self, listener: MessageListener):
        self._message_listeners.append(listener)

    def add_traffic_listener(self, listener: TrafficListener):
        self._traffic_listeners.append(listener)

    def handle(self, protocol: str, handler: StreamHandler):
        """Register the handler for streams opened with a protocol ID."""
        self._stream_handlers[protocol] = handler
        logger.debug(f"Registered stream handler for {protocol}")

    def get_protocols(self) -> List[str]:
        return list(self._stream_handlers)

    async def _emit_peer_event(self, event: str, peer_event: PeerEvent):
        for listener in list(self._peer_listeners[event]):
            try:
                await listener(peer_event)
            except Exception as e:
                logger.error(f"Error in {event} listener: {e}")

    async def _emit_message(self, message: PubsubMessage):
        if message.topic not in self.topics:
            return
        for listener in list(self._message_listeners):
            try:
                await listener(message)
            except Exception as e:
                logger.error(f"Error in message listener for {message.topic}: {e}")

    async def _emit_traffic(self, peer_id: str, byte_count: int):
        for listener in list(self._traffic_listeners):
            try:
                await listener(peer_id, byte_count)
            except Exception as e:
                logger.error(f"Error in traffic listener: {e}")

    @abstractmethod
    async def start(self):
        ...

    @abstractmethod
    async def stop(self):
        ...

    @abstractmethod
    async def subscribe(self, topic: str):
        ...

    @abstractmethod
    async def publish(self, topic: str, data: bytes) -> int:
        """Publish to a topic; returns the number of peers it was sent to."""

    @abstractmethod
    async def dial(self, address: str) -> Optional[str]:
        """Connect to a remote address; returns its peer ID or None."""

    @abstractmethod
    async def hang_up(self, peer_id: str):
        """Close the connection to a peer."""

    @abstractmethod
    def get_peers(self) -> List[str]:
        ...

    @abstractmethod
    def get_addresses(self) -> List[str]:
        ...
