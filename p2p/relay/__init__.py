"""
Storage Request Relay

Routes storage requests from clients to registered storage nodes and
routes their responses back.
"""

from .channel import Channel, WebSocketChannel
from .errors import (
    RelayError,
    MessageFormatError,
    NoBackendAvailable,
    BackendNotConnected,
    DuplicateRequest,
    ForwardFailed,
    ChannelClosedError
)
from .messages import (
    RegisterMessage,
    StorageRequestMessage,
    StorageResponseMessage,
    parse_message,
    registered_message,
    error_message
)
from .registry import BackendRegistry, BackendConnection
from .router import (
    RequestRelay,
    RequestState,
    PendingRequest,
    REQUEST_TIMEOUT,
    SWEEP_INTERVAL
)
from .websocket_server import StorageWebSocketServer

__all__ = [
    "Channel",
    "WebSocketChannel",
    "RelayError",
    "MessageFormatError",
    "NoBackendAvailable",
    "BackendNotConnected",
    "DuplicateRequest",
    "ForwardFailed",
    "ChannelClosedError",
    "RegisterMessage",
    "StorageRequestMessage",
    "StorageResponseMessage",
    "parse_message",
    "registered_message",
    "error_message",
    "BackendRegistry",
    "BackendConnection",
    "RequestRelay",
    "RequestState",
    "PendingRequest",
    "REQUEST_TIMEOUT",
    "SWEEP_INTERVAL",
    "StorageWebSocketServer"
]
