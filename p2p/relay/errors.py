"""
Storage relay errors.

Every RelayError carries the message answered to the client in an
`error` frame. None of them is fatal to the relay.
"""

from typing import Optional


# Wire error strings
INVALID_MESSAGE_FORMAT = "invalid message format"
UNKNOWN_MESSAGE_TYPE = "unknown message type"
MISSING_PEER_ID = "missing peerId in register message"
MISSING_REQUEST_FIELDS = "missing required fields in storage request"
MISSING_RESPONSE_FIELDS = "missing required fields in storage response"
NO_BACKEND_AVAILABLE = "no backend available"
BACKEND_NOT_CONNECTED = "backend not connected"
DUPLICATE_REQUEST = "duplicate request id"
FORWARD_FAILED = "failed to forward request"
REQUEST_TIMED_OUT = "request timed out"
BANDWIDTH_LIMIT_EXCEEDED = "bandwidth limit exceeded"


class RelayError(Exception):
    """Base class for errors answered to the client."""

    def __init__(self, message: str, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.request_id = request_id


class MessageFormatError(RelayError):
    """Frame could not be decoded into a known message."""


class NoBackendAvailable(RelayError):
    def __init__(self, request_id: Optional[str] = None):
        super().__init__(NO_BACKEND_AVAILABLE, request_id)


class BackendNotConnected(RelayError):
    def __init__(self, backend_id: str, request_id: Optional[str] = None):
        super().__init__(BACKEND_NOT_CONNECTED, request_id)
        self.backend_id = backend_id


class DuplicateRequest(RelayError):
    def __init__(self, request_id: str):
        super().__init__(DUPLICATE_REQUEST, request_id)


class ForwardFailed(RelayError):
    def __init__(self, request_id: str):
        super().__init__(FORWARD_FAILED, request_id)


class ChannelClosedError(Exception):
    """Send attempted on a channel that is no longer deliverable."""
