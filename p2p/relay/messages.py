"""
Storage Relay Wire Messages

JSON objects with a `type` field and camelCase keys.

Inbound:
- register          {peerId, nodeId?}                      (backend -> relay)
- storage-request   {requestId, targetPeerId?, data,
                     contentType, authorization?}          (client -> relay)
- storage-response  {requestId, success, cid?, error?}     (backend -> relay)

Outbound:
- registered        {peerId, timestamp}
- storage-request   forwarded to the backend without targetPeerId
- storage-response  routed back to the client
- error             {requestId?, error}
"""

import json
from typing import Any, Dict, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import (
    INVALID_MESSAGE_FORMAT,
    UNKNOWN_MESSAGE_TYPE,
    MISSING_PEER_ID,
    MISSING_REQUEST_FIELDS,
    MISSING_RESPONSE_FIELDS,
    MessageFormatError
)


class WireMessage(BaseModel):
    """Base for relay messages (accepts camelCase aliases and field names)."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RegisterMessage(WireMessage):
    """Backend storage node announcing itself."""

    type: Literal["register"] = "register"
    peer_id: str = Field(alias="peerId", min_length=1)
    node_id: Optional[str] = Field(default=None, alias="nodeId")


class StorageRequestMessage(WireMessage):
    """Client request to be forwarded to a storage node."""

    type: Literal["storage-request"] = "storage-request"
    request_id: str = Field(alias="requestId", min_length=1)
    target_peer_id: Optional[str] = Field(default=None, alias="targetPeerId")
    data: str = Field(min_length=1)  # Opaque encoded payload (base64 blob)
    content_type: Optional[str] = Field(default=None, alias="contentType")
    authorization: Optional[Dict[str, Any]] = None  # Passed through unmodified

    def forward_payload(self) -> Dict[str, Any]:
        """Message sent to the storage node (target is relay-local)."""
        return self.model_dump(
            by_alias=True,
            exclude_none=True,
            exclude={"target_peer_id"}
        )


class StorageResponseMessage(WireMessage):
    """Storage node result for a forwarded request."""

    type: Literal["storage-response"] = "storage-response"
    request_id: str = Field(alias="requestId", min_length=1)
    success: bool
    cid: Optional[str] = None
    error: Optional[str] = None


InboundMessage = Union[RegisterMessage, StorageRequestMessage, StorageResponseMessage]

INBOUND_TYPES: Dict[str, Type[WireMessage]] = {
    "register": RegisterMessage,
    "storage-request": StorageRequestMessage,
    "storage-response": StorageResponseMessage,
}

MISSING_FIELD_ERRORS = {
    "register": MISSING_PEER_ID,
    "storage-request": MISSING_REQUEST_FIELDS,
    "storage-response": MISSING_RESPONSE_FIELDS,
}


def parse_message(raw: Union[str, bytes]) -> InboundMessage:
    """
    Decode an inbound frame.

    Args:
        raw: JSON text received on a channel

    Returns:
        Typed inbound message

    Raises:
        MessageFormatError: Invalid JSON, unknown type, or missing fields
    """
    try:
        body = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MessageFormatError(INVALID_MESSAGE_FORMAT) from e

    if not isinstance(body, dict):
        raise MessageFormatError(INVALID_MESSAGE_FORMAT)

    msg_type = body.get("type")
    model = INBOUND_TYPES.get(msg_type) if isinstance(msg_type, str) else None
    if model is None:
        raise MessageFormatError(UNKNOWN_MESSAGE_TYPE)

    try:
        return model.model_validate(body)
    except ValidationError as e:
        request_id = body.get("requestId")
        raise MessageFormatError(
            MISSING_FIELD_ERRORS[msg_type],
            request_id=request_id if isinstance(request_id, str) and request_id else None
        ) from e


def registered_message(peer_id: str, timestamp_ms: int) -> Dict[str, Any]:
    return {"type": "registered", "peerId": peer_id, "timestamp": timestamp_ms}


def error_message(error: str, request_id: Optional[str] = None) -> Dict[str, Any]:
    message: Dict[str, Any] = {"type": "error", "error": error}
    if request_id is not None:
        message["requestId"] = request_id
    return message
