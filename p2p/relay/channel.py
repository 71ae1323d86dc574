"""
Relay channels.

A channel is the outbound half of a duplex connection to a client or a
storage node. The relay only ever sends structured messages on it.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from aiohttp import web

from .errors import ChannelClosedError


class Channel(ABC):
    """Outbound message handle used by the relay."""

    remote: str = "unknown"

    @abstractmethod
    async def send(self, message: Dict[str, Any]):
        """
        Send a message.

        Raises:
            ChannelClosedError: If the channel is no longer deliverable
        """

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...


class WebSocketChannel(Channel):
    """Channel over an aiohttp WebSocket."""

    def __init__(self, ws: web.WebSocketResponse, remote: str):
        self.ws = ws
        self.remote = remote

    async def send(self, message: Dict[str, Any]):
        if self.ws.closed:
            raise ChannelClosedError(f"WebSocket to {self.remote} is closed")
        await self.ws.send_json(message)

    @property
    def closed(self) -> bool:
        return self.ws.closed

    async def close(self, message: str = ""):
        await self.ws.close(message=message.encode())

    def __repr__(self) -> str:
        return f"WebSocketChannel({self.remote})"
