"""
WebSocket Storage Relay Server

Accepts WebSocket connections from storage nodes and clients and feeds
their frames to the RequestRelay.

Connection handling:
- Optional admission check per socket (keyed by remote host:port)
- Inbound frame sizes (text and binary) charged against the socket's bandwidth budget
- Storage node deregistered when its socket closes
"""

import logging
from typing import Optional, Tuple, Union

from aiohttp import WSCloseCode, WSMsgType, web

from bytecave.core.config import DEFAULT_WS_PORT
from bytecave.p2p.admission import AdmissionController

from .channel import WebSocketChannel
from .errors import BANDWIDTH_LIMIT_EXCEEDED
from .router import RequestRelay

logger = logging.getLogger(__name__)


def _frame_size(data: Union[str, bytes]) -> int:
    """Payload size in bytes (text frames are UTF-8 on the wire)."""
    if isinstance(data, str):
        return len(data.encode("utf-8"))
    return len(data)


class StorageWebSocketServer:
    """aiohttp WebSocket front end of the storage relay."""

    def __init__(
        self,
        relay: RequestRelay,
        admission: Optional[AdmissionController] = None,
        host: str = "0.0.0.0",
        port: int = DEFAULT_WS_PORT
    ):
        """
        Initialize WebSocket relay server.

        Args:
            relay: Request relay receiving decoded frames
            admission: Admission controller gating each socket (optional)
            host: Listen address
            port: Listen port
        """
        self.relay = relay
        self.admission = admission
        self.host = host
        self.port = port

        self.app = web.Application()
        self.app.router.add_get("/", self.handle_websocket)
        self.runner: Optional[web.AppRunner] = None

        self.stats = {
            "connections_accepted": 0,
            "connections_rejected": 0,
            "bandwidth_disconnects": 0
        }

    async def start(self):
        """Start the WebSocket server and the relay's timeout sweep."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        await self.relay.start()

        logger.info(f"Storage WebSocket relay listening on {self.host}:{self.port}")

    async def stop(self):
        """Stop the server and the relay."""
        await self.relay.stop()
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
        logger.info("Storage WebSocket relay stopped")

    async def handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        """
        Serve one WebSocket connection until it closes.

        Args:
            request: aiohttp upgrade request

        Returns:
            The (closed) WebSocket response
        """
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        host, port = self._peer_address(request)
        peer_key = f"ws:{host}:{port}"
        channel = WebSocketChannel(ws, remote=f"{host}:{port}")

        if self.admission is not None:
            decision = self.admission.evaluate_connection(peer_key, host)
            if not decision.allowed:
                self.stats["connections_rejected"] += 1
                logger.info(f"WebSocket from {host} rejected: {decision.reason.value}")
                await ws.close(
                    code=WSCloseCode.POLICY_VIOLATION,
                    message=decision.reason.value.encode()
                )
                return ws

        self.stats["connections_accepted"] += 1
        logger.info(f"New WebSocket connection from {channel.remote}")

        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    if not self._charge_bandwidth(peer_key, _frame_size(msg.data)):
                        self.stats["bandwidth_disconnects"] += 1
                        await self.relay.reply_error(channel, BANDWIDTH_LIMIT_EXCEEDED)
                        await channel.close(BANDWIDTH_LIMIT_EXCEEDED)
                        break
                    await self.relay.handle_message(channel, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.error(f"WebSocket error from {channel.remote}: {ws.exception()}")
        finally:
            self.relay.channel_closed(channel)
            if self.admission is not None:
                self.admission.record_disconnection(peer_key)
            logger.info(f"WebSocket closed: {channel.remote}")

        return ws

    def _charge_bandwidth(self, peer_key: str, byte_count: int) -> bool:
        if self.admission is None:
            return True
        return self.admission.record_bandwidth(peer_key, byte_count).allowed

    @staticmethod
    def _peer_address(request: web.Request) -> Tuple[str, int]:
        peername = request.transport.get_extra_info("peername") if request.transport else None
        if peername:
            return peername[0], peername[1]
        return request.remote or "unknown", 0

    def get_stats(self):
        return {**self.stats, **self.relay.get_stats()}
