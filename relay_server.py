"""
ByteCave Relay Node Server

Standalone relay/bootstrap node for the ByteCave P2P storage network.
Runs the peer host, the storage WebSocket relay and an HTTP info endpoint.

Endpoints:
- GET /        - Node info (same as /info)
- GET /info    - Peer ID, addresses, uptime, connection and rate limit stats
- GET /health  - Health check

Usage:
    RELAY_LISTEN_PORT=4001 RELAY_WS_PORT=4003 bytecave-relay

Author: ByteCave Team
License: MIT
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from bytecave import __version__
from bytecave.core.config import RelayConfig
from bytecave.core.identity import NodeIdentity
from bytecave.p2p.host import TCPHost
from bytecave.p2p.node import RelayNode
from bytecave.p2p.relay import RequestRelay, StorageWebSocketServer


# =============================================================================
# API Models
# =============================================================================

class RateLimitStats(BaseModel):
    """Admission controller counters."""

    total_peers: int
    blocked_peers: int
    blocked_addresses: int
    active_connections: int


class InfoResponse(BaseModel):
    """Relay node info."""

    peer_id: str
    addresses: List[str]
    announce_addresses: List[str]
    uptime: int
    connections: int
    rejected_connections: int
    storage_nodes: int
    rate_limit: RateLimitStats
    storage_relay: Dict[str, Any]
    host: Optional[Dict[str, Any]] = None
    version: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    uptime: int


# =============================================================================
# Application State
# =============================================================================

class AppState:
    """Relay components shared by the endpoints."""

    def __init__(self):
        self.config: RelayConfig = RelayConfig()
        self.node: Optional[RelayNode] = None
        self.storage_server: Optional[StorageWebSocketServer] = None
        self._stats_task: Optional[asyncio.Task] = None

    async def initialize(self, config: RelayConfig):
        """Build and start the relay components."""
        self.config = config

        identity = NodeIdentity.load_or_generate(config.private_key_path)
        host = TCPHost(
            peer_id=identity.peer_id,
            listen_host=config.listen_host,
            listen_port=config.listen_port,
            max_connections=config.max_connections
        )
        self.node = RelayNode(host, config)

        relay = RequestRelay(
            request_timeout=config.request_timeout,
            sweep_interval=config.request_sweep_interval
        )
        self.storage_server = StorageWebSocketServer(
            relay,
            admission=self.node.admission,
            host=config.listen_host,
            port=config.websocket_port
        )

        await self.node.start()
        await self.storage_server.start()

        if config.http_url:
            await self.node.announce_http_endpoint(config.http_url)

        self._stats_task = asyncio.create_task(self._stats_loop())

        logger.info("✓ Relay node started")
        logger.info("   Peer ID: {}", identity.peer_id)
        for address in host.get_addresses():
            logger.info("   Listening on: {}", address)
        for address in config.announce_addresses:
            logger.info("   Announcing as: {}", address)
        logger.info("   Storage relay: ws://{}:{}", config.listen_host, config.websocket_port)

    async def shutdown(self):
        """Stop the relay components."""
        if self._stats_task:
            self._stats_task.cancel()
            await asyncio.gather(self._stats_task, return_exceptions=True)
            self._stats_task = None
        if self.storage_server:
            await self.storage_server.stop()
        if self.node:
            await self.node.stop()
        logger.info("✓ Relay node shutdown complete")

    async def _stats_loop(self):
        """Log node statistics periodically."""
        while True:
            try:
                await asyncio.sleep(self.config.stats_interval)
                stats = self.node.get_stats()
                rate_limit = stats["rate_limit"]
                relay_stats = self.storage_server.get_stats()
                logger.info(
                    "[Stats] Connections: {} | Rejected: {} | Storage nodes: {} | Uptime: {}m",
                    stats["connections"],
                    stats["rejected_connections"],
                    relay_stats["connected_nodes"],
                    stats["uptime"] // 60
                )
                logger.info(
                    "[RateLimit] Tracked: {} peers | Blocked: {} peers, {} addresses",
                    rate_limit["total_peers"],
                    rate_limit["blocked_peers"],
                    rate_limit["blocked_addresses"]
                )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in stats loop: {}", e)

    def info(self) -> InfoResponse:
        stats = self.node.get_stats() if self.node else {
            "peer_id": "", "uptime": 0, "connections": 0, "rejected_connections": 0,
            "storage_nodes": 0, "addresses": [],
            "rate_limit": {
                "total_peers": 0, "blocked_peers": 0,
                "blocked_addresses": 0, "active_connections": 0
            }
        }
        storage_relay = self.storage_server.get_stats() if self.storage_server else {}

        host_stats = None
        if self.config.enable_metrics and self.node and isinstance(self.node.host, TCPHost):
            host_stats = self.node.host.get_stats()

        return InfoResponse(
            peer_id=stats["peer_id"],
            addresses=stats["addresses"],
            announce_addresses=self.config.announce_addresses,
            uptime=stats["uptime"],
            connections=stats["connections"],
            rejected_connections=stats["rejected_connections"],
            storage_nodes=stats["storage_nodes"],
            rate_limit=RateLimitStats(**stats["rate_limit"]),
            storage_relay=storage_relay,
            host=host_stats,
            version=__version__
        )


# Global app state
app_state = AppState()


# =============================================================================
# Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan."""
    await app_state.initialize(RelayConfig.from_env())

    yield

    await app_state.shutdown()


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="ByteCave Relay Node",
    description="Bootstrap, directory and storage relay node for ByteCave",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return JSONResponse(status_code=404, content={"error": "Not found"})
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


# =============================================================================
# Info & Health Endpoints
# =============================================================================

@app.get("/", response_model=InfoResponse)
@app.get("/info", response_model=InfoResponse)
async def get_info():
    """Relay node info."""
    return app_state.info()


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    uptime = app_state.node.get_stats()["uptime"] if app_state.node else 0
    return HealthResponse(status="healthy", uptime=uptime)


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Run relay node."""
    logger.add(
        "logs/bytecave_relay_{time}.log",
        rotation="1 day",
        retention="30 days",
        level="INFO"
    )

    config = RelayConfig.from_env()

    logger.info("╔════════════════════════════════════════╗")
    logger.info("║     ByteCave Relay Node v{}         ║", __version__)
    logger.info("╚════════════════════════════════════════╝")
    logger.info("[Config] Listen: {}:{}", config.listen_host, config.listen_port)
    if config.announce_addresses:
        logger.info("[Config] Announce addresses: {}", config.announce_addresses)
    if config.bootstrap_peers:
        logger.info("[Config] Bootstrap peers: {}", len(config.bootstrap_peers))
    logger.info("[Config] Max connections: {}", config.max_connections)
    logger.info("[Info] HTTP endpoint on port {}", config.info_port)

    uvicorn.run(
        app,
        host=config.listen_host,
        port=config.info_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
