"""
Relay Node Configuration

Pydantic models for the relay node and its admission controller.
Values come from defaults or from RELAY_* environment variables.

Environment Variables:
- RELAY_LISTEN_HOST         - Host for the framed TCP peer listener
- RELAY_LISTEN_PORT         - Port for the framed TCP peer listener (default: 4001)
- RELAY_WS_PORT             - Storage relay WebSocket port (default: 4003)
- RELAY_INFO_PORT           - HTTP info endpoint port (default: 9090)
- RELAY_ANNOUNCE_ADDRESSES  - Comma-separated public addresses to announce
- RELAY_PRIVATE_KEY_PATH    - Path to persistent identity file
- RELAY_MAX_CONNECTIONS     - Max concurrent connections (default: 1000)
- RELAY_BOOTSTRAP_PEERS     - Comma-separated bootstrap peers
- RELAY_ENABLE_METRICS      - Enable metrics (default: false)
- RELAY_HTTP_URL            - Public URL of the info endpoint, announced on start
"""

import os
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, Field


# Defaults carried over from the deployed relay
DEFAULT_LISTEN_PORT = 4001
DEFAULT_WS_PORT = 4003
DEFAULT_INFO_PORT = 9090
DEFAULT_MAX_CONNECTIONS = 1000


class RateLimitConfig(BaseModel):
    """Admission controller limits. Durations are in seconds."""

    max_connections_per_peer: int = Field(
        default=5, gt=0, description="Connections allowed per peer within one window"
    )
    max_connections_per_ip: int = Field(
        default=20, gt=0, description="Connections allowed per source address within one window"
    )
    connection_window: float = Field(
        default=60.0, gt=0, description="Admission window length"
    )
    max_bandwidth_per_peer_mbps: float = Field(
        default=10.0, gt=0, description="Per-peer bandwidth ceiling in megabits/sec"
    )
    global_max_connections: int = Field(
        default=DEFAULT_MAX_CONNECTIONS, gt=0, description="Peers active within one window"
    )
    block_duration: float = Field(
        default=300.0, gt=0, description="Automatic peer block length"
    )
    cleanup_interval: float = Field(
        default=60.0, gt=0, description="Interval of the stale-state sweep"
    )

    @property
    def max_bytes_per_second(self) -> float:
        """Bandwidth ceiling converted from Mbps to bytes/sec."""
        return (self.max_bandwidth_per_peer_mbps * 1024 * 1024) / 8


class RelayConfig(BaseModel):
    """Relay node configuration."""

    listen_host: str = Field(
        default="0.0.0.0",
        description="Peer listener host (use 127.0.0.1 for local testing)"
    )
    listen_port: int = Field(default=DEFAULT_LISTEN_PORT, description="Peer listener port")
    websocket_port: int = Field(default=DEFAULT_WS_PORT, description="Storage relay WebSocket port")
    info_port: int = Field(default=DEFAULT_INFO_PORT, description="HTTP info endpoint port")

    announce_addresses: List[str] = Field(default_factory=list)
    bootstrap_peers: List[str] = Field(default_factory=list)
    private_key_path: Optional[str] = Field(
        default=None, description="Persistent identity (generated when missing)"
    )
    http_url: Optional[str] = Field(
        default=None, description="Public info endpoint URL announced to peers"
    )

    max_connections: int = Field(default=DEFAULT_MAX_CONNECTIONS, gt=0)
    enable_metrics: bool = False

    # Storage relay timing
    request_timeout: float = Field(default=60.0, gt=0)
    request_sweep_interval: float = Field(default=30.0, gt=0)

    # Peer directory timing
    stale_node_threshold: float = Field(default=300.0, gt=0)
    stale_node_sweep_interval: float = Field(default=60.0, gt=0)

    stats_interval: float = Field(default=60.0, gt=0)

    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RelayConfig":
        """
        Build configuration from RELAY_* environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            RelayConfig with the global admission limit taken from max_connections
        """
        env = os.environ if environ is None else environ

        values: Dict[str, object] = {
            "announce_addresses": _split_list(env.get("RELAY_ANNOUNCE_ADDRESSES", "")),
            "bootstrap_peers": _split_list(env.get("RELAY_BOOTSTRAP_PEERS", "")),
            "private_key_path": env.get("RELAY_PRIVATE_KEY_PATH") or None,
            "enable_metrics": env.get("RELAY_ENABLE_METRICS", "").lower() == "true",
            "http_url": env.get("RELAY_HTTP_URL") or None,
        }

        if env.get("RELAY_LISTEN_HOST"):
            values["listen_host"] = env["RELAY_LISTEN_HOST"]

        for key, field_name in (
            ("RELAY_LISTEN_PORT", "listen_port"),
            ("RELAY_WS_PORT", "websocket_port"),
            ("RELAY_INFO_PORT", "info_port"),
            ("RELAY_MAX_CONNECTIONS", "max_connections"),
        ):
            if env.get(key):
                values[field_name] = int(env[key])

        max_connections = values.get("max_connections", DEFAULT_MAX_CONNECTIONS)
        values["rate_limit"] = RateLimitConfig(global_max_connections=max_connections)

        return cls(**values)


def _split_list(raw: str) -> List[str]:
    """Split a comma-separated value, dropping blank entries."""
    return [item.strip() for item in raw.split(",") if item.strip()]
