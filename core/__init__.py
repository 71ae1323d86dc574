"""
ByteCave Core Module

Node-wide building blocks:
- Configuration (relay settings, admission limits)
- Node identity (Ed25519 keypair, peer ID)
"""

from bytecave.core.config import RelayConfig, RateLimitConfig
from bytecave.core.identity import NodeIdentity, compute_peer_id

__all__ = [
    "RelayConfig",
    "RateLimitConfig",
    "NodeIdentity",
    "compute_peer_id",
]
