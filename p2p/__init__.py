"""
ByteCave P2P Relay Layer

Connection brokering and request relaying for the ByteCave storage network.

Components:
- Admission: Per-peer/per-address rate limiting and blocking
- Relay: Storage request routing between clients and storage nodes
- Directory: Storage node directory protocol
- Host: Network host interface and framed TCP implementation
"""

__version__ = "1.0.0"
