"""
Connection Admission

Per-peer and per-address rate limiting with automatic blocking.
"""

from .controller import (
    AdmissionController,
    AdmissionDecision,
    DenyReason,
    PeerState,
    IPState,
    BANDWIDTH_WINDOW
)

__all__ = [
    "AdmissionController",
    "AdmissionDecision",
    "DenyReason",
    "PeerState",
    "IPState",
    "BANDWIDTH_WINDOW"
]
