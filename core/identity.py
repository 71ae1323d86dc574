"""
Relay node identity.

Each relay node has:
- Ed25519 keypair (persisted as PEM when a key path is configured)
- Peer ID (SHA-256 hash of the raw public key)
"""

import hashlib
import logging
import os
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

logger = logging.getLogger(__name__)


class NodeIdentity:
    """Keypair and derived peer ID of the local node."""

    def __init__(self, private_key: ed25519.Ed25519PrivateKey):
        self.private_key = private_key
        self.public_key = private_key.public_key()
        self.peer_id = compute_peer_id(self.public_key)

    @classmethod
    def generate(cls) -> "NodeIdentity":
        """Create an ephemeral identity."""
        return cls(ed25519.Ed25519PrivateKey.generate())

    @classmethod
    def load_or_generate(cls, key_path: Optional[str]) -> "NodeIdentity":
        """
        Load existing key or generate a new Ed25519 keypair.

        Args:
            key_path: PEM file location; None gives an ephemeral identity

        Returns:
            NodeIdentity backed by the stored or newly saved key
        """
        if not key_path:
            logger.info("No key path configured, using ephemeral identity")
            return cls.generate()

        path = Path(key_path).resolve()

        if path.exists():
            with open(path, "rb") as f:
                private_key = serialization.load_pem_private_key(
                    f.read(),
                    password=None
                )
            if not isinstance(private_key, ed25519.Ed25519PrivateKey):
                raise ValueError(f"Key at {path} is not an Ed25519 private key")
            logger.info(f"Loaded existing identity from {path}")
            return cls(private_key)

        os.makedirs(path.parent, exist_ok=True)
        identity = cls.generate()

        pem = identity.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        )
        with open(path, "wb") as f:
            f.write(pem)

        logger.info(f"Generated new identity, saved to {path}")
        return identity


def compute_peer_id(public_key: ed25519.Ed25519PublicKey) -> str:
    """Compute peer ID from public key (SHA-256 hash)."""
    pub_bytes = public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )
    return hashlib.sha256(pub_bytes).hexdigest()
