"""
Subscription Root Service - Root Authority

The authority is the Ed25519 keypair allowed to publish new roots. The
ledger stores the authority's public key when the config is initialized and
only accepts root updates signed by the matching private key.
"""

from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

UPDATE_ROOT_DOMAIN = b"subroot:update_root:"


def update_root_message(config_handle: str, new_root: bytes) -> bytes:
    """Canonical bytes signed by the authority for a root update."""
    return UPDATE_ROOT_DOMAIN + bytes.fromhex(config_handle) + new_root


class AuthoritySigner:
    """Holds the authority private key and signs root updates."""

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key = private_key
        self._public_key = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    @classmethod
    def generate(cls) -> "AuthoritySigner":
        """Create a signer with a fresh keypair."""
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_pem_file(cls, path: str | Path) -> "AuthoritySigner":
        """
        Load the authority key from a PEM-encoded PKCS8 file.

        Raises:
            ValueError: If the file does not hold an Ed25519 private key
        """
        key = serialization.load_pem_private_key(Path(path).read_bytes(), password=None)
        if not isinstance(key, Ed25519PrivateKey):
            raise ValueError(f"{path} does not contain an Ed25519 private key")
        return cls(key)

    @property
    def public_key(self) -> bytes:
        """Raw 32-byte public key."""
        return self._public_key

    def sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message)

    def sign_update(self, config_handle: str, new_root: bytes) -> bytes:
        """Sign a root update for the given config."""
        return self.sign(update_root_message(config_handle, new_root))


def verify_authority_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """Check an Ed25519 signature against a raw public key."""
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
        return True
    except (InvalidSignature, ValueError):
        return False
