"""
Subscription Root Service - Leaf Encoding

A leaf commits one subscriber: SHA-256(identity || expiration), where the
identity is the raw 32-byte public identifier and the expiration is encoded
as 8 bytes, signed, little-endian. Every verifier must use this exact layout.
"""

import hashlib

from subroot.crypto.merkle import MerkleError

IDENTITY_SIZE = 32


class InvalidIdentityLength(MerkleError):
    """Identity is not exactly 32 bytes."""

    pass


def encode_expiration(expiration: int) -> bytes:
    """Encode a Unix timestamp as 8-byte signed little-endian."""
    return expiration.to_bytes(8, "little", signed=True)


def encode_leaf(identity: bytes, expiration: int) -> bytes:
    """
    Compute the leaf hash for a subscriber.

    Args:
        identity: 32-byte public identifier
        expiration: Expiration as signed 64-bit Unix seconds

    Returns:
        32-byte leaf hash

    Raises:
        InvalidIdentityLength: If identity is not 32 bytes
        OverflowError: If expiration does not fit in a signed 64-bit integer
    """
    if len(identity) != IDENTITY_SIZE:
        raise InvalidIdentityLength(
            f"Identity must be {IDENTITY_SIZE} bytes, got {len(identity)}"
        )

    hasher = hashlib.sha256()
    hasher.update(identity)
    hasher.update(encode_expiration(expiration))
    return hasher.digest()


def parse_identity(value: str) -> bytes:
    """Decode a hex-encoded identity, validating its length."""
    try:
        identity = bytes.fromhex(value)
    except ValueError as e:
        raise InvalidIdentityLength(f"Identity is not valid hex: {value[:16]}") from e

    if len(identity) != IDENTITY_SIZE:
        raise InvalidIdentityLength(
            f"Identity must be {IDENTITY_SIZE} bytes, got {len(identity)}"
        )
    return identity
