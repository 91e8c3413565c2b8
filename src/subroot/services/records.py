"""
Subscription Root Service - Records

Subscriber and root-state records shared by the repository and services.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from subroot.crypto.leaf import encode_leaf


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SubscriberRecord:
    """A subscriber row from the backing store."""

    identity: bytes
    expiration_ts: int
    last_updated_at: datetime | None = None

    @property
    def identity_hex(self) -> str:
        return self.identity.hex()

    def leaf_hash(self) -> bytes:
        """Leaf committing this subscriber's identity and expiration."""
        return encode_leaf(self.identity, self.expiration_ts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity_hex,
            "expiration_ts": self.expiration_ts,
            "last_updated_at": (
                self.last_updated_at.isoformat() if self.last_updated_at else None
            ),
        }


@dataclass
class RootRecord:
    """
    One entry of the append-only root publication log.

    Attributes:
        root_hash: 32-byte Merkle root
        is_synced_on_chain: Whether the ledger holds this root
        tx_signature: Ledger transaction reference, if a publish succeeded
        created_at: When the entry was written
        id: Database ID (None until persisted)
    """

    root_hash: bytes
    is_synced_on_chain: bool
    tx_signature: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: int | None = None

    @property
    def root_hex(self) -> str:
        return self.root_hash.hex()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "root_hash": self.root_hex,
            "is_synced_on_chain": self.is_synced_on_chain,
            "tx_signature": self.tx_signature,
            "created_at": self.created_at.isoformat(),
        }
