"""
Subscription Root Service - Proof Service

Serves membership proofs on demand and self-checks proofs off-ledger
with the same verification routine the ledger runs.
"""

import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import structlog
from prometheus_client import Counter

from subroot.crypto.leaf import encode_leaf
from subroot.crypto.merkle import (
    MerkleTree,
    ProofMismatchError,
    SubscriptionExpiredError,
    verify_membership,
)
from subroot.db.repository import RootLog, SubscriberStore

logger = structlog.get_logger(__name__)

VERIFICATIONS_TOTAL = Counter(
    "subroot_verifications_total",
    "Membership verifications by result",
    ["result"],
)


class SubscriberNotFoundError(Exception):
    """Identity is not present in the subscriber store."""

    pass


class NoPublishedRootError(Exception):
    """No root has been published yet to verify against."""

    pass


@dataclass(frozen=True)
class MembershipProof:
    """Everything a subscriber needs to prove membership."""

    identity: bytes
    expiration_ts: int
    leaf_hash: bytes
    siblings: tuple[bytes, ...]
    root_hash: bytes
    leaf_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity.hex(),
            "expiration_ts": self.expiration_ts,
            "leaf_hash": self.leaf_hash.hex(),
            "proof": [s.hex() for s in self.siblings],
            "root_hash": self.root_hash.hex(),
            "leaf_count": self.leaf_count,
        }


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of an off-ledger membership check."""

    valid: bool
    reason: str
    root_hash: bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "reason": self.reason,
            "root_hash": self.root_hash.hex(),
        }


class ProofService:
    """Builds a fresh tree snapshot per request to derive or check proofs."""

    def __init__(self, store: SubscriberStore, root_log: RootLog | None = None) -> None:
        """
        Args:
            store: Subscriber snapshot source
            root_log: Root log used to find the latest published root
        """
        self._store = store
        self._root_log = root_log

    async def get_proof(self, identity: bytes) -> MembershipProof:
        """
        Derive the membership proof for a stored subscriber.

        The proof is tied to the current store snapshot; it goes stale as
        soon as a newer root is published.

        Raises:
            SubscriberNotFoundError: If the identity is not stored
        """
        records = await self._store.list_all()
        record = next((r for r in records if r.identity == identity), None)
        if record is None:
            raise SubscriberNotFoundError(f"Subscriber {identity.hex()[:16]}... not found")

        tree = MerkleTree.build(r.leaf_hash() for r in records)
        proof = tree.get_proof(record.leaf_hash())

        logger.debug(
            "Derived membership proof",
            identity=identity.hex()[:16] + "...",
            proof_length=len(proof.siblings),
            root=tree.root_hex[:16] + "...",
        )

        return MembershipProof(
            identity=record.identity,
            expiration_ts=record.expiration_ts,
            leaf_hash=proof.leaf_hash,
            siblings=proof.siblings,
            root_hash=tree.root,
            leaf_count=tree.leaf_count,
        )

    async def verify(
        self,
        identity: bytes,
        expiration: int,
        siblings: Sequence[bytes],
        root: bytes | None = None,
        now: int | None = None,
    ) -> VerificationResult:
        """
        Check a membership claim the way the ledger would.

        Args:
            identity: 32-byte identity
            expiration: Claimed expiration (Unix seconds)
            siblings: Sibling path
            root: Root to check against (defaults to the latest synced root)
            now: Reference time (defaults to the wall clock)

        Raises:
            NoPublishedRootError: If no root is given and none was published
        """
        if root is None:
            root = await self._latest_published_root()
        if now is None:
            now = int(time.time())

        leaf = encode_leaf(identity, expiration)

        # Negative results are expected traffic, not errors
        try:
            verify_membership(leaf, siblings, root, expiration=expiration, now=now)
        except SubscriptionExpiredError:
            VERIFICATIONS_TOTAL.labels(result="expired").inc()
            logger.debug("Membership rejected: expired", identity=identity.hex()[:16] + "...")
            return VerificationResult(valid=False, reason="expired", root_hash=root)
        except ProofMismatchError:
            VERIFICATIONS_TOTAL.labels(result="mismatch").inc()
            logger.debug("Membership rejected: proof mismatch", identity=identity.hex()[:16] + "...")
            return VerificationResult(valid=False, reason="proof_mismatch", root_hash=root)

        VERIFICATIONS_TOTAL.labels(result="valid").inc()
        return VerificationResult(valid=True, reason="ok", root_hash=root)

    async def _latest_published_root(self) -> bytes:
        record = await self._root_log.latest_synced() if self._root_log else None
        if record is None:
            raise NoPublishedRootError("No root has been published yet")
        return record.root_hash
