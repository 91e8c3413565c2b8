"""
Subscription Root Service - Merkle Tree Implementation

Provides deterministic Merkle tree construction over subscriber leaves,
inclusion proof generation, and verification.

Construction rules (shared bit-for-bit with the ledger-side verifier):
- Leaves are sorted ascending by unsigned byte value before building, so the
  root depends only on the set of leaves, never on their arrival order.
- Internal nodes are SHA-256(min(a, b) || max(a, b)). Because the pair is
  ordered by value rather than position, a proof is just a list of sibling
  hashes; no left/right direction flags are needed.
- For odd-sized levels the last node is promoted (not duplicated) into the
  next level and contributes no sibling to proofs that pass through it.
"""

import hashlib
from bisect import bisect_left
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

HASH_SIZE = 32


class MerkleError(Exception):
    """Base exception for Merkle commitment errors."""

    pass


class EmptyTreeError(MerkleError):
    """A tree cannot be built from zero leaves."""

    pass


class LeafNotFoundError(MerkleError):
    """The requested leaf hash is not part of the tree."""

    pass


class ProofMismatchError(MerkleError):
    """The sibling path does not reconstruct the expected root."""

    pass


class SubscriptionExpiredError(MerkleError):
    """The claimed expiration is not after the current time."""

    pass


def hash_pair(a: bytes, b: bytes) -> bytes:
    """
    Combine two node hashes.

    The smaller value (unsigned byte order) always goes first, which makes
    the combination symmetric: hash_pair(a, b) == hash_pair(b, a).
    """
    if a <= b:
        return hashlib.sha256(a + b).digest()
    return hashlib.sha256(b + a).digest()


def _check_hash(value: bytes, what: str = "hash") -> bytes:
    if not isinstance(value, (bytes, bytearray)) or len(value) != HASH_SIZE:
        raise ValueError(f"{what} must be {HASH_SIZE} bytes")
    return bytes(value)


@dataclass(frozen=True)
class MerkleProof:
    """
    Merkle inclusion proof for a leaf.

    Attributes:
        leaf_hash: Hash of the leaf being proven
        siblings: Sibling hashes ordered from leaf level to root
        root_hash: Root of the tree snapshot the proof was derived from
    """

    leaf_hash: bytes
    siblings: tuple[bytes, ...]
    root_hash: bytes

    def to_dict(self) -> dict[str, Any]:
        """Serialize proof to a hex-encoded dictionary."""
        return {
            "leaf_hash": self.leaf_hash.hex(),
            "siblings": self.to_compact(),
            "root_hash": self.root_hash.hex(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MerkleProof":
        """Deserialize proof from a hex-encoded dictionary."""
        return cls(
            leaf_hash=_check_hash(bytes.fromhex(data["leaf_hash"]), "leaf_hash"),
            siblings=tuple(
                _check_hash(bytes.fromhex(s), "sibling") for s in data["siblings"]
            ),
            root_hash=_check_hash(bytes.fromhex(data["root_hash"]), "root_hash"),
        )

    def to_compact(self) -> list[str]:
        """Sibling path as a list of hex strings."""
        return [s.hex() for s in self.siblings]


class MerkleTree:
    """
    Immutable Merkle tree snapshot.

    Holds every level of the tree: level 0 is the sorted leaf set and the
    last level contains only the root.

    Example:
        >>> tree = MerkleTree.build([leaf_a, leaf_b, leaf_c])
        >>> proof = tree.get_proof(leaf_b)
        >>> verify_proof(leaf_b, proof.siblings, tree.root)
        True
    """

    __slots__ = ("_levels",)

    def __init__(self, levels: tuple[tuple[bytes, ...], ...]) -> None:
        """
        Initialize Merkle tree (internal use).

        Use build() to construct trees.
        """
        self._levels = levels

    @classmethod
    def build(cls, leaf_hashes: Iterable[bytes]) -> "MerkleTree":
        """
        Construct a Merkle tree from a set of leaf hashes.

        Args:
            leaf_hashes: 32-byte leaf hashes in any order

        Returns:
            Constructed MerkleTree

        Raises:
            EmptyTreeError: If no leaves are given
            ValueError: If a leaf is not a 32-byte value
        """
        current = tuple(sorted(_check_hash(h, "leaf hash") for h in leaf_hashes))
        if not current:
            raise EmptyTreeError("Cannot create Merkle tree from empty leaves")

        levels = [current]
        while len(current) > 1:
            next_level = []
            for i in range(0, len(current) - 1, 2):
                next_level.append(hash_pair(current[i], current[i + 1]))
            if len(current) % 2 == 1:
                # Odd case: promote the last node unchanged
                next_level.append(current[-1])
            current = tuple(next_level)
            levels.append(current)

        return cls(tuple(levels))

    @property
    def levels(self) -> tuple[tuple[bytes, ...], ...]:
        """All levels, leaves first."""
        return self._levels

    @property
    def leaves(self) -> tuple[bytes, ...]:
        """Sorted leaf hashes (level 0)."""
        return self._levels[0]

    @property
    def root(self) -> bytes:
        """Root hash."""
        return self._levels[-1][0]

    @property
    def root_hex(self) -> str:
        return self.root.hex()

    @property
    def leaf_count(self) -> int:
        return len(self._levels[0])

    @property
    def depth(self) -> int:
        """Number of levels above the leaves."""
        return len(self._levels) - 1

    def __contains__(self, leaf_hash: object) -> bool:
        return isinstance(leaf_hash, bytes) and self.index_of(leaf_hash) is not None

    def __repr__(self) -> str:
        return f"MerkleTree(leaves={self.leaf_count}, root={self.root_hex[:16]}...)"

    def index_of(self, leaf_hash: bytes) -> int | None:
        """Position of the first exact match of leaf_hash in level 0."""
        leaves = self._levels[0]
        index = bisect_left(leaves, leaf_hash)
        if index < len(leaves) and leaves[index] == leaf_hash:
            return index
        return None

    def get_proof(self, leaf_hash: bytes) -> MerkleProof:
        """
        Generate inclusion proof for a leaf.

        Args:
            leaf_hash: Hash of the leaf to prove

        Returns:
            MerkleProof for the leaf

        Raises:
            LeafNotFoundError: If the leaf is not in the tree
        """
        index = self.index_of(leaf_hash)
        if index is None:
            raise LeafNotFoundError(f"Leaf {leaf_hash.hex()[:16]}... not found in tree")
        return self._proof_at(index)

    def get_all_proofs(self) -> list[MerkleProof]:
        """Generate proofs for all leaves, in level-0 order."""
        return [self._proof_at(i) for i in range(self.leaf_count)]

    def _proof_at(self, index: int) -> MerkleProof:
        leaf_hash = self._levels[0][index]
        siblings = []
        for level in self._levels[:-1]:
            sibling_index = index - 1 if index % 2 == 1 else index + 1
            # Out of range means this node was promoted at this level
            if sibling_index < len(level):
                siblings.append(level[sibling_index])
            index //= 2

        return MerkleProof(
            leaf_hash=leaf_hash,
            siblings=tuple(siblings),
            root_hash=self.root,
        )


def compute_root_from_proof(leaf_hash: bytes, siblings: Sequence[bytes]) -> bytes:
    """
    Compute the root hash from a leaf and its sibling path.

    Args:
        leaf_hash: Hash of the leaf
        siblings: Sibling hashes ordered from leaf level to root

    Returns:
        Computed root hash
    """
    current = leaf_hash
    for sibling in siblings:
        current = hash_pair(current, sibling)
    return current


def verify_proof(leaf_hash: bytes, siblings: Sequence[bytes], expected_root: bytes) -> bool:
    """Check that the sibling path reconstructs expected_root."""
    return compute_root_from_proof(leaf_hash, siblings) == expected_root


def verify_membership(
    leaf_hash: bytes,
    siblings: Sequence[bytes],
    expected_root: bytes,
    expiration: int,
    now: int,
) -> None:
    """
    Verify a subscriber's membership proof and expiration.

    The expiration gate is evaluated first and independently of the proof,
    so an expired leaf is rejected even with a valid path.

    Args:
        leaf_hash: Leaf committing (identity, expiration)
        siblings: Sibling path from the tree snapshot
        expected_root: Published root to check against
        expiration: Claimed expiration (Unix seconds)
        now: Current time of the verifying party (Unix seconds)

    Raises:
        SubscriptionExpiredError: If expiration <= now
        ProofMismatchError: If the path does not reconstruct expected_root
    """
    if expiration <= now:
        raise SubscriptionExpiredError(
            f"Subscription expired at {expiration} (now {now})"
        )

    if not verify_proof(leaf_hash, siblings, expected_root):
        raise ProofMismatchError("Proof does not reconstruct the expected root")
