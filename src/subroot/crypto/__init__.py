"""
Subscription Root Service - Cryptographic Utilities

Provides leaf encoding, Merkle tree construction, proof generation,
verification, and the root authority signer.
"""

from subroot.crypto.authority import AuthoritySigner, verify_authority_signature
from subroot.crypto.leaf import InvalidIdentityLength, encode_leaf, parse_identity
from subroot.crypto.merkle import (
    EmptyTreeError,
    LeafNotFoundError,
    MerkleError,
    MerkleProof,
    MerkleTree,
    ProofMismatchError,
    SubscriptionExpiredError,
    compute_root_from_proof,
    hash_pair,
    verify_membership,
    verify_proof,
)

__all__ = [
    "AuthoritySigner",
    "verify_authority_signature",
    "InvalidIdentityLength",
    "encode_leaf",
    "parse_identity",
    "EmptyTreeError",
    "LeafNotFoundError",
    "MerkleError",
    "MerkleProof",
    "MerkleTree",
    "ProofMismatchError",
    "SubscriptionExpiredError",
    "compute_root_from_proof",
    "hash_pair",
    "verify_membership",
    "verify_proof",
]
