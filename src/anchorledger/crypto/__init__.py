"""Cryptographic primitives — canonical encoding, leaf hashing, Merkle trees, anchoring."""

from anchorledger.crypto.canonical import canonical_encode, canonical_hash
from anchorledger.crypto.leaf import leaf_hash, record_hash
from anchorledger.crypto.merkle import EMPTY_ROOT, MerkleTree, compute_root, verify_proof

__all__ = [
    "EMPTY_ROOT",
    "MerkleTree",
    "canonical_encode",
    "canonical_hash",
    "compute_root",
    "leaf_hash",
    "record_hash",
    "verify_proof",
]
