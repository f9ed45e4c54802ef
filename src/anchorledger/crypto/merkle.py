"""Merkle tree over an ordered sequence of SHA-256 leaf hashes.

Leaves are taken in the order given; ordering is the caller's
responsibility and is part of what the root commits to. Parents hash the
raw digest bytes of left then right. A level with an odd node count pairs
its last node with itself.

Zero leaves produce EMPTY_ROOT (the SHA-256 of empty input). A single
leaf is its own root.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Sequence


EMPTY_ROOT = hashlib.sha256(b"").hexdigest()
# e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855


@dataclass(frozen=True)
class MerkleProof:
    """An inclusion proof for the leaf at ``index``."""
    leaf_hash: str
    index: int
    path: tuple[tuple[str, str], ...]  # (sibling_hash, position: "L" | "R")
    root: str


class MerkleTree:
    """A Merkle tree that keeps every level for proof extraction.

    Usage:
        tree = MerkleTree()
        tree.add_leaf(leaf_a)
        tree.add_leaf(leaf_b)
        root = tree.compute_root()
        proof = tree.inclusion_proof(0)
        assert verify_proof(proof)
    """

    def __init__(self, leaves: Sequence[str] = ()) -> None:
        self._leaves: list[str] = []
        self._levels: list[list[str]] = []
        self._computed = False
        for leaf in leaves:
            self.add_leaf(leaf)

    def add_leaf(self, leaf_hash: str) -> None:
        """Append a leaf hash. Must be called before compute_root."""
        if self._computed:
            raise RuntimeError("Tree already computed. Create a new tree.")
        _to_bytes(leaf_hash)
        self._leaves.append(leaf_hash)

    @property
    def leaf_count(self) -> int:
        return len(self._leaves)

    @property
    def leaves(self) -> list[str]:
        return list(self._leaves)

    def compute_root(self) -> str:
        """Compute the root, building all levels bottom-up."""
        self._computed = True
        if not self._leaves:
            self._levels = []
            return EMPTY_ROOT

        self._levels = [list(self._leaves)]
        current = self._levels[0]
        while len(current) > 1:
            next_level: list[str] = []
            for i in range(0, len(current), 2):
                left = current[i]
                right = current[i + 1] if i + 1 < len(current) else left
                next_level.append(hash_pair(left, right))
            self._levels.append(next_level)
            current = next_level
        return current[0]

    def inclusion_proof(self, index: int) -> MerkleProof:
        """Sibling path from the leaf at ``index`` up to the root.

        Must call compute_root first.
        """
        if not self._computed:
            raise RuntimeError("Must call compute_root before generating proofs")
        if not 0 <= index < len(self._leaves):
            raise IndexError(f"Leaf index {index} out of range (0..{len(self._leaves) - 1})")

        path: list[tuple[str, str]] = []
        current_idx = index
        for level in self._levels[:-1]:
            if current_idx % 2 == 0:
                sibling_idx = current_idx + 1
                if sibling_idx < len(level):
                    path.append((level[sibling_idx], "R"))
                else:
                    path.append((level[current_idx], "R"))  # Duplicate
            else:
                path.append((level[current_idx - 1], "L"))
            current_idx //= 2

        return MerkleProof(
            leaf_hash=self._leaves[index],
            index=index,
            path=tuple(path),
            root=self._levels[-1][0],
        )


def compute_root(leaves: Sequence[str]) -> str:
    """Root of the tree over ``leaves`` in the given order."""
    return MerkleTree(leaves).compute_root()


def verify_proof(proof: MerkleProof) -> bool:
    """Re-fold the leaf with each sibling in order and compare to the root."""
    node = proof.leaf_hash
    for sibling, position in proof.path:
        if position == "L":
            node = hash_pair(sibling, node)
        elif position == "R":
            node = hash_pair(node, sibling)
        else:
            raise ValueError(f"Invalid proof position: {position!r}")
    return node.lower() == proof.root.lower()


def hash_pair(left: str, right: str) -> str:
    """SHA-256 of the raw bytes of left followed by right."""
    return hashlib.sha256(_to_bytes(left) + _to_bytes(right)).hexdigest()


def _to_bytes(digest: str) -> bytes:
    """Decode a 32-byte hex digest, with or without a 0x prefix."""
    raw = digest.removeprefix("0x")
    try:
        data = bytes.fromhex(raw)
    except ValueError as e:
        raise ValueError(f"Not a hex digest: {digest!r}") from e
    if len(data) != 32:
        raise ValueError(f"Expected a 32-byte digest, got {len(data)} bytes: {digest!r}")
    return data
