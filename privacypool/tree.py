"""
Append-only commitment tree.

The tree has a fixed depth D and therefore a fixed capacity of 2**D leaves.
Nodes are kept in an arena of per-level rows: `levels[0]` holds the leaves,
`levels[D]` holds the root. Only slots that have been written to are stored;
every other slot takes the canonical empty hash of its level.

Besides the current root the tree remembers the `root_history` roots that
preceded it, so that a proof built against a root that has just been
superseded by someone else's deposit is still accepted.
"""

import functools
from dataclasses import dataclass, field
from typing import Sequence

from privacypool.crypto import Commitment, Hash, MerkleRoot
from privacypool.errors import CapacityExceeded

EMPTY_LEAF = Hash(b"PRIVACY_POOL_EMPTY_LEAF")


def node_hash(left: bytes, right: bytes) -> Hash:
    return Hash(b"PRIVACY_POOL_NODE", left, right)


@functools.cache
def zero_hashes(depth: int) -> tuple[Hash, ...]:
    """
    zero_hashes(D)[l] is the root of an empty subtree of height l.
    """
    zeros = [EMPTY_LEAF]
    for _ in range(depth):
        zeros.append(node_hash(zeros[-1], zeros[-1]))
    return tuple(zeros)


def merkle_root(leaves: Sequence[bytes], depth: int) -> Hash:
    """
    Computes the root over `leaves` bottom-up, padding every level with the
    canonical empty hash.
    """
    assert len(leaves) <= 2**depth
    zeros = zero_hashes(depth)
    nodes = list(leaves)
    for level in range(depth):
        if len(nodes) % 2 == 1:
            nodes.append(zeros[level])
        nodes = [node_hash(nodes[i], nodes[i + 1]) for i in range(0, len(nodes), 2)]
    return nodes[0] if nodes else zeros[depth]


@dataclass
class MerkleProof:
    leaf_index: int
    siblings: list[bytes]

    def root_for(self, leaf: bytes) -> Hash:
        node = leaf
        position = self.leaf_index
        for sibling in self.siblings:
            if position % 2 == 0:
                node = node_hash(node, sibling)
            else:
                node = node_hash(sibling, node)
            position //= 2
        return node

    def verify(self, leaf: bytes, root: bytes) -> bool:
        return self.root_for(leaf) == root


@dataclass
class CommitmentTree:
    depth: int
    # Number of superseded roots that are still accepted.
    root_history: int = 30

    levels: list[list[bytes]] = field(init=False)
    # immutable, replaced on every insert, so it can be read without locking
    roots: tuple[bytes, ...] = field(init=False)

    def __post_init__(self):
        assert self.depth > 0, self.depth
        assert self.root_history >= 0, self.root_history
        self.levels = [[] for _ in range(self.depth + 1)]
        self.roots = (zero_hashes(self.depth)[self.depth],)

    @property
    def capacity(self) -> int:
        return 2**self.depth

    @property
    def size(self) -> int:
        return len(self.levels[0])

    def can_insert(self, count: int = 1) -> bool:
        return self.size + count <= self.capacity

    def insert(self, commitment: Commitment) -> tuple[int, MerkleRoot]:
        if not self.can_insert():
            raise CapacityExceeded(self.capacity)

        zeros = zero_hashes(self.depth)
        leaf_index = self.size
        self.levels[0].append(commitment)

        node = commitment
        position = leaf_index
        for level in range(self.depth):
            if position % 2 == 0:
                # we always write to the right edge, so the right sibling is empty
                node = node_hash(node, zeros[level])
            else:
                node = node_hash(self.levels[level][position - 1], node)
            position //= 2

            parents = self.levels[level + 1]
            if position < len(parents):
                parents[position] = node
            else:
                parents.append(node)

        self.roots = (*self.roots, node)[-(self.root_history + 1) :]
        return leaf_index, node

    def prove_membership(self, leaf_index: int) -> MerkleProof:
        if not 0 <= leaf_index < self.size:
            raise IndexError(f"no leaf at index {leaf_index}")

        zeros = zero_hashes(self.depth)
        siblings = []
        position = leaf_index
        for level in range(self.depth):
            row = self.levels[level]
            sibling = position ^ 1
            siblings.append(row[sibling] if sibling < len(row) else zeros[level])
            position //= 2
        return MerkleProof(leaf_index, siblings)

    def leaf(self, leaf_index: int) -> Commitment:
        return self.levels[0][leaf_index]

    def current_root(self) -> MerkleRoot:
        return self.roots[-1]

    def is_recent_root(self, root: bytes) -> bool:
        return root in self.roots

    def recent_roots(self) -> list[MerkleRoot]:
        return list(self.roots)

    def copy(self) -> "CommitmentTree":
        tree = CommitmentTree(self.depth, self.root_history)
        tree.levels = [list(row) for row in self.levels]
        tree.roots = self.roots
        return tree
