"""
Merkle tree construction for client-side aggregation.

Builds the tree a block signer sends to the aggregator as a single root hash
and records, for each leaf, the path of steps that lead from the leaf to the
root. Nodes are paired left-first level by level; if a level has an odd
number of nodes, the last one is paired with itself. Every internal node
hashes ``left || right || level`` where ``level`` is one more than the
higher of its children.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from ksi.core.crypto.hashing import DataHash, HashAlgorithm

MAX_TREE_LEVEL = 0xFF


@dataclass(frozen=True, slots=True)
class MerkleStep:
    """One step of a leaf's path towards the root.

    Attributes
    ----------
    current_on_left:
        ``True`` if the running hash is the left input of this step.
    sibling:
        Bytes hashed on the other side: a hash imprint, or the encoded
        identity metadata for a leaf's first step.
    level_correction:
        Levels skipped below the parent, beyond the implicit one.
    is_metadata:
        ``True`` for the step that binds a leaf to its identity metadata.
    """

    current_on_left: bool
    sibling: bytes
    level_correction: int = 0
    is_metadata: bool = False


@dataclass
class MerkleTree:
    """A built tree: root, root level, and one path per leaf in input order."""

    root: DataHash
    level: int
    paths: list[list[MerkleStep]] = field(default_factory=list)

    def chain_index(self, leaf: int) -> int:
        """Position of ``leaf`` as root-to-leaf direction bits behind a leading 1.

        A bit is 1 where the leaf's subtree is the left child.
        """
        index = 1
        for step in reversed(self.paths[leaf]):
            if step.is_metadata:
                continue
            index = (index << 1) | int(step.current_on_left)
        return index


@dataclass
class _Node:
    hash: DataHash
    level: int
    leaves: list[int]


def build_merkle_tree(
    leaves: Sequence[tuple[DataHash, bytes | None]],
    algorithm: HashAlgorithm,
) -> MerkleTree:
    """Build the aggregation tree over ``leaves``.

    Parameters
    ----------
    leaves:
        Pairs of leaf hash and optional encoded identity metadata. A leaf
        with metadata is first hashed together with it at level 1.
    algorithm:
        Hash algorithm for every internal node.

    Raises
    ------
    ValueError
        If ``leaves`` is empty or the tree would exceed level 255.
    """
    if not leaves:
        raise ValueError("Cannot build a Merkle tree from an empty list")

    paths: list[list[MerkleStep]] = [[] for _ in leaves]
    nodes: list[_Node] = []
    for position, (leaf_hash, metadata) in enumerate(leaves):
        if metadata is None:
            nodes.append(_Node(leaf_hash, 0, [position]))
            continue
        combined = algorithm.digest(leaf_hash.imprint, metadata, bytes([1]))
        paths[position].append(MerkleStep(True, metadata, 0, is_metadata=True))
        nodes.append(_Node(combined, 1, [position]))

    while len(nodes) > 1:
        next_level: list[_Node] = []
        for i in range(0, len(nodes), 2):
            left = nodes[i]
            right = nodes[i + 1] if i + 1 < len(nodes) else nodes[i]
            level = max(left.level, right.level) + 1
            if level > MAX_TREE_LEVEL:
                raise ValueError(f"Merkle tree level {level} exceeds {MAX_TREE_LEVEL}")
            parent = algorithm.digest(left.hash.imprint, right.hash.imprint, bytes([level]))

            for leaf in left.leaves:
                paths[leaf].append(MerkleStep(True, right.hash.imprint, level - left.level - 1))
            if right is left:
                next_level.append(_Node(parent, level, left.leaves))
                continue
            for leaf in right.leaves:
                paths[leaf].append(MerkleStep(False, left.hash.imprint, level - right.level - 1))
            next_level.append(_Node(parent, level, left.leaves + right.leaves))
        nodes = next_level

    return MerkleTree(root=nodes[0].hash, level=nodes[0].level, paths=paths)
