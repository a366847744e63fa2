"""
Block signing: many hashes, one aggregation round-trip.

Leaves are aggregated locally into a Merkle tree; only the root is sent to
the aggregator. Each leaf's signature is the root signature with the leaf's
path prepended as a new lowest aggregation hash chain.
"""

from __future__ import annotations

import dataclasses

from ksi.core.crypto.hashing import SHA2_256, DataHash, HashAlgorithm
from ksi.core.crypto.merkle import MerkleStep, MerkleTree, build_merkle_tree
from ksi.core.errors import BlockTooLargeError, InvalidArgumentError
from ksi.core.logging import get_logger
from ksi.modules.signature.models import (
    AggregationChainLink,
    AggregationHashChain,
    IdentityMetadata,
    KSISignature,
    LinkDirection,
)
from ksi.modules.signing.service import SigningService

logger = get_logger(__name__)


class BlockSigner:
    """Collects leaves and signs them together.

    ``sign`` either returns one signature per leaf, in the order the leaves
    were added, or raises without producing any.
    """

    def __init__(
        self,
        signing_service: SigningService,
        *,
        max_leaves: int = 1024,
        hash_algorithm: HashAlgorithm = SHA2_256,
    ) -> None:
        if max_leaves < 1:
            raise InvalidArgumentError("max_leaves must be at least 1")
        self.signing_service = signing_service
        self.max_leaves = max_leaves
        self.hash_algorithm = hash_algorithm
        self._leaves: list[tuple[DataHash, IdentityMetadata | None]] = []

    def __len__(self) -> int:
        return len(self._leaves)

    def add(self, data_hash: DataHash, metadata: IdentityMetadata | None = None) -> None:
        if len(self._leaves) >= self.max_leaves:
            raise BlockTooLargeError(
                f"Block signer already holds the maximum of {self.max_leaves} leaves"
            )
        self._leaves.append((data_hash, metadata))

    async def sign(self) -> list[KSISignature]:
        if not self._leaves:
            raise InvalidArgumentError("Block signer has no leaves to sign")
        leaves = list(self._leaves)

        if len(leaves) == 1 and leaves[0][1] is None:
            signatures = [await self.signing_service.sign(leaves[0][0])]
            self._leaves.clear()
            return signatures

        tree = build_merkle_tree(
            [
                (data_hash, metadata.to_tlv().value if metadata is not None else None)
                for data_hash, metadata in leaves
            ],
            self.hash_algorithm,
        )
        logger.debug("ksi_block_tree_built", leaves=len(leaves), level=tree.level)

        root_signature = await self.signing_service.sign(tree.root, level=tree.level)
        signatures = [
            self._leaf_signature(root_signature, tree, position, data_hash, metadata)
            for position, (data_hash, metadata) in enumerate(leaves)
        ]
        self._leaves.clear()

        logger.info(
            "ksi_block_signed",
            leaves=len(signatures),
            aggregation_time=root_signature.aggregation_time,
        )
        return signatures

    def _leaf_signature(
        self,
        root_signature: KSISignature,
        tree: MerkleTree,
        position: int,
        data_hash: DataHash,
        metadata: IdentityMetadata | None,
    ) -> KSISignature:
        lowest = root_signature.aggregation_chains[0]
        chain = AggregationHashChain(
            aggregation_time=lowest.aggregation_time,
            chain_index=lowest.chain_index + (tree.chain_index(position),),
            input_hash=data_hash,
            aggregation_algorithm=self.hash_algorithm,
            links=tuple(_link(step, metadata) for step in tree.paths[position]),
        )
        return dataclasses.replace(
            root_signature,
            aggregation_chains=(chain, *root_signature.aggregation_chains),
        )


def _link(step: MerkleStep, metadata: IdentityMetadata | None) -> AggregationChainLink:
    direction = LinkDirection.LEFT if step.current_on_left else LinkDirection.RIGHT
    if step.is_metadata:
        return AggregationChainLink(direction, metadata=metadata, level_correction=0)
    return AggregationChainLink(
        direction,
        sibling_hash=DataHash.from_imprint(step.sibling),
        level_correction=step.level_correction,
    )
