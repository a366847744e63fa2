"""
Hash chain arithmetic for KSI signatures.

Pure functions over the signature model: aggregation chain outputs with
level tracking, calendar chain outputs, the registration time implied by a
calendar chain's shape, and the RFC 3161 record output.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ksi.core.crypto.hashing import DataHash
from ksi.core.errors import MalformedSignatureError

if TYPE_CHECKING:
    from ksi.modules.signature.models import (
        AggregationHashChain,
        CalendarHashChain,
        RFC3161Record,
    )

MAX_LEVEL = 0xFF
_CALENDAR_STEP_BYTE = b"\xff"


@dataclass(frozen=True, slots=True)
class ChainResult:
    """Output hash of an aggregation chain and the tree level it ends at."""

    output_hash: DataHash
    level: int


def aggregate_chain(chain: AggregationHashChain, start_level: int = 0) -> ChainResult:
    """Fold an aggregation chain from its input hash.

    Each link raises the level by its correction plus one and hashes
    ``left || right || level`` with the chain's aggregation algorithm.
    """
    from ksi.modules.signature.models import LinkDirection

    algorithm = chain.aggregation_algorithm
    current = chain.input_hash
    level = start_level
    for link in chain.links:
        level += link.level_correction + 1
        if level > MAX_LEVEL:
            raise MalformedSignatureError(f"Aggregation chain level {level} exceeds {MAX_LEVEL}")
        level_byte = bytes([level])
        if link.direction is LinkDirection.LEFT:
            current = algorithm.digest(current.imprint, link.sibling_data, level_byte)
        else:
            current = algorithm.digest(link.sibling_data, current.imprint, level_byte)
    return ChainResult(current, level)


def aggregate_chains(
    chains: Sequence[AggregationHashChain],
    start_level: int = 0,
) -> list[ChainResult]:
    """Fold every chain in order, carrying the level from one chain to the next."""
    results: list[ChainResult] = []
    level = start_level
    for chain in chains:
        result = aggregate_chain(chain, level)
        results.append(result)
        level = result.level
    return results


def calendar_output(chain: CalendarHashChain) -> DataHash:
    """Fold a calendar chain; each step uses the sibling's hash algorithm."""
    from ksi.modules.signature.models import LinkDirection

    current = chain.input_hash
    for link in chain.links:
        sibling = link.sibling_hash
        if link.direction is LinkDirection.LEFT:
            left, right = current, sibling
        else:
            left, right = sibling, current
        current = sibling.algorithm.digest(left.imprint, right.imprint, _CALENDAR_STEP_BYTE)
    return current


def high_bit(value: int) -> int:
    """Largest power of two not exceeding ``value``."""
    return 1 << (value.bit_length() - 1)


def calendar_registration_time(chain: CalendarHashChain) -> int:
    """Derive the registration time encoded by the shape of a calendar chain.

    The calendar tree has one leaf per second up to the publication time.
    Walking the links from the root, a left link descends into the perfect
    left subtree and a right link skips it.
    """
    from ksi.modules.signature.models import LinkDirection

    remaining = chain.publication_time
    registration_time = 0
    for link in reversed(chain.links):
        if remaining <= 0:
            raise MalformedSignatureError(
                "Calendar chain is longer than its publication time allows"
            )
        if link.direction is LinkDirection.LEFT:
            remaining = high_bit(remaining) - 1
        else:
            registration_time += high_bit(remaining)
            remaining -= high_bit(remaining)
    if remaining != 0:
        raise MalformedSignatureError(
            "Calendar chain is shorter than its publication time requires"
        )
    return registration_time


def rfc3161_output(record: RFC3161Record) -> DataHash:
    """Hash an RFC 3161 record into the input of the lowest aggregation chain."""
    tst_info = record.tst_info_algorithm.digest(
        record.tst_info_prefix,
        record.input_hash.digest,
        record.tst_info_suffix,
    )
    return record.signed_attributes_algorithm.digest(
        record.signed_attributes_prefix,
        tst_info.digest,
        record.signed_attributes_suffix,
    )
