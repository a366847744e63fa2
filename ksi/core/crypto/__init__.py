"""
Cryptographic primitives for KSI signatures.

Pure library modules:
- **hashing**: hash algorithm registry, imprints and the streaming hasher
- **tlv**: type-length-value codec used by every KSI structure
- **merkle**: client-side aggregation trees for block signing
- **pki**: X.509 trust store, subject selectors and CMS signature checks
"""

from ksi.core.crypto.hashing import (
    SHA1,
    SHA2_256,
    SHA2_384,
    SHA2_512,
    DataHash,
    DataHasher,
    HashAlgorithm,
    hash_data,
)
from ksi.core.crypto.merkle import MerkleStep, MerkleTree, build_merkle_tree
from ksi.core.crypto.tlv import TLV, TLVGroup, decode, decode_all

__all__ = [
    "HashAlgorithm",
    "DataHash",
    "DataHasher",
    "hash_data",
    "SHA1",
    "SHA2_256",
    "SHA2_384",
    "SHA2_512",
    "TLV",
    "TLVGroup",
    "decode",
    "decode_all",
    "MerkleStep",
    "MerkleTree",
    "build_merkle_tree",
]
