"""
Hash algorithms, data hashes and the streaming data hasher.

Algorithms are identified on the wire by a one-byte id. A ``DataHash`` in its
wire form (the *imprint*) is that id followed by the raw digest.
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, ClassVar

from ksi.core.errors import (
    AlgorithmDeprecatedError,
    InvalidArgumentError,
    MalformedTlvError,
    UnsupportedAlgorithmError,
)

_BLOCK_SIZE = 64 * 1024


def _normalize_name(name: str) -> str:
    return name.replace("-", "").replace("_", "").upper()


@dataclass(frozen=True, slots=True)
class HashAlgorithm:
    """A hash function from the KSI algorithm registry.

    Attributes
    ----------
    id:
        One-byte wire identifier.
    name:
        Canonical display name, e.g. ``"SHA-256"``.
    digest_size:
        Digest length in bytes.
    hashlib_name:
        Name passed to :func:`hashlib.new`.
    deprecated_since:
        UTC epoch seconds after which new signatures must not use the
        algorithm, or ``None``.
    obsolete_since:
        UTC epoch seconds after which the algorithm is not trusted at all,
        or ``None``.
    """

    id: int
    name: str
    digest_size: int
    hashlib_name: str
    deprecated_since: int | None = None
    obsolete_since: int | None = None

    _registry: ClassVar[dict[int, HashAlgorithm]] = {}

    @classmethod
    def register(cls, algorithm: HashAlgorithm) -> HashAlgorithm:
        cls._registry[algorithm.id] = algorithm
        return algorithm

    @classmethod
    def by_id(cls, algorithm_id: int) -> HashAlgorithm:
        try:
            return cls._registry[algorithm_id]
        except KeyError:
            raise UnsupportedAlgorithmError(
                f"Unknown hash algorithm id 0x{algorithm_id:02x}"
            ) from None

    @classmethod
    def by_name(cls, name: str) -> HashAlgorithm:
        wanted = _normalize_name(name)
        aliases = {"SHA256": "SHA2256", "SHA384": "SHA2384", "SHA512": "SHA2512"}
        wanted = aliases.get(wanted, wanted)
        for algorithm in cls._registry.values():
            candidate = _normalize_name(algorithm.name)
            if candidate == wanted or aliases.get(candidate) == wanted:
                return algorithm
        raise UnsupportedAlgorithmError(f"Unknown hash algorithm {name!r}")

    @classmethod
    def all(cls) -> list[HashAlgorithm]:
        return sorted(cls._registry.values(), key=lambda algorithm: algorithm.id)

    @property
    def is_available(self) -> bool:
        """Whether the running interpreter can compute this digest."""
        try:
            hashlib.new(self.hashlib_name)
        except ValueError:
            return False
        return True

    def is_deprecated_at(self, timestamp: int) -> bool:
        return self.deprecated_since is not None and self.deprecated_since <= timestamp

    def is_obsolete_at(self, timestamp: int) -> bool:
        return self.obsolete_since is not None and self.obsolete_since <= timestamp

    def new(self) -> Any:
        """Return a fresh hashlib object for this algorithm."""
        try:
            return hashlib.new(self.hashlib_name)
        except ValueError:
            raise UnsupportedAlgorithmError(
                f"Hash algorithm {self.name} is not available in this runtime"
            ) from None

    def digest(self, *parts: bytes) -> DataHash:
        hasher = self.new()
        for part in parts:
            hasher.update(part)
        return DataHash(self, hasher.digest())

    def __str__(self) -> str:
        return self.name


SHA1 = HashAlgorithm.register(
    HashAlgorithm(0x00, "SHA-1", 20, "sha1", deprecated_since=1467331200)
)
SHA2_256 = HashAlgorithm.register(HashAlgorithm(0x01, "SHA-256", 32, "sha256"))
RIPEMD_160 = HashAlgorithm.register(HashAlgorithm(0x02, "RIPEMD-160", 20, "ripemd160"))
SHA2_384 = HashAlgorithm.register(HashAlgorithm(0x04, "SHA-384", 48, "sha384"))
SHA2_512 = HashAlgorithm.register(HashAlgorithm(0x05, "SHA-512", 64, "sha512"))
SHA3_224 = HashAlgorithm.register(HashAlgorithm(0x07, "SHA3-224", 28, "sha3_224"))
SHA3_256 = HashAlgorithm.register(HashAlgorithm(0x08, "SHA3-256", 32, "sha3_256"))
SHA3_384 = HashAlgorithm.register(HashAlgorithm(0x09, "SHA3-384", 48, "sha3_384"))
SHA3_512 = HashAlgorithm.register(HashAlgorithm(0x0A, "SHA3-512", 64, "sha3_512"))
SM3 = HashAlgorithm.register(HashAlgorithm(0x0B, "SM3", 32, "sm3"))


@dataclass(frozen=True, slots=True)
class DataHash:
    """A digest tagged with the algorithm that produced it."""

    algorithm: HashAlgorithm
    digest: bytes

    def __post_init__(self) -> None:
        if len(self.digest) != self.algorithm.digest_size:
            raise InvalidArgumentError(
                f"{self.algorithm.name} digest must be {self.algorithm.digest_size} bytes, "
                f"got {len(self.digest)}"
            )

    @classmethod
    def from_imprint(cls, imprint: bytes) -> DataHash:
        if not imprint:
            raise MalformedTlvError("Empty imprint")
        algorithm = HashAlgorithm.by_id(imprint[0])
        if len(imprint) != algorithm.digest_size + 1:
            raise MalformedTlvError(
                f"Imprint length {len(imprint)} does not match {algorithm.name}"
            )
        return cls(algorithm, bytes(imprint[1:]))

    @classmethod
    def from_hex(cls, value: str, algorithm: HashAlgorithm = SHA2_256) -> DataHash:
        return cls(algorithm, bytes.fromhex(value))

    @property
    def imprint(self) -> bytes:
        return bytes([self.algorithm.id]) + self.digest

    @property
    def hex(self) -> str:
        return self.digest.hex()

    def __str__(self) -> str:
        return f"{self.algorithm.name}:{self.digest.hex()}"


class DataHasher:
    """Streaming hasher producing :class:`DataHash` values.

    ``finalize`` may be called repeatedly and returns the same hash until
    ``reset`` is called. Feeding data after finalizing is an error.
    """

    def __init__(self, algorithm: HashAlgorithm = SHA2_256, *, strict: bool = False) -> None:
        if strict and algorithm.is_deprecated_at(int(time.time())):
            raise AlgorithmDeprecatedError(
                f"Hash algorithm {algorithm.name} is deprecated"
            )
        self.algorithm = algorithm
        self._hasher = algorithm.new()
        self._result: DataHash | None = None

    def update(self, data: bytes | bytearray | memoryview | BinaryIO | Path) -> DataHasher:
        if self._result is not None:
            raise InvalidArgumentError("Hasher already finalized; call reset() first")
        if isinstance(data, (bytes, bytearray, memoryview)):
            self._hasher.update(data)
        elif isinstance(data, Path):
            with data.open("rb") as stream:
                self._consume(stream)
        else:
            self._consume(data)
        return self

    def _consume(self, stream: BinaryIO) -> None:
        while True:
            block = stream.read(_BLOCK_SIZE)
            if not block:
                break
            self._hasher.update(block)

    def finalize(self) -> DataHash:
        if self._result is None:
            self._result = DataHash(self.algorithm, self._hasher.digest())
        return self._result

    def reset(self) -> DataHasher:
        self._hasher = self.algorithm.new()
        self._result = None
        return self


def hash_data(
    data: bytes | bytearray | memoryview | BinaryIO | Path,
    algorithm: HashAlgorithm = SHA2_256,
) -> DataHash:
    """Hash ``data`` in one call."""
    return DataHasher(algorithm).update(data).finalize()
