"""
KSI signature object model.

Every record is a frozen dataclass built from (``from_tlv``) and serialized
to (``to_tlv``) its TLV element. A decoded record keeps its element in
``source`` and re-emits it as read, so a parsed signature re-encodes byte
for byte with element flags intact. Records built from fields encode known
elements first, then the unknown non-critical children in ``unknown``.
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import zlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import BinaryIO

from ksi.core.crypto.hashing import DataHash, HashAlgorithm
from ksi.core.crypto.tlv import TLV, TLVGroup, decode, retain_source
from ksi.core.errors import (
    InvalidArgumentError,
    MalformedPublicationCodeError,
    MalformedSignatureError,
    MalformedTlvError,
    UnsupportedAlgorithmError,
)
from ksi.modules.signature.chains import (
    MAX_LEVEL,
    ChainResult,
    aggregate_chain,
    calendar_output,
    calendar_registration_time,
    rfc3161_output,
)

# Top-level element tags
SIGNATURE_TAG = 0x0800
AGGREGATION_HASH_CHAIN_TAG = 0x0801
CALENDAR_HASH_CHAIN_TAG = 0x0802
PUBLICATION_RECORD_TAG = 0x0803
CALENDAR_AUTH_RECORD_TAG = 0x0805
RFC3161_RECORD_TAG = 0x0806

PUBLISHED_DATA_TAG = 0x10
SIGNATURE_DATA_TAG = 0x0B
LEFT_LINK_TAG = 0x07
RIGHT_LINK_TAG = 0x08
METADATA_PADDING_TAG = 0x1E

_SIGNATURE_ERRORS = (MalformedTlvError, InvalidArgumentError, UnsupportedAlgorithmError)


def _retagged(source: TLV, tag: int) -> TLV:
    """``source`` under ``tag``, e.g. a publications file record placed in a signature."""
    if source.tag == tag:
        return source
    return TLV(tag, source.value)


class LinkDirection(StrEnum):
    """Position of the running hash in a chain step.

    ``LEFT``: the running hash is the left input, the sibling the right one.
    """

    LEFT = "left"
    RIGHT = "right"

    @property
    def tag(self) -> int:
        return LEFT_LINK_TAG if self is LinkDirection.LEFT else RIGHT_LINK_TAG

    @classmethod
    def from_tag(cls, tag: int) -> LinkDirection:
        return cls.LEFT if tag == LEFT_LINK_TAG else cls.RIGHT


class IdentityType(StrEnum):
    METADATA = "metadata"
    LEGACY = "legacy"


@dataclass(frozen=True, slots=True)
class Identity:
    """Decoded client identity carried by an aggregation chain link."""

    type: IdentityType
    client_id: str
    machine_id: str | None = None
    sequence_number: int | None = None
    request_time: int | None = None


# ----------------------------------------------------------------------
# Identity metadata
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class IdentityMetadata:
    """Identity record embedded in an aggregation chain link.

    ``padding`` holds the value of the leading padding element. When not
    given it is chosen so the encoded record has even length, which keeps
    its first byte from being read as a hash algorithm id. An empty value
    means the record carries no padding element.
    """

    client_id: str
    machine_id: str | None = None
    sequence_number: int | None = None
    request_time: int | None = None
    padding: bytes | None = None
    unknown: tuple[TLV, ...] = ()
    source: TLV | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.client_id:
            raise InvalidArgumentError("Identity metadata requires a client id")
        if self.padding is None:
            body_length = sum(len(element.encode()) for element in self._body())
            padding = b"\x01" if body_length % 2 else b"\x01\x01"
            object.__setattr__(self, "padding", padding)

    def _body(self) -> list[TLV]:
        elements = [TLV.utf8(0x01, self.client_id)]
        if self.machine_id is not None:
            elements.append(TLV.utf8(0x02, self.machine_id))
        if self.sequence_number is not None:
            elements.append(TLV.integer(0x03, self.sequence_number))
        if self.request_time is not None:
            elements.append(TLV.integer(0x04, self.request_time))
        return elements + list(self.unknown)

    def to_tlv(self) -> TLV:
        if self.source is not None:
            return self.source
        elements = self._body()
        if self.padding:
            elements.insert(
                0, TLV(METADATA_PADDING_TAG, self.padding, non_critical=True, forward=True)
            )
        return TLV.composite(0x04, elements)

    @classmethod
    def from_tlv(cls, tlv: TLV) -> IdentityMetadata:
        group = TLVGroup(tlv, {METADATA_PADDING_TAG, 0x01, 0x02, 0x03, 0x04})
        padding = group.optional(METADATA_PADDING_TAG)
        machine_id = group.optional(0x02)
        sequence_number = group.optional(0x03)
        request_time = group.optional(0x04)
        metadata = cls(
            client_id=group.one(0x01).as_str(),
            machine_id=machine_id.as_str() if machine_id else None,
            sequence_number=sequence_number.as_int() if sequence_number else None,
            request_time=request_time.as_int() if request_time else None,
            padding=padding.value if padding else b"",
            unknown=group.unknown,
        )
        return retain_source(metadata, tlv)

    @property
    def identity(self) -> Identity:
        return Identity(
            IdentityType.METADATA,
            self.client_id,
            self.machine_id,
            self.sequence_number,
            self.request_time,
        )


def decode_legacy_id(value: bytes) -> str:
    """Decode a legacy client id: ``0x03 0x00 length utf8 zero-padding``."""
    if len(value) < 3 or value[0] != 0x03 or value[1] != 0x00:
        raise MalformedTlvError("Legacy id has an invalid prefix")
    length = value[2]
    if 3 + length > len(value) or any(value[3 + length :]):
        raise MalformedTlvError("Legacy id has an invalid length or padding")
    try:
        return value[3 : 3 + length].decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedTlvError("Legacy id is not valid UTF-8") from exc


# ----------------------------------------------------------------------
# Aggregation hash chain
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AggregationChainLink:
    """One step of an aggregation hash chain.

    Exactly one of ``sibling_hash``, ``metadata`` and ``legacy_id`` is set.
    """

    direction: LinkDirection
    sibling_hash: DataHash | None = None
    metadata: IdentityMetadata | None = None
    legacy_id: bytes | None = None
    level_correction: int = 0
    unknown: tuple[TLV, ...] = ()
    source: TLV | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        present = [
            value
            for value in (self.sibling_hash, self.metadata, self.legacy_id)
            if value is not None
        ]
        if len(present) != 1:
            raise MalformedSignatureError(
                "Aggregation chain link needs exactly one of sibling hash, metadata, legacy id"
            )
        if not 0 <= self.level_correction <= MAX_LEVEL:
            raise MalformedSignatureError(
                f"Level correction {self.level_correction} out of range"
            )

    @property
    def sibling_data(self) -> bytes:
        """Bytes hashed on the sibling side of this step."""
        if self.sibling_hash is not None:
            return self.sibling_hash.imprint
        if self.metadata is not None:
            return self.metadata.to_tlv().value
        return self.legacy_id or b""

    @property
    def identity(self) -> Identity | None:
        if self.metadata is not None:
            return self.metadata.identity
        if self.legacy_id is not None:
            return Identity(IdentityType.LEGACY, decode_legacy_id(self.legacy_id))
        return None

    def to_tlv(self) -> TLV:
        if self.source is not None:
            return self.source
        elements: list[TLV] = []
        if self.level_correction:
            elements.append(TLV.integer(0x01, self.level_correction))
        if self.sibling_hash is not None:
            elements.append(TLV.imprint(0x02, self.sibling_hash))
        elif self.legacy_id is not None:
            elements.append(TLV.raw(0x03, self.legacy_id))
        elif self.metadata is not None:
            elements.append(self.metadata.to_tlv())
        elements.extend(self.unknown)
        return TLV.composite(self.direction.tag, elements)

    @classmethod
    def from_tlv(cls, tlv: TLV) -> AggregationChainLink:
        group = TLVGroup(tlv, {0x01, 0x02, 0x03, 0x04})
        correction = group.optional(0x01)
        sibling = group.optional(0x02)
        legacy = group.optional(0x03)
        metadata = group.optional(0x04)
        if legacy is not None:
            decode_legacy_id(legacy.value)
        link = cls(
            direction=LinkDirection.from_tag(tlv.tag),
            sibling_hash=sibling.as_imprint() if sibling else None,
            metadata=IdentityMetadata.from_tlv(metadata) if metadata else None,
            legacy_id=legacy.value if legacy else None,
            level_correction=correction.as_int() if correction else 0,
            unknown=group.unknown,
        )
        return retain_source(link, tlv)


@dataclass(frozen=True, slots=True)
class AggregationHashChain:
    """Merkle path within one aggregation round, lowest step first."""

    aggregation_time: int
    chain_index: tuple[int, ...]
    input_hash: DataHash
    aggregation_algorithm: HashAlgorithm
    links: tuple[AggregationChainLink, ...]
    input_data: bytes | None = None
    unknown: tuple[TLV, ...] = ()
    source: TLV | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.chain_index:
            raise MalformedSignatureError("Aggregation chain has no chain index")
        if not self.links:
            raise MalformedSignatureError("Aggregation chain has no links")

    def calculate_output(self, start_level: int = 0) -> ChainResult:
        return aggregate_chain(self, start_level)

    @property
    def identity(self) -> tuple[Identity, ...]:
        """Identities in this chain, highest link first."""
        found = (link.identity for link in reversed(self.links))
        return tuple(identity for identity in found if identity is not None)

    def to_tlv(self) -> TLV:
        if self.source is not None:
            return self.source
        elements = [TLV.integer(0x02, self.aggregation_time)]
        elements.extend(TLV.integer(0x03, index) for index in self.chain_index)
        if self.input_data is not None:
            elements.append(TLV.raw(0x04, self.input_data))
        elements.append(TLV.imprint(0x05, self.input_hash))
        elements.append(TLV.integer(0x06, self.aggregation_algorithm.id))
        elements.extend(link.to_tlv() for link in self.links)
        elements.extend(self.unknown)
        return TLV.composite(AGGREGATION_HASH_CHAIN_TAG, elements)

    @classmethod
    def from_tlv(cls, tlv: TLV) -> AggregationHashChain:
        group = TLVGroup(tlv, {0x02, 0x03, 0x04, 0x05, 0x06, LEFT_LINK_TAG, RIGHT_LINK_TAG})
        input_data = group.optional(0x04)
        chain = cls(
            aggregation_time=group.one(0x02).as_int(),
            chain_index=tuple(element.as_int() for element in group.many(0x03)),
            input_hash=group.one(0x05).as_imprint(),
            aggregation_algorithm=HashAlgorithm.by_id(group.one(0x06).as_int()),
            links=tuple(
                AggregationChainLink.from_tlv(element)
                for element in group.many(LEFT_LINK_TAG, RIGHT_LINK_TAG)
            ),
            input_data=input_data.value if input_data else None,
            unknown=group.unknown,
        )
        return retain_source(chain, tlv)


# ----------------------------------------------------------------------
# Calendar hash chain
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CalendarChainLink:
    direction: LinkDirection
    sibling_hash: DataHash

    def to_tlv(self) -> TLV:
        return TLV.imprint(self.direction.tag, self.sibling_hash)


@dataclass(frozen=True, slots=True)
class CalendarHashChain:
    """Path through the calendar tree from a round's leaf to a published root.

    ``aggregation_time`` is ``None`` when the element is absent on the wire,
    in which case it equals the publication time.
    """

    publication_time: int
    input_hash: DataHash
    links: tuple[CalendarChainLink, ...]
    aggregation_time: int | None = None
    unknown: tuple[TLV, ...] = ()
    source: TLV | None = field(default=None, init=False, repr=False, compare=False)

    @property
    def effective_aggregation_time(self) -> int:
        if self.aggregation_time is None:
            return self.publication_time
        return self.aggregation_time

    @property
    def output_hash(self) -> DataHash:
        return calendar_output(self)

    @property
    def registration_time(self) -> int:
        return calendar_registration_time(self)

    @property
    def publication_data(self) -> PublicationData:
        return PublicationData(self.publication_time, self.output_hash)

    def to_tlv(self) -> TLV:
        if self.source is not None:
            return self.source
        elements = [TLV.integer(0x01, self.publication_time)]
        if self.aggregation_time is not None:
            elements.append(TLV.integer(0x02, self.aggregation_time))
        elements.append(TLV.imprint(0x05, self.input_hash))
        elements.extend(link.to_tlv() for link in self.links)
        elements.extend(self.unknown)
        return TLV.composite(CALENDAR_HASH_CHAIN_TAG, elements)

    @classmethod
    def from_tlv(cls, tlv: TLV) -> CalendarHashChain:
        group = TLVGroup(tlv, {0x01, 0x02, 0x05, LEFT_LINK_TAG, RIGHT_LINK_TAG})
        aggregation_time = group.optional(0x02)
        chain = cls(
            publication_time=group.one(0x01).as_int(),
            input_hash=group.one(0x05).as_imprint(),
            links=tuple(
                CalendarChainLink(LinkDirection.from_tag(element.tag), element.as_imprint())
                for element in group.many(LEFT_LINK_TAG, RIGHT_LINK_TAG)
            ),
            aggregation_time=aggregation_time.as_int() if aggregation_time else None,
            unknown=group.unknown,
        )
        return retain_source(chain, tlv)


# ----------------------------------------------------------------------
# Publications
# ----------------------------------------------------------------------


_CODE_GROUP = 6


@dataclass(frozen=True, slots=True)
class PublicationData:
    """A published calendar root: publication time and root hash."""

    publication_time: int
    published_hash: DataHash
    source: TLV | None = field(default=None, init=False, repr=False, compare=False)

    @property
    def published_at(self) -> datetime:
        return datetime.fromtimestamp(self.publication_time, tz=UTC)

    def to_tlv(self, tag: int = PUBLISHED_DATA_TAG) -> TLV:
        if self.source is not None:
            return _retagged(self.source, tag)
        return TLV.composite(
            tag,
            [
                TLV.integer(0x02, self.publication_time),
                TLV.imprint(0x04, self.published_hash),
            ],
        )

    @classmethod
    def from_tlv(cls, tlv: TLV) -> PublicationData:
        group = TLVGroup(tlv, {0x02, 0x04})
        data = cls(group.one(0x02).as_int(), group.one(0x04).as_imprint())
        return retain_source(data, tlv)

    def to_code(self) -> str:
        """Render the publication code: Base32 groups of six, dash separated."""
        body = self.publication_time.to_bytes(8, "big") + self.published_hash.imprint
        body += zlib.crc32(body).to_bytes(4, "big")
        text = base64.b32encode(body).decode("ascii").rstrip("=")
        return "-".join(text[i : i + _CODE_GROUP] for i in range(0, len(text), _CODE_GROUP))

    @classmethod
    def from_code(cls, code: str) -> PublicationData:
        text = "".join(code.split()).replace("-", "").upper()
        text += "=" * (-len(text) % 8)
        try:
            body = base64.b32decode(text)
        except (binascii.Error, ValueError) as exc:
            raise MalformedPublicationCodeError(f"Publication code is not Base32: {exc}") from exc
        if len(body) < 8 + 1 + 4:
            raise MalformedPublicationCodeError("Publication code is too short")
        payload, checksum = body[:-4], body[-4:]
        if zlib.crc32(payload).to_bytes(4, "big") != checksum:
            raise MalformedPublicationCodeError("Publication code CRC32 mismatch")
        try:
            published_hash = DataHash.from_imprint(payload[8:])
        except _SIGNATURE_ERRORS as exc:
            raise MalformedPublicationCodeError(f"Publication code hash invalid: {exc}") from exc
        return cls(int.from_bytes(payload[:8], "big"), published_hash)

    def __str__(self) -> str:
        return self.to_code()


@dataclass(frozen=True, slots=True)
class PublicationRecord:
    """Publication data with its printed references and repository URIs.

    Used both as the publication record of an extended signature and as a
    record of the publications file.
    """

    publication_data: PublicationData
    references: tuple[str, ...] = ()
    repository_uris: tuple[str, ...] = ()
    unknown: tuple[TLV, ...] = ()
    source: TLV | None = field(default=None, init=False, repr=False, compare=False)

    @property
    def publication_time(self) -> int:
        return self.publication_data.publication_time

    @property
    def published_hash(self) -> DataHash:
        return self.publication_data.published_hash

    def to_tlv(self, tag: int = PUBLICATION_RECORD_TAG) -> TLV:
        if self.source is not None:
            return _retagged(self.source, tag)
        elements = [self.publication_data.to_tlv()]
        elements.extend(TLV.utf8(0x09, reference) for reference in self.references)
        elements.extend(TLV.utf8(0x0A, uri) for uri in self.repository_uris)
        elements.extend(self.unknown)
        return TLV.composite(tag, elements)

    @classmethod
    def from_tlv(cls, tlv: TLV) -> PublicationRecord:
        group = TLVGroup(tlv, {PUBLISHED_DATA_TAG, 0x09, 0x0A})
        record = cls(
            publication_data=PublicationData.from_tlv(group.one(PUBLISHED_DATA_TAG)),
            references=tuple(element.as_str() for element in group.many(0x09)),
            repository_uris=tuple(element.as_str() for element in group.many(0x0A)),
            unknown=group.unknown,
        )
        return retain_source(record, tlv)


# ----------------------------------------------------------------------
# Calendar authentication record
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SignatureData:
    """PKI signature over a published-data element."""

    signature_type: str
    signature_value: bytes
    certificate_id: bytes
    certificate_repository_uri: str | None = None
    unknown: tuple[TLV, ...] = ()
    source: TLV | None = field(default=None, init=False, repr=False, compare=False)

    def to_tlv(self) -> TLV:
        if self.source is not None:
            return self.source
        elements = [
            TLV.utf8(0x01, self.signature_type),
            TLV.raw(0x02, self.signature_value),
            TLV.raw(0x03, self.certificate_id),
        ]
        if self.certificate_repository_uri is not None:
            elements.append(TLV.utf8(0x04, self.certificate_repository_uri))
        elements.extend(self.unknown)
        return TLV.composite(SIGNATURE_DATA_TAG, elements)

    @classmethod
    def from_tlv(cls, tlv: TLV) -> SignatureData:
        group = TLVGroup(tlv, {0x01, 0x02, 0x03, 0x04})
        repository = group.optional(0x04)
        data = cls(
            signature_type=group.one(0x01).as_str(),
            signature_value=group.one(0x02).value,
            certificate_id=group.one(0x03).value,
            certificate_repository_uri=repository.as_str() if repository else None,
            unknown=group.unknown,
        )
        return retain_source(data, tlv)


@dataclass(frozen=True, slots=True)
class CalendarAuthenticationRecord:
    """Short-term trust anchor of an unextended signature."""

    publication_data: PublicationData
    signature_data: SignatureData
    unknown: tuple[TLV, ...] = ()
    source: TLV | None = field(default=None, init=False, repr=False, compare=False)

    @property
    def signed_bytes(self) -> bytes:
        """The encoded published-data element covered by the PKI signature."""
        return self.publication_data.to_tlv().encode()

    def to_tlv(self) -> TLV:
        if self.source is not None:
            return self.source
        return TLV.composite(
            CALENDAR_AUTH_RECORD_TAG,
            [self.publication_data.to_tlv(), self.signature_data.to_tlv(), *self.unknown],
        )

    @classmethod
    def from_tlv(cls, tlv: TLV) -> CalendarAuthenticationRecord:
        group = TLVGroup(tlv, {PUBLISHED_DATA_TAG, SIGNATURE_DATA_TAG})
        record = cls(
            publication_data=PublicationData.from_tlv(group.one(PUBLISHED_DATA_TAG)),
            signature_data=SignatureData.from_tlv(group.one(SIGNATURE_DATA_TAG)),
            unknown=group.unknown,
        )
        return retain_source(record, tlv)


# ----------------------------------------------------------------------
# RFC 3161 compatibility record
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RFC3161Record:
    """Bridge from a legacy RFC 3161 timestamp to the aggregation chains."""

    aggregation_time: int
    chain_index: tuple[int, ...]
    input_hash: DataHash
    tst_info_prefix: bytes
    tst_info_suffix: bytes
    tst_info_algorithm: HashAlgorithm
    signed_attributes_prefix: bytes
    signed_attributes_suffix: bytes
    signed_attributes_algorithm: HashAlgorithm
    unknown: tuple[TLV, ...] = ()
    source: TLV | None = field(default=None, init=False, repr=False, compare=False)

    @property
    def output_hash(self) -> DataHash:
        return rfc3161_output(self)

    def to_tlv(self) -> TLV:
        if self.source is not None:
            return self.source
        elements = [TLV.integer(0x02, self.aggregation_time)]
        elements.extend(TLV.integer(0x03, index) for index in self.chain_index)
        elements.extend(
            [
                TLV.imprint(0x05, self.input_hash),
                TLV.raw(0x10, self.tst_info_prefix),
                TLV.raw(0x11, self.tst_info_suffix),
                TLV.integer(0x12, self.tst_info_algorithm.id),
                TLV.raw(0x13, self.signed_attributes_prefix),
                TLV.raw(0x14, self.signed_attributes_suffix),
                TLV.integer(0x15, self.signed_attributes_algorithm.id),
            ]
        )
        elements.extend(self.unknown)
        return TLV.composite(RFC3161_RECORD_TAG, elements)

    @classmethod
    def from_tlv(cls, tlv: TLV) -> RFC3161Record:
        group = TLVGroup(tlv, {0x02, 0x03, 0x05, 0x10, 0x11, 0x12, 0x13, 0x14, 0x15})
        record = cls(
            aggregation_time=group.one(0x02).as_int(),
            chain_index=tuple(element.as_int() for element in group.many(0x03)),
            input_hash=group.one(0x05).as_imprint(),
            tst_info_prefix=group.one(0x10).value,
            tst_info_suffix=group.one(0x11).value,
            tst_info_algorithm=HashAlgorithm.by_id(group.one(0x12).as_int()),
            signed_attributes_prefix=group.one(0x13).value,
            signed_attributes_suffix=group.one(0x14).value,
            signed_attributes_algorithm=HashAlgorithm.by_id(group.one(0x15).as_int()),
            unknown=group.unknown,
        )
        return retain_source(record, tlv)


# ----------------------------------------------------------------------
# Signature
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class KSISignature:
    """A KSI signature.

    Aggregation chains are stored lowest first (longest chain index first).
    Construction checks the record structure; hash consistency is checked by
    the internal verification policy.
    """

    aggregation_chains: tuple[AggregationHashChain, ...]
    calendar_chain: CalendarHashChain | None = None
    publication_record: PublicationRecord | None = None
    calendar_authentication_record: CalendarAuthenticationRecord | None = None
    rfc3161_record: RFC3161Record | None = None
    unknown: tuple[TLV, ...] = field(default=())
    source: TLV | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.aggregation_chains:
            raise MalformedSignatureError("Signature has no aggregation hash chains")
        if self.publication_record is not None and self.calendar_authentication_record is not None:
            raise MalformedSignatureError(
                "Signature has both a publication record and a calendar authentication record"
            )
        if self.calendar_chain is None and (
            self.publication_record is not None or self.calendar_authentication_record is not None
        ):
            raise MalformedSignatureError("Trust anchor record present without a calendar chain")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def input_hash(self) -> DataHash:
        if self.rfc3161_record is not None:
            return self.rfc3161_record.input_hash
        return self.aggregation_chains[0].input_hash

    @property
    def aggregation_time(self) -> int:
        return self.aggregation_chains[0].aggregation_time

    @property
    def is_extended(self) -> bool:
        return self.publication_record is not None

    @property
    def identity(self) -> tuple[Identity, ...]:
        """Identities from the top-level aggregator down to the lowest chain."""
        return tuple(
            identity
            for chain in reversed(self.aggregation_chains)
            for identity in chain.identity
        )

    @property
    def published_data(self) -> PublicationData | None:
        """Publication data of whichever trust anchor record is present."""
        if self.publication_record is not None:
            return self.publication_record.publication_data
        if self.calendar_authentication_record is not None:
            return self.calendar_authentication_record.publication_data
        return None

    @property
    def hash_algorithms(self) -> set[HashAlgorithm]:
        """Every hash algorithm the signature's chains rely on."""
        algorithms: set[HashAlgorithm] = set()
        for chain in self.aggregation_chains:
            algorithms.add(chain.aggregation_algorithm)
            algorithms.add(chain.input_hash.algorithm)
            algorithms.update(
                link.sibling_hash.algorithm for link in chain.links if link.sibling_hash
            )
        if self.calendar_chain is not None:
            algorithms.add(self.calendar_chain.input_hash.algorithm)
            algorithms.update(link.sibling_hash.algorithm for link in self.calendar_chain.links)
        if self.rfc3161_record is not None:
            algorithms.add(self.rfc3161_record.tst_info_algorithm)
            algorithms.add(self.rfc3161_record.signed_attributes_algorithm)
        return algorithms

    def extended_to(
        self,
        calendar_chain: CalendarHashChain,
        publication_record: PublicationRecord,
    ) -> KSISignature:
        """Return a copy anchored to ``publication_record`` through ``calendar_chain``."""
        return dataclasses.replace(
            self,
            calendar_chain=calendar_chain,
            publication_record=publication_record,
            calendar_authentication_record=None,
        )

    # ------------------------------------------------------------------
    # Wire form
    # ------------------------------------------------------------------

    def to_tlv(self) -> TLV:
        if self.source is not None:
            return self.source
        elements = [chain.to_tlv() for chain in self.aggregation_chains]
        if self.calendar_chain is not None:
            elements.append(self.calendar_chain.to_tlv())
        if self.publication_record is not None:
            elements.append(self.publication_record.to_tlv())
        if self.calendar_authentication_record is not None:
            elements.append(self.calendar_authentication_record.to_tlv())
        if self.rfc3161_record is not None:
            elements.append(self.rfc3161_record.to_tlv())
        elements.extend(self.unknown)
        return TLV.composite(SIGNATURE_TAG, elements)

    def to_bytes(self) -> bytes:
        return self.to_tlv().encode()

    def write_to(self, sink: BinaryIO) -> int:
        return sink.write(self.to_bytes())

    @classmethod
    def from_tlv(cls, tlv: TLV) -> KSISignature:
        if tlv.tag != SIGNATURE_TAG:
            raise MalformedSignatureError(f"Expected signature TLV 0x0800, got 0x{tlv.tag:02x}")
        try:
            signature = cls._from_group(
                TLVGroup(
                    tlv,
                    {
                        AGGREGATION_HASH_CHAIN_TAG,
                        CALENDAR_HASH_CHAIN_TAG,
                        PUBLICATION_RECORD_TAG,
                        CALENDAR_AUTH_RECORD_TAG,
                        RFC3161_RECORD_TAG,
                    },
                )
            )
        except _SIGNATURE_ERRORS as exc:
            raise MalformedSignatureError(f"Malformed signature: {exc}") from exc
        return retain_source(signature, tlv)

    @classmethod
    def _from_group(cls, group: TLVGroup) -> KSISignature:
        return cls.from_elements(group.elements, unknown=group.unknown)

    @classmethod
    def from_elements(cls, elements: list[TLV], unknown: tuple[TLV, ...] = ()) -> KSISignature:
        """Assemble a signature from its top-level elements in any order.

        Aggregation responses carry the signature elements directly in their
        payload, so this is shared with the protocol layer.
        """
        chains = [
            AggregationHashChain.from_tlv(element)
            for element in elements
            if element.tag == AGGREGATION_HASH_CHAIN_TAG
        ]
        chains.sort(key=lambda chain: len(chain.chain_index), reverse=True)

        def single(tag: int) -> TLV | None:
            found = [element for element in elements if element.tag == tag]
            if len(found) > 1:
                raise MalformedSignatureError(
                    f"Signature contains {len(found)} elements 0x{tag:04x}"
                )
            return found[0] if found else None

        calendar = single(CALENDAR_HASH_CHAIN_TAG)
        publication = single(PUBLICATION_RECORD_TAG)
        authentication = single(CALENDAR_AUTH_RECORD_TAG)
        rfc3161 = single(RFC3161_RECORD_TAG)
        return cls(
            aggregation_chains=tuple(chains),
            calendar_chain=CalendarHashChain.from_tlv(calendar) if calendar else None,
            publication_record=PublicationRecord.from_tlv(publication) if publication else None,
            calendar_authentication_record=(
                CalendarAuthenticationRecord.from_tlv(authentication) if authentication else None
            ),
            rfc3161_record=RFC3161Record.from_tlv(rfc3161) if rfc3161 else None,
            unknown=unknown,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> KSISignature:
        try:
            tlv = decode(data)
        except MalformedTlvError as exc:
            raise MalformedSignatureError(f"Signature is not a TLV element: {exc}") from exc
        return cls.from_tlv(tlv)
