"""
Publications file model.

Layout: the ``KSIPUBLF`` magic followed by TLV elements: one header
(0x0701), certificate records (0x0702), publication records (0x0703) and a
CMS signature (0x0704), which must come last. The signature covers every
byte before the signature element, magic included.
"""

from __future__ import annotations

import bisect
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime

from cryptography import x509

from ksi.core.crypto.tlv import TLV, TLVGroup, iter_raw, retain_source
from ksi.core.errors import (
    FormatError,
    InvalidArgumentError,
    MalformedPublicationsFileError,
    UnknownCriticalTlvError,
    UnsupportedAlgorithmError,
)
from ksi.modules.signature.models import PublicationData, PublicationRecord

PUBLICATIONS_FILE_MAGIC = b"KSIPUBLF"

HEADER_TAG = 0x0701
CERTIFICATE_RECORD_TAG = 0x0702
PUBLICATION_RECORD_TAG = 0x0703
SIGNATURE_TAG = 0x0704

_PARSE_ERRORS = (FormatError, InvalidArgumentError, UnsupportedAlgorithmError)


def to_epoch(moment: int | datetime | date) -> int:
    """Normalize a time given as epoch seconds, datetime or date (UTC midnight)."""
    if isinstance(moment, datetime):
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        return int(moment.timestamp())
    if isinstance(moment, date):
        return int(datetime(moment.year, moment.month, moment.day, tzinfo=UTC).timestamp())
    return int(moment)


@dataclass(frozen=True, slots=True)
class PublicationsFileHeader:
    version: int
    creation_time: int
    repository_uri: str | None = None
    unknown: tuple[TLV, ...] = ()
    source: TLV | None = field(default=None, init=False, repr=False, compare=False)

    def to_tlv(self) -> TLV:
        if self.source is not None:
            return self.source
        elements = [TLV.integer(0x01, self.version), TLV.integer(0x02, self.creation_time)]
        if self.repository_uri is not None:
            elements.append(TLV.utf8(0x03, self.repository_uri))
        elements.extend(self.unknown)
        return TLV.composite(HEADER_TAG, elements)

    @classmethod
    def from_tlv(cls, tlv: TLV) -> PublicationsFileHeader:
        group = TLVGroup(tlv, {0x01, 0x02, 0x03})
        repository = group.optional(0x03)
        header = cls(
            version=group.one(0x01).as_int(),
            creation_time=group.one(0x02).as_int(),
            repository_uri=repository.as_str() if repository else None,
            unknown=group.unknown,
        )
        return retain_source(header, tlv)


@dataclass(frozen=True, slots=True)
class CertificateRecord:
    """A trusted calendar signing certificate referenced by id."""

    certificate_id: bytes
    certificate_der: bytes
    source: TLV | None = field(default=None, init=False, repr=False, compare=False)

    def load(self) -> x509.Certificate:
        return x509.load_der_x509_certificate(self.certificate_der)

    def to_tlv(self) -> TLV:
        if self.source is not None:
            return self.source
        return TLV.composite(
            CERTIFICATE_RECORD_TAG,
            [TLV.raw(0x01, self.certificate_id), TLV.raw(0x02, self.certificate_der)],
        )

    @classmethod
    def from_tlv(cls, tlv: TLV) -> CertificateRecord:
        group = TLVGroup(tlv, {0x01, 0x02})
        record = cls(group.one(0x01).value, group.one(0x02).value)
        return retain_source(record, tlv)


def encode_signed_part(
    header: PublicationsFileHeader,
    certificate_records: Iterable[CertificateRecord],
    publication_records: Iterable[PublicationRecord],
) -> bytes:
    """Serialize everything a publications file signature covers."""
    elements = [header.to_tlv()]
    elements.extend(record.to_tlv() for record in certificate_records)
    elements.extend(record.to_tlv(PUBLICATION_RECORD_TAG) for record in publication_records)
    return PUBLICATIONS_FILE_MAGIC + b"".join(element.encode() for element in elements)


@dataclass(frozen=True)
class PublicationsFile:
    """An immutable, parsed publications file snapshot."""

    header: PublicationsFileHeader
    certificate_records: tuple[CertificateRecord, ...]
    publication_records: tuple[PublicationRecord, ...]
    signature: bytes
    signed_bytes: bytes
    unknown: tuple[TLV, ...] = ()

    @classmethod
    def from_bytes(cls, data: bytes) -> PublicationsFile:
        if not data.startswith(PUBLICATIONS_FILE_MAGIC):
            raise MalformedPublicationsFileError("Publications file magic 'KSIPUBLF' missing")
        body = data[len(PUBLICATIONS_FILE_MAGIC) :]
        try:
            elements = list(iter_raw(body))
        except FormatError as exc:
            raise MalformedPublicationsFileError(f"Publications file is not TLV: {exc}") from exc

        header: PublicationsFileHeader | None = None
        certificates: list[CertificateRecord] = []
        publications: list[PublicationRecord] = []
        unknown: list[TLV] = []
        signature: bytes | None = None
        signed_length = len(PUBLICATIONS_FILE_MAGIC)

        try:
            for element, raw in elements:
                if signature is not None:
                    raise MalformedPublicationsFileError(
                        "Publications file has elements after its signature"
                    )
                if element.tag == SIGNATURE_TAG:
                    signature = element.value
                    continue
                signed_length += len(raw)
                if element.tag == HEADER_TAG:
                    if header is not None or certificates or publications:
                        raise MalformedPublicationsFileError(
                            "Publications file header must appear once, first"
                        )
                    header = PublicationsFileHeader.from_tlv(element)
                elif element.tag == CERTIFICATE_RECORD_TAG:
                    certificates.append(CertificateRecord.from_tlv(element))
                elif element.tag == PUBLICATION_RECORD_TAG:
                    publications.append(PublicationRecord.from_tlv(element))
                elif element.non_critical:
                    unknown.append(element)
                else:
                    raise UnknownCriticalTlvError(
                        f"Unknown critical TLV 0x{element.tag:04x} in publications file",
                        tag=element.tag,
                    )
        except (MalformedPublicationsFileError, UnknownCriticalTlvError):
            raise
        except _PARSE_ERRORS as exc:
            raise MalformedPublicationsFileError(f"Malformed publications file: {exc}") from exc

        if header is None:
            raise MalformedPublicationsFileError("Publications file has no header")
        if signature is None:
            raise MalformedPublicationsFileError("Publications file has no signature")

        return cls(
            header=header,
            certificate_records=tuple(certificates),
            publication_records=_sorted_unique(publications),
            signature=signature,
            signed_bytes=data[:signed_length],
            unknown=tuple(unknown),
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def latest_publication(self) -> PublicationRecord | None:
        return self.publication_records[-1] if self.publication_records else None

    def publication_record_at_or_after(
        self, moment: int | datetime | date
    ) -> PublicationRecord | None:
        """Earliest record published at or after ``moment``."""
        times = [record.publication_time for record in self.publication_records]
        position = bisect.bisect_left(times, to_epoch(moment))
        if position == len(times):
            return None
        return self.publication_records[position]

    def publication_record_by_data(self, data: PublicationData) -> PublicationRecord | None:
        """Record with exactly this publication time and published hash."""
        record = self.publication_record_at_or_after(data.publication_time)
        if record is None or record.publication_data != data:
            return None
        return record

    def publication_record_by_code(self, code: str) -> PublicationRecord | None:
        return self.publication_record_by_data(PublicationData.from_code(code))

    def certificate_by_id(self, certificate_id: bytes) -> x509.Certificate | None:
        for record in self.certificate_records:
            if record.certificate_id == certificate_id:
                return record.load()
        return None

    @property
    def certificates(self) -> list[x509.Certificate]:
        return [record.load() for record in self.certificate_records]


def _sorted_unique(records: list[PublicationRecord]) -> tuple[PublicationRecord, ...]:
    by_time: dict[int, PublicationRecord] = {}
    for record in records:
        existing = by_time.get(record.publication_time)
        if existing is None:
            by_time[record.publication_time] = record
        elif existing.publication_data != record.publication_data:
            raise MalformedPublicationsFileError(
                f"Conflicting publications for time {record.publication_time}"
            )
    return tuple(by_time[time] for time in sorted(by_time))
