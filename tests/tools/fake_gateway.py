"""
In-process stand-ins for the KSI aggregator, extender and publications file.

The fake calendar keeps one leaf per registered second and derives every
other calendar tree node deterministically, so calendar chains, published
roots and publication records are consistent across calls. Responses are
real PDUs sealed with the client's credentials and served through
``httpx.MockTransport``.
"""

from __future__ import annotations

import bisect
import hmac
from dataclasses import dataclass, field
from datetime import UTC, datetime

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs7
from cryptography.x509.oid import NameOID

from ksi.core.crypto.hashing import SHA2_256, DataHash, HashAlgorithm, hash_data
from ksi.core.crypto.pki import PKITrustStore
from ksi.core.crypto.tlv import TLV, TLVGroup, decode, iter_raw
from ksi.modules.publications.models import (
    SIGNATURE_TAG,
    CertificateRecord,
    PublicationsFileHeader,
    encode_signed_part,
)
from ksi.modules.signature.models import (
    AggregationChainLink,
    AggregationHashChain,
    CalendarAuthenticationRecord,
    CalendarChainLink,
    CalendarHashChain,
    IdentityMetadata,
    LinkDirection,
    PublicationData,
    PublicationRecord,
    SignatureData,
)
from ksi.modules.transport.base import ServiceCredentials
from ksi.modules.transport.pdu import (
    AGGREGATION_REQUEST_TAG,
    AGGREGATION_RESPONSE_TAG,
    CALENDAR_LAST_TIME_TAG,
    ERROR_PAYLOAD_TAG,
    EXTENSION_REQUEST_TAG,
    EXTENSION_RESPONSE_TAG,
    HEADER_TAG,
    MAC_TAG,
    PAYLOAD_TAG,
    compute_mac,
    seal_pdu,
)

BASE_TIME = 1_700_000_000
CALENDAR_CERTIFICATE_ID = b"\x01\x02\x03\x04"
RSA_SHA256_SIGNATURE_TYPE = "1.2.840.113549.1.1.11"

AGGREGATOR_URL = "http://ksi.test/gt-signingservice"
EXTENDER_URL = "http://ksi.test/gt-extendingservice"
PUBLICATIONS_FILE_URL = "http://ksi.test/ksi-publications.bin"

TEST_CREDENTIALS = ServiceCredentials("anon", b"anon")


# ---------------------------------------------------------------------------
# Test PKI
# ---------------------------------------------------------------------------


@dataclass
class FakePKI:
    """Throwaway CA with a publications file signer and a calendar signer."""

    ca_key: rsa.RSAPrivateKey
    ca_certificate: x509.Certificate
    publications_key: rsa.RSAPrivateKey
    publications_certificate: x509.Certificate
    calendar_key: rsa.RSAPrivateKey
    calendar_certificate: x509.Certificate

    @property
    def trust_store(self) -> PKITrustStore:
        return PKITrustStore([self.ca_certificate])

    @property
    def ca_pem(self) -> bytes:
        return self.ca_certificate.public_bytes(serialization.Encoding.PEM)


def subject_name(common_name: str, email: str | None = None) -> x509.Name:
    attributes = [
        x509.NameAttribute(NameOID.COUNTRY_NAME, "EE"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Guardtime"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ]
    if email is not None:
        attributes.append(x509.NameAttribute(NameOID.EMAIL_ADDRESS, email))
    return x509.Name(attributes)


def issue_certificate(
    subject: x509.Name,
    public_key: rsa.RSAPublicKey,
    issuer: x509.Name,
    issuer_key: rsa.RSAPrivateKey,
    *,
    ca: bool = False,
    not_before: datetime = datetime(2020, 1, 1, tzinfo=UTC),
    not_after: datetime = datetime(2040, 1, 1, tzinfo=UTC),
) -> x509.Certificate:
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(issuer_key, hashes.SHA256())
    )


def generate_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def build_pki() -> FakePKI:
    ca_key = generate_key()
    ca_name = subject_name("Test KSI Root CA")
    ca_certificate = issue_certificate(ca_name, ca_key.public_key(), ca_name, ca_key, ca=True)

    publications_key = generate_key()
    publications_certificate = issue_certificate(
        subject_name("Test Publications", "publications@guardtime.com"),
        publications_key.public_key(),
        ca_name,
        ca_key,
    )

    calendar_key = generate_key()
    calendar_certificate = issue_certificate(
        subject_name("Test Calendar", "calendar@guardtime.com"),
        calendar_key.public_key(),
        ca_name,
        ca_key,
    )
    return FakePKI(
        ca_key=ca_key,
        ca_certificate=ca_certificate,
        publications_key=publications_key,
        publications_certificate=publications_certificate,
        calendar_key=calendar_key,
        calendar_certificate=calendar_certificate,
    )


def build_publications_file(
    pki: FakePKI,
    publication_records: list[PublicationRecord],
    *,
    creation_time: int = BASE_TIME,
    signer_key: rsa.RSAPrivateKey | None = None,
    signer_certificate: x509.Certificate | None = None,
    certificate_records: list[CertificateRecord] | None = None,
) -> bytes:
    """Encode and sign a publications file with the test PKI."""
    if certificate_records is None:
        certificate_records = [
            CertificateRecord(
                CALENDAR_CERTIFICATE_ID,
                pki.calendar_certificate.public_bytes(serialization.Encoding.DER),
            )
        ]
    signed_part = encode_signed_part(
        PublicationsFileHeader(version=2, creation_time=creation_time),
        certificate_records,
        publication_records,
    )
    signature = (
        pkcs7.PKCS7SignatureBuilder()
        .set_data(signed_part)
        .add_signer(
            signer_certificate or pki.publications_certificate,
            signer_key or pki.publications_key,
            hashes.SHA256(),
        )
        .sign(
            serialization.Encoding.DER,
            [pkcs7.PKCS7Options.DetachedSignature, pkcs7.PKCS7Options.Binary],
        )
    )
    return signed_part + TLV(SIGNATURE_TAG, signature).encode()


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------


def _high_bit(value: int) -> int:
    return 1 << (value.bit_length() - 1)


class FakeCalendar:
    """Calendar tree with one leaf per second since the epoch.

    Seconds with a registered aggregation root hold that root; every other
    empty subtree hashes to a fixed value derived from its position.
    """

    def __init__(self, start: int = BASE_TIME, algorithm: HashAlgorithm = SHA2_256) -> None:
        self.now = start
        self.algorithm = algorithm
        self.publications: list[PublicationRecord] = []
        self._leaves: dict[int, DataHash] = {}
        self._times: list[int] = []

    def register(self, root: DataHash) -> int:
        """Record ``root`` in the next free second and return that second."""
        self.now += 1
        self._leaves[self.now] = root
        bisect.insort(self._times, self.now)
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now

    def publish(self, *, advance: int = 3600) -> PublicationRecord:
        """Publish the calendar root after moving the clock forward."""
        self.advance(advance)
        data = PublicationData(self.now, self.root(self.now))
        reference = f"Test Gazette, {data.published_at:%Y-%m-%d}"
        record = PublicationRecord(data, references=(reference,))
        self.publications.append(record)
        return record

    def root(self, publication_time: int) -> DataHash:
        return self._node(0, publication_time)

    def _has_leaf(self, low: int, high: int) -> bool:
        position = bisect.bisect_left(self._times, low)
        return position < len(self._times) and self._times[position] <= high

    def _node(self, offset: int, span: int) -> DataHash:
        """Root of the subtree over seconds ``offset`` .. ``offset + span``."""
        if not self._has_leaf(offset, offset + span):
            return self.algorithm.digest(
                b"virtual", offset.to_bytes(8, "big"), span.to_bytes(8, "big")
            )
        if span == 0:
            return self._leaves[offset]
        high = _high_bit(span)
        left = self._node(offset, high - 1)
        right = self._node(offset + high, span - high)
        return self.algorithm.digest(left.imprint, right.imprint, b"\xff")

    def chain(self, aggregation_time: int, publication_time: int) -> CalendarHashChain:
        """Calendar hash chain from a registered second to ``publication_time``."""
        links: list[CalendarChainLink] = []
        offset, span = 0, publication_time
        while span > 0:
            high = _high_bit(span)
            if aggregation_time - offset < high:
                links.append(
                    CalendarChainLink(LinkDirection.LEFT, self._node(offset + high, span - high))
                )
                span = high - 1
            else:
                links.append(CalendarChainLink(LinkDirection.RIGHT, self._node(offset, high - 1)))
                offset += high
                span -= high
        return CalendarHashChain(
            publication_time=publication_time,
            input_hash=self._leaves[aggregation_time],
            links=tuple(reversed(links)),
            aggregation_time=aggregation_time,
        )


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def _fold(
    input_hash: DataHash,
    links: list[AggregationChainLink],
    level: int,
    algorithm: HashAlgorithm,
) -> tuple[DataHash, int]:
    current = input_hash
    for link in links:
        level += link.level_correction + 1
        if link.direction is LinkDirection.LEFT:
            current = algorithm.digest(current.imprint, link.sibling_data, bytes([level]))
        else:
            current = algorithm.digest(link.sibling_data, current.imprint, bytes([level]))
    return current, level


def parse_request(data: bytes, credentials: ServiceCredentials) -> tuple[int, TLVGroup]:
    """Check a request PDU's MAC and return its tag and payload group."""
    pdu = decode(data)
    raw_elements = list(iter_raw(pdu.value))
    assert raw_elements[-1][0].tag == MAC_TAG, "request must end with a MAC"
    signed = b"".join(raw for _, raw in raw_elements[:-1])
    expected = compute_mac(credentials, signed)
    received = raw_elements[-1][0].as_imprint()
    assert hmac.compare_digest(received.digest, expected.digest), "request MAC mismatch"
    group = TLVGroup(pdu, {HEADER_TAG, PAYLOAD_TAG, MAC_TAG})
    return pdu.tag, TLVGroup(group.one(PAYLOAD_TAG), {0x01, 0x02, 0x03})


def error_response(credentials: ServiceCredentials, tag: int, status: int, message: str) -> bytes:
    payload = TLV.composite(
        ERROR_PAYLOAD_TAG, [TLV.integer(0x04, status), TLV.utf8(0x05, message)]
    )
    return seal_pdu(tag, credentials, payload)


@dataclass
class FakeAggregator:
    """Signs request hashes into the fake calendar.

    Each signature has two aggregator chains above the client's request
    (the lower one binds the client's identity metadata) and is anchored
    by a calendar authentication record signed with the calendar key.
    """

    calendar: FakeCalendar
    pki: FakePKI
    credentials: ServiceCredentials = TEST_CREDENTIALS
    algorithm: HashAlgorithm = SHA2_256
    reject_status: int | None = None
    response_credentials: ServiceCredentials | None = None
    echo_request_id: int | None = None
    include_calendar: bool = True
    requests: list[tuple[DataHash, int]] = field(default_factory=list)

    def handle(self, body: bytes) -> bytes:
        _, payload = parse_request(body, self.credentials)
        request_id = payload.one(0x01).as_int()
        data_hash = payload.one(0x02).as_imprint()
        level_element = payload.optional(0x03)
        level = level_element.as_int() if level_element else 0
        self.requests.append((data_hash, level))
        credentials = self.response_credentials or self.credentials

        if self.reject_status is not None:
            return error_response(
                credentials, AGGREGATION_RESPONSE_TAG, self.reject_status, "Request rejected"
            )

        elements = self.sign_elements(data_hash, level)
        response_payload = TLV.composite(
            PAYLOAD_TAG,
            [
                TLV.integer(0x01, self.echo_request_id or request_id),
                TLV.integer(0x04, 0),
                *elements,
            ],
        )
        return seal_pdu(AGGREGATION_RESPONSE_TAG, credentials, response_payload)

    def sign_elements(self, data_hash: DataHash, level: int = 0) -> list[TLV]:
        """Signature elements for ``data_hash`` entering the tree at ``level``."""
        sequence = len(self.requests)
        lower_links = [
            AggregationChainLink(
                LinkDirection.RIGHT, sibling_hash=hash_data(f"lower-{sequence}".encode())
            ),
            AggregationChainLink(
                LinkDirection.LEFT,
                metadata=IdentityMetadata(
                    client_id=self.credentials.login_id,
                    machine_id="fake-gateway",
                    sequence_number=sequence,
                    request_time=self.calendar.now,
                ),
            ),
        ]
        lower_output, lower_level = _fold(data_hash, lower_links, level, self.algorithm)
        upper_links = [
            AggregationChainLink(
                LinkDirection.LEFT,
                sibling_hash=hash_data(f"upper-{sequence}".encode()),
                level_correction=2,
            ),
            AggregationChainLink(LinkDirection.RIGHT, sibling_hash=hash_data(b"top")),
        ]
        top, _ = _fold(lower_output, upper_links, lower_level, self.algorithm)

        aggregation_time = self.calendar.register(top)
        chains = [
            AggregationHashChain(
                aggregation_time=aggregation_time,
                chain_index=(5, 3),
                input_hash=data_hash,
                aggregation_algorithm=self.algorithm,
                links=tuple(lower_links),
            ),
            AggregationHashChain(
                aggregation_time=aggregation_time,
                chain_index=(5,),
                input_hash=lower_output,
                aggregation_algorithm=self.algorithm,
                links=tuple(upper_links),
            ),
        ]
        elements = [chain.to_tlv() for chain in chains]
        if self.include_calendar:
            calendar_chain = self.calendar.chain(aggregation_time, aggregation_time)
            elements.append(calendar_chain.to_tlv())
            elements.append(self.authentication_record(calendar_chain.publication_data).to_tlv())
        return elements

    def authentication_record(self, data: PublicationData) -> CalendarAuthenticationRecord:
        signed = data.to_tlv().encode()
        signature = self.pki.calendar_key.sign(signed, padding.PKCS1v15(), hashes.SHA256())
        return CalendarAuthenticationRecord(
            publication_data=data,
            signature_data=SignatureData(
                signature_type=RSA_SHA256_SIGNATURE_TYPE,
                signature_value=signature,
                certificate_id=CALENDAR_CERTIFICATE_ID,
            ),
        )


@dataclass
class FakeExtender:
    """Serves calendar chains from the fake calendar."""

    calendar: FakeCalendar
    credentials: ServiceCredentials = TEST_CREDENTIALS
    reject_status: int | None = None
    tamper: bool = False
    requests: list[tuple[int, int | None]] = field(default_factory=list)

    def handle(self, body: bytes) -> bytes:
        _, payload = parse_request(body, self.credentials)
        request_id = payload.one(0x01).as_int()
        aggregation_time = payload.one(0x02).as_int()
        publication_element = payload.optional(0x03)
        publication_time = publication_element.as_int() if publication_element else None
        self.requests.append((aggregation_time, publication_time))

        target = self.calendar.now if publication_time is None else publication_time
        if self.reject_status is not None:
            return error_response(
                self.credentials, EXTENSION_RESPONSE_TAG, self.reject_status, "Request rejected"
            )
        if target > self.calendar.now or aggregation_time > target:
            return self._status_response(request_id, 0x0104, "Requested time out of range")

        chain = self.calendar.chain(aggregation_time, target)
        if self.tamper:
            first = chain.links[0]
            chain = CalendarHashChain(
                publication_time=chain.publication_time,
                input_hash=chain.input_hash,
                links=(
                    CalendarChainLink(first.direction, hash_data(b"tampered")),
                    *chain.links[1:],
                ),
                aggregation_time=chain.aggregation_time,
            )
        response_payload = TLV.composite(
            PAYLOAD_TAG,
            [
                TLV.integer(0x01, request_id),
                TLV.integer(0x04, 0),
                TLV.integer(CALENDAR_LAST_TIME_TAG, self.calendar.now),
                chain.to_tlv(),
            ],
        )
        return seal_pdu(EXTENSION_RESPONSE_TAG, self.credentials, response_payload)

    def _status_response(self, request_id: int, status: int, message: str) -> bytes:
        response_payload = TLV.composite(
            PAYLOAD_TAG,
            [TLV.integer(0x01, request_id), TLV.integer(0x04, status), TLV.utf8(0x05, message)],
        )
        return seal_pdu(EXTENSION_RESPONSE_TAG, self.credentials, response_payload)


@dataclass
class FakeKSIService:
    """Aggregator, extender and publications file behind one HTTP handler."""

    pki: FakePKI
    calendar: FakeCalendar = field(default_factory=FakeCalendar)
    aggregator: FakeAggregator = field(init=False)
    extender: FakeExtender = field(init=False)
    publications_file_override: bytes | None = None
    failures: dict[str, int] = field(default_factory=dict)
    hits: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.aggregator = FakeAggregator(self.calendar, self.pki)
        self.extender = FakeExtender(self.calendar)

    @property
    def publications_file(self) -> bytes:
        if self.publications_file_override is not None:
            return self.publications_file_override
        return build_publications_file(
            self.pki, list(self.calendar.publications), creation_time=self.calendar.now
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.hits[path] = self.hits.get(path, 0) + 1
        if self.failures.get(path, 0) > 0:
            self.failures[path] -= 1
            return httpx.Response(503, content=b"unavailable")

        if path == httpx.URL(AGGREGATOR_URL).path:
            assert decode(request.content).tag == AGGREGATION_REQUEST_TAG
            return httpx.Response(200, content=self.aggregator.handle(request.content))
        if path == httpx.URL(EXTENDER_URL).path:
            assert decode(request.content).tag == EXTENSION_REQUEST_TAG
            return httpx.Response(200, content=self.extender.handle(request.content))
        if path == httpx.URL(PUBLICATIONS_FILE_URL).path:
            return httpx.Response(200, content=self.publications_file)
        return httpx.Response(404)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport())
