"""
Aggregator and extender protocol data units.

A PDU is a TLV composite holding a header, one or more payloads and a MAC
trailer. The MAC is an HMAC imprint over the encoded bytes of every element
that precedes it, keyed with the login key.
"""

from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass

from ksi.core.crypto.hashing import DataHash
from ksi.core.crypto.tlv import TLV, TLVGroup, decode, iter_raw
from ksi.core.errors import (
    AggregatorRejectedError,
    AuthenticationFailedError,
    ExtenderRejectedError,
    FormatError,
    InvalidArgumentError,
    MalformedResponseError,
    ServiceRejectedError,
    UnsupportedAlgorithmError,
)
from ksi.modules.signature.models import (
    AGGREGATION_HASH_CHAIN_TAG,
    CALENDAR_AUTH_RECORD_TAG,
    CALENDAR_HASH_CHAIN_TAG,
    PUBLICATION_RECORD_TAG,
    RFC3161_RECORD_TAG,
    CalendarHashChain,
    KSISignature,
)
from ksi.modules.transport.base import ServiceCredentials

AGGREGATION_REQUEST_TAG = 0x0220
AGGREGATION_RESPONSE_TAG = 0x0221
EXTENSION_REQUEST_TAG = 0x0320
EXTENSION_RESPONSE_TAG = 0x0321

HEADER_TAG = 0x01
PAYLOAD_TAG = 0x02
ERROR_PAYLOAD_TAG = 0x03
CONFIG_PAYLOAD_TAG = 0x04
ACK_PAYLOAD_TAG = 0x05
MAC_TAG = 0x1F

CALENDAR_LAST_TIME_TAG = 0x12

_PDU_TAGS = {
    HEADER_TAG,
    PAYLOAD_TAG,
    ERROR_PAYLOAD_TAG,
    CONFIG_PAYLOAD_TAG,
    ACK_PAYLOAD_TAG,
    MAC_TAG,
}
_SIGNATURE_TAGS = {
    AGGREGATION_HASH_CHAIN_TAG,
    CALENDAR_HASH_CHAIN_TAG,
    PUBLICATION_RECORD_TAG,
    CALENDAR_AUTH_RECORD_TAG,
    RFC3161_RECORD_TAG,
}


def new_request_id() -> int:
    """Fresh non-zero 63-bit request id."""
    return secrets.randbits(63) or 1


def compute_mac(credentials: ServiceCredentials, data: bytes) -> DataHash:
    algorithm = credentials.hmac_algorithm
    try:
        digest = hmac.new(credentials.login_key, data, algorithm.hashlib_name).digest()
    except ValueError:
        raise UnsupportedAlgorithmError(
            f"HMAC algorithm {algorithm.name} is not available in this runtime"
        ) from None
    return DataHash(algorithm, digest)


def _header(
    credentials: ServiceCredentials, instance_id: int | None, message_id: int | None
) -> TLV:
    elements = [TLV.utf8(0x01, credentials.login_id)]
    if instance_id is not None:
        elements.append(TLV.integer(0x02, instance_id))
    if message_id is not None:
        elements.append(TLV.integer(0x03, message_id))
    return TLV.composite(HEADER_TAG, elements)


def seal_pdu(
    tag: int,
    credentials: ServiceCredentials,
    payload: TLV,
    instance_id: int | None = None,
    message_id: int | None = None,
) -> bytes:
    """Wrap header and payload in a PDU closed by the HMAC element."""
    body = _header(credentials, instance_id, message_id).encode() + payload.encode()
    mac = TLV.imprint(MAC_TAG, compute_mac(credentials, body))
    return TLV(tag, body + mac.encode()).encode()


def build_aggregation_request(
    credentials: ServiceCredentials,
    request_id: int,
    data_hash: DataHash,
    level: int = 0,
    *,
    instance_id: int | None = None,
    message_id: int | None = None,
) -> bytes:
    if not 0 <= level <= 0xFF:
        raise InvalidArgumentError(f"Aggregation level {level} out of range")
    elements = [TLV.integer(0x01, request_id), TLV.imprint(0x02, data_hash)]
    if level:
        elements.append(TLV.integer(0x03, level))
    payload = TLV.composite(PAYLOAD_TAG, elements)
    return seal_pdu(AGGREGATION_REQUEST_TAG, credentials, payload, instance_id, message_id)


def build_extension_request(
    credentials: ServiceCredentials,
    request_id: int,
    aggregation_time: int,
    publication_time: int | None = None,
    *,
    instance_id: int | None = None,
    message_id: int | None = None,
) -> bytes:
    elements = [TLV.integer(0x01, request_id), TLV.integer(0x02, aggregation_time)]
    if publication_time is not None:
        elements.append(TLV.integer(0x03, publication_time))
    payload = TLV.composite(PAYLOAD_TAG, elements)
    return seal_pdu(EXTENSION_REQUEST_TAG, credentials, payload, instance_id, message_id)


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class ExtensionResponse:
    request_id: int
    calendar_chain: CalendarHashChain
    calendar_last_time: int | None = None


def _open(
    data: bytes,
    expected_tag: int,
    credentials: ServiceCredentials,
    rejected: type[ServiceRejectedError],
) -> list[TLV]:
    """Check a response PDU's envelope and return its payload elements."""
    try:
        pdu = decode(data)
    except FormatError as exc:
        raise MalformedResponseError(f"Response is not a TLV element: {exc}") from exc
    if pdu.tag != expected_tag:
        raise MalformedResponseError(
            f"Expected response PDU 0x{expected_tag:04x}, got 0x{pdu.tag:04x}"
        )

    try:
        raw_elements = list(iter_raw(pdu.value))
        group = TLVGroup(pdu, _PDU_TAGS)
        error = group.optional(ERROR_PAYLOAD_TAG)
        mac = group.optional(MAC_TAG)
    except FormatError as exc:
        raise MalformedResponseError(f"Malformed response PDU: {exc}") from exc

    if mac is not None:
        if raw_elements[-1][0].tag != MAC_TAG:
            raise MalformedResponseError("Response MAC is not the last element")
        signed = b"".join(raw for _, raw in raw_elements[:-1])
        try:
            received = mac.as_imprint()
        except FormatError as exc:
            raise AuthenticationFailedError(f"Response MAC is malformed: {exc}") from exc
        expected = compute_mac(credentials, signed)
        if received.algorithm != expected.algorithm or not hmac.compare_digest(
            received.digest, expected.digest
        ):
            raise AuthenticationFailedError("Response MAC does not match the login key")

    if error is not None:
        try:
            error_group = TLVGroup(error, {0x01, 0x04, 0x05})
        except FormatError as exc:
            raise MalformedResponseError(f"Malformed error payload: {exc}") from exc
        status, message = _status(error_group)
        raise rejected(
            f"Service rejected the request with status 0x{status:x}: {message or 'no message'}",
            status=status,
            status_message=message,
        )
    if mac is None:
        raise AuthenticationFailedError("Response carries no MAC")
    payloads = group.many(PAYLOAD_TAG)
    if not payloads:
        raise MalformedResponseError("Response carries no payload")
    return payloads


def _status(group: TLVGroup) -> tuple[int, str | None]:
    try:
        status_element = group.optional(0x04)
        message_element = group.optional(0x05)
        status = status_element.as_int() if status_element else 0
        message = message_element.as_str() if message_element else None
    except FormatError as exc:
        raise MalformedResponseError(f"Malformed response status: {exc}") from exc
    return status, message


def _select_payload(payloads: list[TLV], request_id: int, known_tags: set[int]) -> TLVGroup:
    for payload in payloads:
        try:
            group = TLVGroup(payload, known_tags)
            received_id = group.one(0x01).as_int()
        except FormatError as exc:
            raise MalformedResponseError(f"Malformed response payload: {exc}") from exc
        if received_id == request_id:
            return group
    raise MalformedResponseError(f"No response payload echoes request id {request_id}")


def parse_aggregation_response(
    data: bytes,
    credentials: ServiceCredentials,
    request_id: int,
) -> KSISignature:
    """Validate an aggregation response and decode the signature it carries."""
    payloads = _open(data, AGGREGATION_RESPONSE_TAG, credentials, AggregatorRejectedError)
    group = _select_payload(payloads, request_id, {0x01, 0x04, 0x05} | _SIGNATURE_TAGS)
    status, message = _status(group)
    if status != 0:
        raise AggregatorRejectedError(
            f"Aggregator rejected the request with status 0x{status:x}: {message or 'no message'}",
            status=status,
            status_message=message,
        )
    elements = [element for element in group.elements if element.tag in _SIGNATURE_TAGS]
    if not elements:
        raise MalformedResponseError("Aggregation response carries no signature")
    try:
        return KSISignature.from_elements(elements)
    except (FormatError, InvalidArgumentError, UnsupportedAlgorithmError) as exc:
        raise MalformedResponseError(f"Aggregation response signature invalid: {exc}") from exc


def parse_extension_response(
    data: bytes,
    credentials: ServiceCredentials,
    request_id: int,
) -> ExtensionResponse:
    """Validate an extension response and decode its calendar hash chain."""
    payloads = _open(data, EXTENSION_RESPONSE_TAG, credentials, ExtenderRejectedError)
    group = _select_payload(
        payloads, request_id, {0x01, 0x04, 0x05, CALENDAR_LAST_TIME_TAG, CALENDAR_HASH_CHAIN_TAG}
    )
    status, message = _status(group)
    if status != 0:
        raise ExtenderRejectedError(
            f"Extender rejected the request with status 0x{status:x}: {message or 'no message'}",
            status=status,
            status_message=message,
        )
    try:
        chain = group.optional(CALENDAR_HASH_CHAIN_TAG)
        last_time = group.optional(CALENDAR_LAST_TIME_TAG)
        if chain is None:
            raise MalformedResponseError("Extension response carries no calendar hash chain")
        return ExtensionResponse(
            request_id=request_id,
            calendar_chain=CalendarHashChain.from_tlv(chain),
            calendar_last_time=last_time.as_int() if last_time else None,
        )
    except MalformedResponseError:
        raise
    except (FormatError, InvalidArgumentError, UnsupportedAlgorithmError) as exc:
        raise MalformedResponseError(f"Extension response chain invalid: {exc}") from exc

