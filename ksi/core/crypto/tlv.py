"""
Type-length-value codec used by KSI signatures, protocol messages and the
publications file.

Header layout (first byte)::

    bit 7    16-bit form (13-bit tag, 2-byte length)
    bit 6    non-critical: unknown elements may be ignored
    bit 5    forward: unknown elements must be passed on unchanged
    bits 0-4 tag (8-bit form) or high bits of the tag (16-bit form)

Encoding always picks the 8-bit form when it fits, which is the canonical
form of an element.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import TypeVar

from ksi.core.crypto.hashing import DataHash
from ksi.core.errors import MalformedTlvError, UnknownCriticalTlvError

_FLAG_TLV16 = 0x80
_FLAG_NON_CRITICAL = 0x40
_FLAG_FORWARD = 0x20

MAX_TAG = 0x1FFF
MAX_TLV8_TAG = 0x1F
MAX_TLV8_LENGTH = 0xFF
MAX_TLV16_LENGTH = 0xFFFF

_R = TypeVar("_R")


@dataclass(frozen=True, slots=True)
class TLV:
    """A single TLV element with its raw value."""

    tag: int
    value: bytes = b""
    non_critical: bool = False
    forward: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.tag <= MAX_TAG:
            raise MalformedTlvError(f"TLV tag 0x{self.tag:x} out of range")
        if len(self.value) > MAX_TLV16_LENGTH:
            raise MalformedTlvError(
                f"TLV 0x{self.tag:02x} value of {len(self.value)} bytes is too long"
            )

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def raw(cls, tag: int, value: bytes, **flags: bool) -> TLV:
        return cls(tag, bytes(value), **flags)

    @classmethod
    def integer(cls, tag: int, number: int, **flags: bool) -> TLV:
        if number < 0:
            raise MalformedTlvError(f"TLV 0x{tag:02x} cannot encode negative integer")
        length = (number.bit_length() + 7) // 8
        return cls(tag, number.to_bytes(length, "big"), **flags)

    @classmethod
    def utf8(cls, tag: int, text: str, **flags: bool) -> TLV:
        return cls(tag, text.encode("utf-8") + b"\x00", **flags)

    @classmethod
    def imprint(cls, tag: int, data_hash: DataHash, **flags: bool) -> TLV:
        return cls(tag, data_hash.imprint, **flags)

    @classmethod
    def composite(cls, tag: int, children: Iterable[TLV], **flags: bool) -> TLV:
        return cls(tag, b"".join(child.encode() for child in children), **flags)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def as_int(self) -> int:
        if len(self.value) > 8:
            raise MalformedTlvError(f"TLV 0x{self.tag:02x} integer longer than 8 bytes")
        if len(self.value) > 1 and self.value[0] == 0:
            raise MalformedTlvError(f"TLV 0x{self.tag:02x} integer has leading zeros")
        return int.from_bytes(self.value, "big")

    def as_str(self) -> str:
        if not self.value or self.value[-1] != 0:
            raise MalformedTlvError(f"TLV 0x{self.tag:02x} string is not NUL-terminated")
        try:
            return self.value[:-1].decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedTlvError(f"TLV 0x{self.tag:02x} is not valid UTF-8") from exc

    def as_imprint(self) -> DataHash:
        return DataHash.from_imprint(self.value)

    def children(self) -> list[TLV]:
        return decode_all(self.value)

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    @property
    def is_tlv16(self) -> bool:
        return self.tag > MAX_TLV8_TAG or len(self.value) > MAX_TLV8_LENGTH

    def encode(self) -> bytes:
        flags = 0
        if self.non_critical:
            flags |= _FLAG_NON_CRITICAL
        if self.forward:
            flags |= _FLAG_FORWARD
        length = len(self.value)
        if self.is_tlv16:
            header = bytes(
                [
                    _FLAG_TLV16 | flags | (self.tag >> 8),
                    self.tag & 0xFF,
                    length >> 8,
                    length & 0xFF,
                ]
            )
        else:
            header = bytes([flags | self.tag, length])
        return header + self.value

    def __bytes__(self) -> bytes:
        return self.encode()

    def __repr__(self) -> str:
        flags = "".join(
            flag for flag, on in (("N", self.non_critical), ("F", self.forward)) if on
        )
        return f"TLV(0x{self.tag:02x}{'/' + flags if flags else ''}, {len(self.value)} bytes)"


def _read_element(data: bytes | memoryview, offset: int) -> tuple[TLV, int]:
    """Decode the element starting at ``offset``; return it and the next offset."""
    remaining = len(data) - offset
    if remaining < 2:
        raise MalformedTlvError(f"Truncated TLV header at offset {offset}")
    first = data[offset]
    non_critical = bool(first & _FLAG_NON_CRITICAL)
    forward = bool(first & _FLAG_FORWARD)
    if first & _FLAG_TLV16:
        if remaining < 4:
            raise MalformedTlvError(f"Truncated TLV16 header at offset {offset}")
        tag = ((first & 0x1F) << 8) | data[offset + 1]
        length = (data[offset + 2] << 8) | data[offset + 3]
        start = offset + 4
    else:
        tag = first & 0x1F
        length = data[offset + 1]
        start = offset + 2
    end = start + length
    if end > len(data):
        raise MalformedTlvError(
            f"TLV 0x{tag:02x} at offset {offset} declares {length} bytes, "
            f"only {len(data) - start} available"
        )
    return TLV(tag, bytes(data[start:end]), non_critical, forward), end


def iter_raw(data: bytes) -> Iterator[tuple[TLV, bytes]]:
    """Yield each element in ``data`` together with its exact encoded bytes."""
    offset = 0
    while offset < len(data):
        element, end = _read_element(data, offset)
        yield element, bytes(data[offset:end])
        offset = end


def decode_all(data: bytes) -> list[TLV]:
    """Decode a concatenation of TLV elements."""
    return [element for element, _ in iter_raw(data)]


def decode(data: bytes) -> TLV:
    """Decode exactly one TLV element spanning all of ``data``."""
    element, end = _read_element(data, 0)
    if end != len(data):
        raise MalformedTlvError(f"{len(data) - end} trailing bytes after TLV 0x{element.tag:02x}")
    return element


def split_raw(data: bytes) -> list[bytes]:
    """Return the encoded bytes of each element in ``data``."""
    return [raw for _, raw in iter_raw(data)]


class TLVGroup:
    """Children of a composite element checked against the parent's schema.

    Known tags are grouped for lookup. Unknown non-critical children are kept
    in ``unknown`` so they survive re-encoding; an unknown critical child
    raises :class:`UnknownCriticalTlvError`.
    """

    def __init__(self, parent: TLV, known_tags: Iterable[int]) -> None:
        self.parent = parent
        self.known_tags = frozenset(known_tags)
        self.elements: list[TLV] = []
        unknown: list[TLV] = []
        for child in parent.children():
            if child.tag in self.known_tags:
                self.elements.append(child)
            elif child.non_critical:
                unknown.append(child)
            else:
                raise UnknownCriticalTlvError(
                    f"Unknown critical TLV 0x{child.tag:02x} inside 0x{parent.tag:02x}",
                    tag=child.tag,
                )
        self.unknown = tuple(unknown)

    def many(self, *tags: int) -> list[TLV]:
        """All children with any of ``tags``, in original order."""
        return [element for element in self.elements if element.tag in tags]

    def optional(self, tag: int) -> TLV | None:
        found = self.many(tag)
        if len(found) > 1:
            raise MalformedTlvError(
                f"TLV 0x{self.parent.tag:02x} contains {len(found)} elements 0x{tag:02x}"
            )
        return found[0] if found else None

    def one(self, tag: int) -> TLV:
        found = self.optional(tag)
        if found is None:
            raise MalformedTlvError(
                f"TLV 0x{self.parent.tag:02x} is missing mandatory element 0x{tag:02x}"
            )
        return found


def retain_source(record: _R, tlv: TLV) -> _R:
    """Remember the element ``record`` was decoded from.

    Records re-emit their source element as read, flags and element order
    included. Copies made with :func:`dataclasses.replace` drop it and are
    encoded from their fields.
    """
    object.__setattr__(record, "source", tlv)
    return record
