"""
Transport capabilities.

Three narrow request/response boundaries, wired independently so HTTP,
in-memory and on-disk implementations compose the same way.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from ksi.core.crypto.hashing import SHA2_256, HashAlgorithm


@dataclass(frozen=True)
class ServiceCredentials:
    """Login id and HMAC key for an aggregator or extender."""

    login_id: str
    login_key: bytes = field(repr=False)
    hmac_algorithm: HashAlgorithm = SHA2_256


class SigningTransport(Protocol):
    async def send_signing_request(self, request: bytes) -> bytes: ...

    async def close(self) -> None: ...


class ExtendingTransport(Protocol):
    async def send_extending_request(self, request: bytes) -> bytes: ...

    async def close(self) -> None: ...


class PublicationsFileTransport(Protocol):
    async def fetch_publications_file(self) -> bytes: ...

    async def close(self) -> None: ...
