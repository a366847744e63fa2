"""
KSI client facade.

Bundles transports, credentials, the publications-file trust configuration
and settings behind one object. Every I/O operation accepts ``timeout=``,
a deadline for the whole call including retries.

Usage::

    async with KSI.from_settings() as ksi:
        signature = await ksi.sign(b"document")
        result = await ksi.verify(signature, document_hash=hash_data(b"document"))
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from pathlib import Path
from types import TracebackType
from typing import BinaryIO, Self

import httpx
import structlog

from ksi.core.config import Settings, get_settings
from ksi.core.crypto.hashing import DataHash, HashAlgorithm, hash_data
from ksi.core.crypto.pki import CertificateSubjectSelector, PKITrustStore
from ksi.core.errors import (
    ClientClosedError,
    InvalidArgumentError,
    KSIError,
    MalformedSignatureError,
    OperationCancelledError,
)
from ksi.core.logging import get_logger
from ksi.modules.extending.service import ExtendingService
from ksi.modules.publications.models import PublicationsFile
from ksi.modules.publications.service import PublicationsFileHandler
from ksi.modules.signature.models import (
    IdentityMetadata,
    KSISignature,
    PublicationData,
    PublicationRecord,
)
from ksi.modules.signing.block_signer import BlockSigner
from ksi.modules.signing.service import SigningService
from ksi.modules.transport.base import (
    ExtendingTransport,
    PublicationsFileTransport,
    ServiceCredentials,
    SigningTransport,
)
from ksi.modules.transport.files import FilePublicationsFileTransport
from ksi.modules.transport.http import (
    HttpExtendingTransport,
    HttpPublicationsFileTransport,
    HttpSigningTransport,
    transport_options,
)
from ksi.modules.verification.engine import VerificationEngine
from ksi.modules.verification.policies import Policy, default_policy, internal_policy
from ksi.modules.verification.rules import VerificationContext
from ksi.modules.verification.schemas import VerificationResult

logger = get_logger(__name__)

Signable = bytes | bytearray | memoryview | DataHash | Path | BinaryIO
BlockItem = DataHash | tuple[DataHash, IdentityMetadata | None]

_PUBLICATIONS_FILE_POLICIES = {"publications-file", "key-based"}

_Transport = SigningTransport | ExtendingTransport | PublicationsFileTransport


class KSI:
    """Signing, extending and verification against one KSI service setup."""

    def __init__(
        self,
        *,
        signing_transport: SigningTransport | None = None,
        extending_transport: ExtendingTransport | None = None,
        publications_transport: PublicationsFileTransport | None = None,
        credentials: ServiceCredentials | None = None,
        extender_credentials: ServiceCredentials | None = None,
        trust_store: PKITrustStore | None = None,
        publications_file_selector: CertificateSubjectSelector | None = None,
        calendar_certificate_selector: CertificateSubjectSelector | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.calendar_certificate_selector = calendar_certificate_selector
        self._closed = False
        self._transports: list[_Transport] = []

        self._signing: SigningService | None = None
        if signing_transport is not None:
            if credentials is None:
                raise InvalidArgumentError("A signing transport requires credentials")
            self._signing = SigningService(signing_transport, credentials)
            self._transports.append(signing_transport)

        self._publications: PublicationsFileHandler | None = None
        if publications_transport is not None:
            self._publications = PublicationsFileHandler(
                publications_transport,
                trust_store or PKITrustStore.default(),
                publications_file_selector
                or CertificateSubjectSelector.parse(self.settings.publications_file_subject),
                cache_ttl=self.settings.publications_file_cache_ttl,
            )
            self._transports.append(publications_transport)

        self._extending: ExtendingService | None = None
        if extending_transport is not None:
            extender_credentials = extender_credentials or credentials
            if extender_credentials is None:
                raise InvalidArgumentError("An extending transport requires credentials")
            self._extending = ExtendingService(
                extending_transport, extender_credentials, self._publications
            )
            self._transports.append(extending_transport)

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        publications_file: Path | None = None,
    ) -> KSI:
        """Build a client with HTTP transports for every configured endpoint.

        Parameters
        ----------
        settings:
            Client settings, ``get_settings()`` when omitted.
        http_client:
            Shared ``httpx.AsyncClient``; each transport creates its own
            when omitted.
        publications_file:
            Read the publications file from this path instead of
            ``settings.publications_file_url``.
        """
        settings = settings or get_settings()
        options = transport_options(settings)
        hmac_algorithm = HashAlgorithm.by_name(settings.hmac_algorithm)

        credentials = None
        if settings.login_id:
            credentials = ServiceCredentials(
                settings.login_id,
                settings.login_key.get_secret_value().encode(),
                hmac_algorithm,
            )
        extender_credentials = credentials
        if settings.extender_login_id:
            key = settings.extender_login_key or settings.login_key
            extender_credentials = ServiceCredentials(
                settings.extender_login_id, key.get_secret_value().encode(), hmac_algorithm
            )

        publications_transport: PublicationsFileTransport | None = None
        if publications_file is not None:
            publications_transport = FilePublicationsFileTransport(publications_file)
        elif settings.publications_file_url:
            publications_transport = HttpPublicationsFileTransport(
                settings.publications_file_url, client=http_client, **options
            )

        trust_store = (
            PKITrustStore.from_pem_file(settings.publications_file_trust_store)
            if settings.publications_file_trust_store
            else PKITrustStore.default()
        )
        calendar_selector = (
            CertificateSubjectSelector.parse(settings.calendar_certificate_subject)
            if settings.calendar_certificate_subject
            else None
        )

        return cls(
            signing_transport=(
                HttpSigningTransport(settings.aggregator_url, client=http_client, **options)
                if settings.aggregator_url
                else None
            ),
            extending_transport=(
                HttpExtendingTransport(settings.extender_url, client=http_client, **options)
                if settings.extender_url
                else None
            ),
            publications_transport=publications_transport,
            credentials=credentials,
            extender_credentials=extender_credentials,
            trust_store=trust_store,
            publications_file_selector=CertificateSubjectSelector.parse(
                settings.publications_file_subject
            ),
            calendar_certificate_selector=calendar_selector,
            settings=settings,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Release every transport. Calling it again does nothing."""
        if self._closed:
            return
        self._closed = True
        for transport in self._transports:
            await transport.close()
        logger.debug("ksi_client_closed")

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    @asynccontextmanager
    async def _operation(self, name: str, timeout: float | None) -> AsyncIterator[None]:
        """Run one facade call under its deadline and annotate its errors."""
        if self._closed:
            raise ClientClosedError(f"Cannot {name}: the client is closed")
        deadline = asyncio.timeout(timeout)
        try:
            with structlog.contextvars.bound_contextvars(ksi_operation=name):
                async with deadline:
                    yield
        except TimeoutError as exc:
            if not deadline.expired():
                raise
            logger.warning("ksi_operation_deadline_expired", operation=name, timeout=timeout)
            raise OperationCancelledError(
                f"{name} did not complete within {timeout} seconds"
            ) from exc
        except KSIError as exc:
            exc.add_note(f"during ksi {name}")
            logger.warning(
                "ksi_operation_failed",
                operation=name,
                error_code=exc.error_code,
                error=str(exc),
            )
            raise

    def _require_signing(self) -> SigningService:
        if self._signing is None:
            raise InvalidArgumentError("No aggregator is configured")
        return self._signing

    def _require_extending(self) -> ExtendingService:
        if self._extending is None:
            raise InvalidArgumentError("No extender is configured")
        return self._extending

    def _require_publications(self) -> PublicationsFileHandler:
        if self._publications is None:
            raise InvalidArgumentError("No publications file source is configured")
        return self._publications

    # -------------------------------------------------------------------------
    # Signing
    # -------------------------------------------------------------------------

    async def hash(self, data: Signable, algorithm: HashAlgorithm | None = None) -> DataHash:
        """Hash ``data`` with the configured default algorithm; files are read off the loop."""
        if isinstance(data, DataHash):
            return data
        algorithm = algorithm or self.settings.hash_algorithm
        if isinstance(data, Path):
            return await asyncio.to_thread(hash_data, data, algorithm)
        return hash_data(data, algorithm)

    async def sign(
        self,
        data: Signable,
        *,
        algorithm: HashAlgorithm | None = None,
        timeout: float | None = None,
    ) -> KSISignature:
        """Sign raw data, a stream, a file or a precomputed hash."""
        async with self._operation("sign", timeout):
            service = self._require_signing()
            data_hash = await self.hash(data, algorithm)
            return await service.sign(data_hash)

    def create_block_signer(self, *, max_leaves: int | None = None) -> BlockSigner:
        if self._closed:
            raise ClientClosedError("Cannot create a block signer: the client is closed")
        return BlockSigner(
            self._require_signing(),
            max_leaves=max_leaves or self.settings.max_block_leaves,
            hash_algorithm=self.settings.hash_algorithm,
        )

    async def sign_block(
        self,
        items: Iterable[BlockItem],
        *,
        timeout: float | None = None,
    ) -> list[KSISignature]:
        """Sign many hashes with one aggregation request, preserving input order."""
        async with self._operation("sign_block", timeout):
            signer = self.create_block_signer()
            for item in items:
                if isinstance(item, DataHash):
                    signer.add(item)
                else:
                    signer.add(*item)
            return await signer.sign()

    # -------------------------------------------------------------------------
    # Extending
    # -------------------------------------------------------------------------

    async def extend(
        self,
        signature: KSISignature,
        publication_record: PublicationRecord | None = None,
        *,
        timeout: float | None = None,
    ) -> KSISignature:
        async with self._operation("extend", timeout):
            return await self._require_extending().extend(signature, publication_record)

    # -------------------------------------------------------------------------
    # Reading and verification
    # -------------------------------------------------------------------------

    async def read(
        self,
        source: bytes | Path | BinaryIO,
        *,
        timeout: float | None = None,
    ) -> KSISignature:
        """Parse a signature, checking internal consistency when ``verify_on_read``."""
        async with self._operation("read", timeout):
            if isinstance(source, bytes):
                data = source
            elif isinstance(source, Path):
                data = await asyncio.to_thread(source.read_bytes)
            else:
                data = source.read()
            signature = KSISignature.from_bytes(data)
            if self.settings.verify_on_read:
                result = await VerificationEngine().verify(
                    internal_policy(), VerificationContext(signature)
                )
                if not result.success:
                    raise MalformedSignatureError(
                        f"Signature is internally inconsistent ({result.error_code}): "
                        f"{result.message}"
                    )
            return signature

    async def get_publications_file(
        self,
        *,
        refresh: bool = False,
        timeout: float | None = None,
    ) -> PublicationsFile:
        """The verified publications file, fetched when missing, expired or ``refresh``."""
        async with self._operation("get_publications_file", timeout):
            handler = self._require_publications()
            return await (handler.refresh() if refresh else handler.get())

    async def verify(
        self,
        signature: KSISignature,
        policy: Policy | None = None,
        *,
        document_hash: DataHash | None = None,
        user_publication: PublicationData | str | None = None,
        extending_allowed: bool | None = None,
        timeout: float | None = None,
    ) -> VerificationResult:
        """Verify ``signature`` under ``policy`` (the default policy when omitted).

        Verification failures are reported in the result, never raised. The
        publications file used is the snapshot current when the call starts.

        A ``user_publication`` code is caller input: an unparsable code raises
        :class:`MalformedPublicationCodeError` before anything is verified.
        """
        policy = policy or default_policy()
        if isinstance(user_publication, str):
            user_publication = PublicationData.from_code(user_publication)
        async with self._operation("verify", timeout):
            context = VerificationContext(
                signature=signature,
                document_hash=document_hash,
                publications_file=await self._publications_snapshot(policy),
                user_publication=user_publication,
                extending_allowed=(
                    self.settings.extending_allowed
                    if extending_allowed is None
                    else extending_allowed
                ),
                extender=self._extending,
                certificate_selector=self.calendar_certificate_selector,
            )
            return await VerificationEngine().verify(policy, context)

    async def _publications_snapshot(self, policy: Policy) -> PublicationsFile | None:
        if self._publications is None or _PUBLICATIONS_FILE_POLICIES.isdisjoint(policy.names):
            return None
        try:
            return await self._publications.get()
        except KSIError as exc:
            logger.warning(
                "ksi_publications_file_unavailable",
                error_code=exc.error_code,
                error=str(exc),
            )
            return self._publications.current
