"""
Publications file verification and caching.

The handler keeps one verified snapshot. Refreshes are serialized by an
``asyncio.Lock`` and publish the new snapshot with a single reference swap,
so readers always see a complete, verified file.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable
from datetime import UTC, date, datetime

from cryptography import x509

from ksi.core.crypto.pki import (
    CertificateSubjectSelector,
    CertificateValidationError,
    PKITrustStore,
    verify_cms_signature,
)
from ksi.core.errors import (
    InvalidArgumentError,
    PublicationsFileRegressionError,
    PublicationsFileUntrustedError,
)
from ksi.core.logging import get_logger
from ksi.modules.publications.models import PublicationsFile
from ksi.modules.transport.base import PublicationsFileTransport

logger = get_logger(__name__)

_WEEK_YEAR_DIRECTIVES = re.compile(r"%[GVu]")


def parse_utc_date(text: str, fmt: str = "%Y-%m-%d", *, allow_week_year: bool = False) -> date:
    """Parse a calendar date.

    ISO week-year directives (``%G``, ``%V``, ``%u``) give surprising results
    around the new year and are rejected unless explicitly allowed.
    """
    if _WEEK_YEAR_DIRECTIVES.search(fmt) and not allow_week_year:
        raise InvalidArgumentError(
            f"Date format {fmt!r} uses ISO week-year directives; pass allow_week_year=True"
        )
    try:
        return datetime.strptime(text, fmt).replace(tzinfo=UTC).date()
    except ValueError as exc:
        raise InvalidArgumentError(f"Cannot parse date {text!r} with {fmt!r}: {exc}") from exc


def verify_publications_file(
    publications_file: PublicationsFile,
    trust_store: PKITrustStore,
    selector: CertificateSubjectSelector,
    *,
    at: datetime | None = None,
) -> x509.Certificate:
    """Authenticate a publications file and return its signer certificate.

    Raises
    ------
    PublicationsFileUntrustedError
        If the signature, the signer's subject or its certificate path
        cannot be validated.
    """
    try:
        signer, embedded = verify_cms_signature(
            publications_file.signature, publications_file.signed_bytes
        )
        if not selector.matches(signer):
            raise CertificateValidationError(
                f"Signer {signer.subject.rfc4514_string()} does not match selector {selector}"
            )
        trust_store.validate_path(signer, embedded, at=at)
    except CertificateValidationError as exc:
        logger.warning("publications_file_untrusted", reason=str(exc))
        raise PublicationsFileUntrustedError(f"Publications file is not trusted: {exc}") from exc

    logger.debug(
        "publications_file_verified",
        signer=signer.subject.rfc4514_string(),
        publications=len(publications_file.publication_records),
    )
    return signer


class PublicationsFileHandler:
    """Fetches, verifies and caches the publications file."""

    def __init__(
        self,
        transport: PublicationsFileTransport,
        trust_store: PKITrustStore,
        selector: CertificateSubjectSelector,
        *,
        cache_ttl: float = 8 * 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.trust_store = trust_store
        self.selector = selector
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._lock = asyncio.Lock()
        self._current: PublicationsFile | None = None
        self._loaded_at: float | None = None

    @property
    def current(self) -> PublicationsFile | None:
        """The cached snapshot, possibly stale, without fetching."""
        return self._current

    def _is_fresh(self) -> bool:
        return (
            self._current is not None
            and self._loaded_at is not None
            and self._clock() - self._loaded_at < self.cache_ttl
        )

    async def get(self) -> PublicationsFile:
        """Return the cached snapshot, refreshing it when expired."""
        if self._is_fresh():
            assert self._current is not None
            return self._current
        async with self._lock:
            if self._is_fresh():
                assert self._current is not None
                return self._current
            return await self._refresh_locked()

    async def refresh(self) -> PublicationsFile:
        """Fetch and install a new snapshot regardless of cache age."""
        async with self._lock:
            return await self._refresh_locked()

    async def replace(self, publications_file: PublicationsFile) -> PublicationsFile:
        """Verify and install a caller-provided snapshot."""
        async with self._lock:
            return self._install(publications_file)

    async def _refresh_locked(self) -> PublicationsFile:
        data = await self.transport.fetch_publications_file()
        return self._install(PublicationsFile.from_bytes(data))

    def _install(self, publications_file: PublicationsFile) -> PublicationsFile:
        verify_publications_file(publications_file, self.trust_store, self.selector)
        self._check_regression(publications_file)
        self._current = publications_file
        self._loaded_at = self._clock()
        latest = publications_file.latest_publication()
        logger.info(
            "publications_file_installed",
            publications=len(publications_file.publication_records),
            latest_publication=latest.publication_time if latest else None,
        )
        return publications_file

    def _check_regression(self, candidate: PublicationsFile) -> None:
        if self._current is None:
            return
        current_latest = self._current.latest_publication()
        candidate_latest = candidate.latest_publication()
        if current_latest is None:
            return
        if candidate_latest is None or (
            candidate_latest.publication_time < current_latest.publication_time
        ):
            logger.warning(
                "publications_file_regression",
                current=current_latest.publication_time,
                candidate=candidate_latest.publication_time if candidate_latest else None,
            )
            raise PublicationsFileRegressionError(
                "Publications file is older than the cached one"
            )
