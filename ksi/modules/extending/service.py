"""
Extending: anchor a signature to a published calendar root.

The extender returns the calendar hash chain from the signature's round to
the publication time. The result carries that chain and a publication record
in place of the calendar authentication record.
"""

from __future__ import annotations

from ksi.core.errors import (
    ExtenderInconsistentError,
    ExtenderRejectedError,
    MalformedSignatureError,
    NoSuitablePublicationError,
    PublicationUnavailableError,
)
from ksi.core.logging import get_logger
from ksi.modules.publications.service import PublicationsFileHandler
from ksi.modules.signature.chains import aggregate_chains
from ksi.modules.signature.models import CalendarHashChain, KSISignature, PublicationRecord
from ksi.modules.transport.base import ExtendingTransport, ServiceCredentials
from ksi.modules.transport.pdu import (
    build_extension_request,
    new_request_id,
    parse_extension_response,
)

logger = get_logger(__name__)


class ExtendingService:
    """Requests calendar hash chains and builds extended signatures."""

    def __init__(
        self,
        transport: ExtendingTransport,
        credentials: ServiceCredentials,
        publications: PublicationsFileHandler | None = None,
    ) -> None:
        self.transport = transport
        self.credentials = credentials
        self.publications = publications

    async def get_calendar_chain(
        self,
        aggregation_time: int,
        publication_time: int | None = None,
    ) -> CalendarHashChain:
        """Calendar chain from ``aggregation_time`` to ``publication_time``.

        Without a publication time the extender uses its most recent
        calendar root.
        """
        request_id = new_request_id()
        request = build_extension_request(
            self.credentials, request_id, aggregation_time, publication_time
        )
        logger.debug(
            "ksi_extending_request",
            request_id=request_id,
            aggregation_time=aggregation_time,
            publication_time=publication_time,
        )
        response = await self.transport.send_extending_request(request)
        return parse_extension_response(response, self.credentials, request_id).calendar_chain

    async def extend(
        self,
        signature: KSISignature,
        publication_record: PublicationRecord | None = None,
    ) -> KSISignature:
        """Return ``signature`` extended to ``publication_record``.

        Without a record the earliest publication at or after the signing
        time is taken from the publications file.
        """
        if publication_record is None:
            publication_record = await self._closest_publication(signature)
            chain = await self.get_calendar_chain(
                signature.aggregation_time, publication_record.publication_time
            )
        else:
            try:
                chain = await self.get_calendar_chain(
                    signature.aggregation_time, publication_record.publication_time
                )
            except ExtenderRejectedError as exc:
                raise PublicationUnavailableError(
                    f"Extender cannot deliver publication {publication_record.publication_time}: "
                    f"{exc}"
                ) from exc

        check_extension_consistency(signature, chain, publication_record)
        extended = signature.extended_to(chain, publication_record)
        logger.info(
            "ksi_signature_extended",
            aggregation_time=signature.aggregation_time,
            publication_time=publication_record.publication_time,
        )
        return extended

    async def _closest_publication(self, signature: KSISignature) -> PublicationRecord:
        if self.publications is None:
            raise NoSuitablePublicationError("No publications file is available for extending")
        publications_file = await self.publications.get()
        record = publications_file.publication_record_at_or_after(signature.aggregation_time)
        if record is None:
            raise NoSuitablePublicationError(
                f"No publication at or after aggregation time {signature.aggregation_time}"
            )
        return record


def check_extension_consistency(
    signature: KSISignature,
    chain: CalendarHashChain,
    publication_record: PublicationRecord,
) -> None:
    """Check an extender's chain links ``signature`` to ``publication_record``."""
    if chain.publication_time != publication_record.publication_time:
        raise ExtenderInconsistentError(
            f"Extender chain publication time {chain.publication_time} differs from "
            f"{publication_record.publication_time}"
        )
    if chain.output_hash != publication_record.published_hash:
        raise ExtenderInconsistentError("Extender chain does not hash to the published root")
    if chain.effective_aggregation_time != signature.aggregation_time:
        raise ExtenderInconsistentError(
            f"Extender chain aggregation time {chain.effective_aggregation_time} differs from "
            f"{signature.aggregation_time}"
        )
    try:
        registration_time = chain.registration_time
        top = aggregate_chains(signature.aggregation_chains)[-1].output_hash
    except MalformedSignatureError as exc:
        raise ExtenderInconsistentError(f"Extender chain is malformed: {exc}") from exc
    if registration_time != signature.aggregation_time:
        raise ExtenderInconsistentError("Extender chain shape does not match the aggregation time")
    if chain.input_hash != top:
        raise ExtenderInconsistentError("Extender chain input differs from the aggregation output")
