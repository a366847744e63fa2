"""Signing against a remote aggregator."""

from __future__ import annotations

from ksi.core.crypto.hashing import DataHash
from ksi.core.errors import MalformedResponseError
from ksi.core.logging import get_logger
from ksi.modules.signature.models import KSISignature
from ksi.modules.transport.base import ServiceCredentials, SigningTransport
from ksi.modules.transport.pdu import (
    build_aggregation_request,
    new_request_id,
    parse_aggregation_response,
)

logger = get_logger(__name__)


class SigningService:
    """Sends aggregation requests and decodes the returned signatures."""

    def __init__(self, transport: SigningTransport, credentials: ServiceCredentials) -> None:
        self.transport = transport
        self.credentials = credentials

    async def sign(self, data_hash: DataHash, *, level: int = 0) -> KSISignature:
        """Request a signature for ``data_hash`` entering the aggregation tree at ``level``."""
        request_id = new_request_id()
        request = build_aggregation_request(self.credentials, request_id, data_hash, level)

        logger.debug(
            "ksi_signing_request",
            request_id=request_id,
            data_hash=str(data_hash),
            level=level,
        )
        response = await self.transport.send_signing_request(request)
        signature = parse_aggregation_response(response, self.credentials, request_id)

        if signature.input_hash != data_hash:
            raise MalformedResponseError(
                f"Aggregator signed {signature.input_hash}, requested {data_hash}"
            )

        logger.info(
            "ksi_signature_created",
            request_id=request_id,
            aggregation_time=signature.aggregation_time,
        )
        return signature
