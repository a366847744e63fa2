"""Tests for the signing service and the block signer."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from ksi.core.crypto.hashing import DataHash, hash_data
from ksi.core.errors import (
    AggregatorRejectedError,
    BlockTooLargeError,
    InvalidArgumentError,
    MalformedResponseError,
)
from ksi.modules.signature.models import IdentityMetadata, IdentityType, KSISignature
from ksi.modules.signing.block_signer import BlockSigner
from ksi.modules.signing.service import SigningService
from ksi.modules.transport.http import HttpSigningTransport
from ksi.modules.transport.pdu import build_aggregation_request
from ksi.modules.verification.engine import VerificationEngine
from ksi.modules.verification.policies import internal_policy
from ksi.modules.verification.rules import VerificationContext
from tools.fake_gateway import (
    AGGREGATOR_URL,
    TEST_CREDENTIALS,
    FakeKSIService,
    parse_request,
)


@pytest_asyncio.fixture
async def signing_service(service: FakeKSIService) -> AsyncGenerator[SigningService, None]:
    http_client = service.http_client()
    transport = HttpSigningTransport(AGGREGATOR_URL, client=http_client, retry_backoff=0)
    try:
        yield SigningService(transport, TEST_CREDENTIALS)
    finally:
        await transport.close()
        await http_client.aclose()


class _SwappingTransport:
    """Answers every request with a signature for a different hash."""

    def __init__(self, service: FakeKSIService, other: DataHash) -> None:
        self.service = service
        self.other = other

    async def send_signing_request(self, request: bytes) -> bytes:
        _, payload = parse_request(request, TEST_CREDENTIALS)
        request_id = payload.one(0x01).as_int()
        swapped = build_aggregation_request(TEST_CREDENTIALS, request_id, self.other)
        return self.service.aggregator.handle(swapped)

    async def close(self) -> None:
        pass


async def _internally_consistent(signature: KSISignature, document_hash: DataHash) -> bool:
    result = await VerificationEngine().verify(
        internal_policy(), VerificationContext(signature, document_hash=document_hash)
    )
    return result.success


class TestSigningService:
    """Tests for single-hash signing."""

    @pytest.mark.asyncio
    async def test_sign(self, signing_service: SigningService, service: FakeKSIService) -> None:
        data_hash = hash_data(b"This is my document")
        signature = await signing_service.sign(data_hash)

        assert signature.input_hash == data_hash
        assert signature.aggregation_time == service.calendar.now
        assert signature.calendar_authentication_record is not None
        assert service.aggregator.requests == [(data_hash, 0)]
        assert await _internally_consistent(signature, data_hash)

    @pytest.mark.asyncio
    async def test_level_sent(
        self, signing_service: SigningService, service: FakeKSIService
    ) -> None:
        await signing_service.sign(hash_data(b"root"), level=4)
        assert service.aggregator.requests[0][1] == 4

    @pytest.mark.asyncio
    async def test_rejected(
        self, signing_service: SigningService, service: FakeKSIService
    ) -> None:
        service.aggregator.reject_status = 0x0101
        with pytest.raises(AggregatorRejectedError) as exc_info:
            await signing_service.sign(hash_data(b"doc"))
        assert exc_info.value.status == 0x0101

    @pytest.mark.asyncio
    async def test_wrong_hash_signed(self, service: FakeKSIService) -> None:
        signing_service = SigningService(
            _SwappingTransport(service, hash_data(b"other")), TEST_CREDENTIALS
        )
        with pytest.raises(MalformedResponseError, match="requested"):
            await signing_service.sign(hash_data(b"doc"))


class TestBlockSigner:
    """Tests for local aggregation of many hashes."""

    @pytest.mark.asyncio
    async def test_fifty_leaves(
        self, signing_service: SigningService, service: FakeKSIService
    ) -> None:
        signer = BlockSigner(signing_service)
        hashes = [hash_data(str(i).encode()) for i in range(1, 51)]
        for data_hash in hashes:
            signer.add(data_hash)
        assert len(signer) == 50

        signatures = await signer.sign()

        assert len(service.aggregator.requests) == 1
        assert len(signer) == 0
        assert [signature.input_hash for signature in signatures] == hashes
        assert len({signature.aggregation_time for signature in signatures}) == 1
        for signature, data_hash in zip(signatures, hashes, strict=True):
            assert await _internally_consistent(signature, data_hash)

    @pytest.mark.asyncio
    async def test_root_sent_at_tree_level(
        self, signing_service: SigningService, service: FakeKSIService
    ) -> None:
        signer = BlockSigner(signing_service)
        for i in range(4):
            signer.add(hash_data(str(i).encode()))
        await signer.sign()
        assert service.aggregator.requests[0][1] == 2

    @pytest.mark.asyncio
    async def test_single_leaf_signed_directly(
        self, signing_service: SigningService, service: FakeKSIService
    ) -> None:
        data_hash = hash_data(b"alone")
        signer = BlockSigner(signing_service)
        signer.add(data_hash)

        [signature] = await signer.sign()

        assert service.aggregator.requests == [(data_hash, 0)]
        assert len(signature.aggregation_chains) == 2

    @pytest.mark.asyncio
    async def test_metadata_in_lowest_chain(self, signing_service: SigningService) -> None:
        signer = BlockSigner(signing_service)
        signer.add(hash_data(b"first"), IdentityMetadata(client_id="block-client"))
        signer.add(hash_data(b"second"))

        first, second = await signer.sign()

        lowest = first.aggregation_chains[0]
        assert lowest.identity[0].client_id == "block-client"
        assert lowest.identity[0].type is IdentityType.METADATA
        assert first.identity[-1].client_id == "block-client"
        assert not second.aggregation_chains[0].identity
        assert await _internally_consistent(first, hash_data(b"first"))
        assert await _internally_consistent(second, hash_data(b"second"))

    @pytest.mark.asyncio
    async def test_leaf_chain_index_extends_root_index(
        self, signing_service: SigningService
    ) -> None:
        signer = BlockSigner(signing_service)
        for i in range(4):
            signer.add(hash_data(str(i).encode()))
        signatures = await signer.sign()
        root_index = signatures[0].aggregation_chains[1].chain_index
        for signature in signatures:
            assert signature.aggregation_chains[0].chain_index[:-1] == root_index

    @pytest.mark.asyncio
    async def test_limit_enforced_before_any_request(
        self, signing_service: SigningService, service: FakeKSIService
    ) -> None:
        signer = BlockSigner(signing_service, max_leaves=3)
        for i in range(3):
            signer.add(hash_data(str(i).encode()))
        with pytest.raises(BlockTooLargeError):
            signer.add(hash_data(b"one too many"))
        assert len(signer) == 3
        assert service.hits == {}

    @pytest.mark.asyncio
    async def test_empty_block(self, signing_service: SigningService) -> None:
        with pytest.raises(InvalidArgumentError, match="no leaves"):
            await BlockSigner(signing_service).sign()

    @pytest.mark.asyncio
    async def test_failed_request_keeps_leaves(
        self, signing_service: SigningService, service: FakeKSIService
    ) -> None:
        service.aggregator.reject_status = 0x0200
        signer = BlockSigner(signing_service)
        signer.add(hash_data(b"a"))
        signer.add(hash_data(b"b"))
        with pytest.raises(AggregatorRejectedError):
            await signer.sign()
        assert len(signer) == 2

    @pytest.mark.asyncio
    async def test_invalid_limit(self, signing_service: SigningService) -> None:
        with pytest.raises(InvalidArgumentError):
            BlockSigner(signing_service, max_leaves=0)
