"""
End-to-end scenarios through the KSI facade.

The aggregator, extender and publications file are the in-process fakes from
``tools.fake_gateway`` served over ``httpx.MockTransport``; everything from
PDU sealing to PKCS#7 checks runs for real.
"""

from __future__ import annotations

import pytest

from ksi.client import KSI
from ksi.core.crypto.hashing import SHA2_256, hash_data
from ksi.core.crypto.pki import CertificateSubjectSelector
from ksi.modules.signature.models import IdentityMetadata, PublicationData
from ksi.modules.verification.policies import key_based_policy, user_publication_policy
from tools.fake_gateway import FakeKSIService

pytestmark = pytest.mark.integration

DOCUMENT = "This is my document".encode("utf-8")
SAMPLE_PUBLICATION_CODE = (
    "AAAAAA-C2LPXQ-AAKODP-LQN52W-QDAHEJ-WXYWTX-VDU3OS-4VKSJS-WV7TAA-ACYPI3-VYV5GZ-42DOFG"
)


class TestSignatureLifecycle:
    """Sign, store, read back, extend and verify."""

    @pytest.mark.asyncio
    async def test_read_unextended_signature(self, ksi: KSI) -> None:
        stored = (await ksi.sign(DOCUMENT)).to_bytes()

        signature = await ksi.read(stored)

        assert not signature.is_extended
        assert signature.publication_record is None

    @pytest.mark.asyncio
    async def test_sign_document_and_verify_key_based(self, ksi: KSI) -> None:
        signature = await ksi.sign(DOCUMENT)

        assert signature.input_hash == SHA2_256.digest(DOCUMENT)
        result = await ksi.verify(
            signature, key_based_policy(), document_hash=hash_data(DOCUMENT)
        )
        assert result.success, result.message
        assert result.policy == "key-based"

    @pytest.mark.asyncio
    async def test_extend_to_closest_publication(
        self, ksi: KSI, service: FakeKSIService
    ) -> None:
        signature = await ksi.read((await ksi.sign(DOCUMENT)).to_bytes())
        closest = service.calendar.publish()
        service.calendar.publish()

        extended = await ksi.extend(signature)

        assert extended.is_extended
        assert extended.publication_record is not None
        assert extended.publication_record.publication_time == closest.publication_time
        assert closest.publication_time >= signature.aggregation_time
        result = await ksi.verify(extended, document_hash=hash_data(DOCUMENT))
        assert result.success
        assert result.policy == "publications-file"


class TestUserPublication:
    """Verification against a publication code the caller trusts."""

    @pytest.mark.asyncio
    async def test_auto_extend_leaves_signature_unchanged(
        self, ksi: KSI, service: FakeKSIService
    ) -> None:
        signature = await ksi.sign(DOCUMENT)
        before = signature.to_bytes()
        code = service.calendar.publish().publication_data.to_code()

        result = await ksi.verify(
            signature,
            user_publication_policy(),
            user_publication=code,
            extending_allowed=True,
        )

        assert result.success, result.message
        assert result.policy == "user-publication"
        assert signature.to_bytes() == before
        assert not signature.is_extended

    @pytest.mark.asyncio
    async def test_without_extending_is_inconclusive(
        self, ksi: KSI, service: FakeKSIService
    ) -> None:
        signature = await ksi.sign(DOCUMENT)
        code = service.calendar.publish().publication_data.to_code()

        result = await ksi.verify(signature, user_publication_policy(), user_publication=code)

        assert not result.success
        assert result.error_code == "GEN-02"

    @pytest.mark.asyncio
    async def test_publication_older_than_signature(self, ksi: KSI) -> None:
        signature = await ksi.sign(DOCUMENT)
        publication = PublicationData.from_code(SAMPLE_PUBLICATION_CODE)
        assert publication.publication_time < signature.aggregation_time

        result = await ksi.verify(
            signature,
            user_publication_policy(),
            user_publication=SAMPLE_PUBLICATION_CODE,
            extending_allowed=True,
        )

        assert not result.success
        assert result.error_code == "PUB-04"


class TestKeyBasedVerification:
    """Calendar authentication record checks against the publications file."""

    @pytest.mark.asyncio
    async def test_trusted_certificate(self, ksi: KSI) -> None:
        signature = await ksi.sign(DOCUMENT)
        result = await ksi.verify(signature, key_based_policy())
        assert result.success

    @pytest.mark.asyncio
    async def test_certificate_subject_mismatch(self, ksi: KSI) -> None:
        signature = await ksi.sign(DOCUMENT)
        ksi.calendar_certificate_selector = CertificateSubjectSelector.parse(
            "E=someone-else@guardtime.com"
        )

        result = await ksi.verify(signature, key_based_policy())

        assert not result.success
        assert result.error_code == "KEY-02"

    @pytest.mark.asyncio
    async def test_certificate_subject_match(self, ksi: KSI) -> None:
        signature = await ksi.sign(DOCUMENT)
        ksi.calendar_certificate_selector = CertificateSubjectSelector.parse(
            "E=calendar@guardtime.com"
        )
        assert (await ksi.verify(signature, key_based_policy())).success


class TestBlockSigning:
    """Many documents, one aggregation request."""

    @pytest.mark.asyncio
    async def test_fifty_numeric_strings(self, ksi: KSI, service: FakeKSIService) -> None:
        hashes = [hash_data(str(i).encode()) for i in range(1, 51)]

        signatures = await ksi.sign_block(
            [(data_hash, IdentityMetadata(client_id="block-user")) for data_hash in hashes]
        )

        assert len(signatures) == 50
        assert len(service.aggregator.requests) == 1
        for signature, data_hash in zip(signatures, hashes, strict=True):
            assert signature.input_hash == data_hash
            lowest = signature.aggregation_chains[0]
            assert [identity.client_id for identity in lowest.identity] == ["block-user"]
            result = await ksi.verify(signature, key_based_policy(), document_hash=data_hash)
            assert result.success, result.message

    @pytest.mark.asyncio
    async def test_single_leaf_matches_plain_signing(self, ksi: KSI) -> None:
        data_hash = hash_data(b"only one")
        [from_block] = await ksi.sign_block([data_hash])
        direct = await ksi.sign(data_hash)
        assert len(from_block.aggregation_chains) == len(direct.aggregation_chains)
        assert from_block.input_hash == direct.input_hash
        assert (await ksi.verify(from_block, key_based_policy())).success
