"""Tests for trust store, subject selectors and signature checks."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.serialization import pkcs7

from ksi.core.crypto.pki import (
    PKCS7_SIGNATURE_TYPE,
    CertificateSubjectSelector,
    CertificateValidationError,
    PKITrustStore,
    verify_cms_signature,
    verify_signature_by_type,
)
from tools.fake_gateway import (
    RSA_SHA256_SIGNATURE_TYPE,
    FakePKI,
    generate_key,
    issue_certificate,
    subject_name,
)


def _detached(pki: FakePKI, content: bytes) -> bytes:
    return (
        pkcs7.PKCS7SignatureBuilder()
        .set_data(content)
        .add_signer(pki.publications_certificate, pki.publications_key, hashes.SHA256())
        .sign(
            serialization.Encoding.DER,
            [pkcs7.PKCS7Options.DetachedSignature, pkcs7.PKCS7Options.Binary],
        )
    )


class TestCertificateSubjectSelector:
    """Tests for subject RDN matching."""

    def test_matches_email(self, pki: FakePKI) -> None:
        selector = CertificateSubjectSelector.parse("E=publications@guardtime.com")
        assert selector.matches(pki.publications_certificate)
        assert not selector.matches(pki.calendar_certificate)

    def test_all_attributes_required(self, pki: FakePKI) -> None:
        selector = CertificateSubjectSelector.parse(
            "E=publications@guardtime.com, O=Someone Else"
        )
        assert not selector.matches(pki.publications_certificate)

    def test_dotted_oid(self, pki: FakePKI) -> None:
        selector = CertificateSubjectSelector.parse("2.5.4.3=Test Calendar")
        assert selector.matches(pki.calendar_certificate)

    @pytest.mark.parametrize("text", ["", "E", "XYZ=value", "CN="])
    def test_invalid(self, text: str) -> None:
        with pytest.raises(ValueError):
            CertificateSubjectSelector.parse(text)


class TestPKITrustStore:
    """Tests for certificate path validation."""

    def test_leaf_issued_by_root(self, pki: FakePKI) -> None:
        chain = pki.trust_store.validate_path(pki.calendar_certificate)
        assert chain == [pki.calendar_certificate, pki.ca_certificate]

    def test_from_pem(self, pki: FakePKI) -> None:
        store = PKITrustStore.from_pem(pki.ca_pem)
        assert store.roots == (pki.ca_certificate,)

    def test_untrusted_issuer(self, pki: FakePKI) -> None:
        other_key = generate_key()
        other_name = subject_name("Other Root")
        stranger = issue_certificate(
            subject_name("Stranger"), generate_key().public_key(), other_name, other_key
        )
        with pytest.raises(CertificateValidationError, match="No trusted path"):
            pki.trust_store.validate_path(stranger)

    def test_intermediate_path(self, pki: FakePKI) -> None:
        intermediate_key = generate_key()
        intermediate = issue_certificate(
            subject_name("Intermediate"),
            intermediate_key.public_key(),
            pki.ca_certificate.subject,
            pki.ca_key,
            ca=True,
        )
        leaf = issue_certificate(
            subject_name("Leaf"),
            generate_key().public_key(),
            intermediate.subject,
            intermediate_key,
        )
        chain = pki.trust_store.validate_path(leaf, [intermediate])
        assert chain == [leaf, intermediate, pki.ca_certificate]

    def test_validity_window(self, pki: FakePKI) -> None:
        with pytest.raises(CertificateValidationError, match="not valid"):
            pki.trust_store.validate_path(
                pki.calendar_certificate, at=datetime(2045, 1, 1, tzinfo=UTC)
            )

    def test_default_store_loads_certifi_bundle(self) -> None:
        assert len(PKITrustStore.default().roots) > 10


class TestSignatureVerification:
    """Tests for raw and CMS signatures."""

    def test_rsa_sha256(self, pki: FakePKI) -> None:
        data = b"published data"
        signature = pki.calendar_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
        verify_signature_by_type(
            pki.calendar_certificate, RSA_SHA256_SIGNATURE_TYPE, signature, data
        )
        with pytest.raises(CertificateValidationError, match="failed"):
            verify_signature_by_type(
                pki.calendar_certificate, RSA_SHA256_SIGNATURE_TYPE, signature, data + b"!"
            )

    def test_unknown_signature_type(self, pki: FakePKI) -> None:
        with pytest.raises(CertificateValidationError, match="Unsupported"):
            verify_signature_by_type(pki.calendar_certificate, "1.2.3.4", b"", b"")

    def test_ecdsa_type_with_rsa_key(self, pki: FakePKI) -> None:
        with pytest.raises(CertificateValidationError, match="does not match"):
            verify_signature_by_type(pki.calendar_certificate, "1.2.840.10045.4.3.2", b"", b"")

    def test_detached_cms(self, pki: FakePKI) -> None:
        content = b"KSIPUBLF" + b"\x01\x02\x03"
        signer, embedded = verify_cms_signature(_detached(pki, content), content)
        assert signer == pki.publications_certificate
        assert pki.publications_certificate in embedded

    def test_detached_cms_wrong_content(self, pki: FakePKI) -> None:
        signature = _detached(pki, b"original")
        with pytest.raises(CertificateValidationError, match="message digest"):
            verify_cms_signature(signature, b"tampered")

    def test_cms_garbage(self) -> None:
        with pytest.raises(CertificateValidationError):
            verify_cms_signature(b"\x30\x03\x02\x01\x00", b"")

    def test_pkcs7_signature_type_requires_referenced_signer(self, pki: FakePKI) -> None:
        content = b"content"
        signature = _detached(pki, content)
        verify_signature_by_type(
            pki.publications_certificate, PKCS7_SIGNATURE_TYPE, signature, content
        )
        with pytest.raises(CertificateValidationError, match="not the referenced"):
            verify_signature_by_type(
                pki.calendar_certificate, PKCS7_SIGNATURE_TYPE, signature, content
            )
