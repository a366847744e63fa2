"""
PKI helpers: trust store, certificate subject selector, raw and CMS
signature verification.

Used to authenticate the publications file (detached CMS SignedData) and
calendar authentication records (raw RSA/ECDSA signatures or CMS).
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from pathlib import Path

import certifi
from asn1crypto import cms, core  # type: ignore[import-untyped]
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.x509 import ObjectIdentifier
from cryptography.x509.oid import NameOID

from ksi.core.logging import get_logger

logger = get_logger(__name__)

PKCS7_SIGNATURE_TYPE = "1.2.840.113549.1.7.2"

# Signature type OIDs accepted in calendar authentication records
_SIGNATURE_TYPES: dict[str, tuple[str, type[hashes.HashAlgorithm]]] = {
    "1.2.840.113549.1.1.5": ("rsa", hashes.SHA1),
    "1.2.840.113549.1.1.11": ("rsa", hashes.SHA256),
    "1.2.840.113549.1.1.12": ("rsa", hashes.SHA384),
    "1.2.840.113549.1.1.13": ("rsa", hashes.SHA512),
    "1.2.840.10045.4.3.2": ("ecdsa", hashes.SHA256),
    "1.2.840.10045.4.3.3": ("ecdsa", hashes.SHA384),
    "1.2.840.10045.4.3.4": ("ecdsa", hashes.SHA512),
}

_CMS_DIGESTS: dict[str, type[hashes.HashAlgorithm]] = {
    "sha1": hashes.SHA1,
    "sha224": hashes.SHA224,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

_RDN_ATTRIBUTES: dict[str, ObjectIdentifier] = {
    "E": NameOID.EMAIL_ADDRESS,
    "EMAIL": NameOID.EMAIL_ADDRESS,
    "EMAILADDRESS": NameOID.EMAIL_ADDRESS,
    "CN": NameOID.COMMON_NAME,
    "O": NameOID.ORGANIZATION_NAME,
    "OU": NameOID.ORGANIZATIONAL_UNIT_NAME,
    "C": NameOID.COUNTRY_NAME,
    "L": NameOID.LOCALITY_NAME,
    "ST": NameOID.STATE_OR_PROVINCE_NAME,
}


class CertificateValidationError(ValueError):
    """Raised when a certificate or signature fails PKI validation."""


# ---------------------------------------------------------------------------
# Subject selector
# ---------------------------------------------------------------------------


class CertificateSubjectSelector:
    """Matches certificates whose subject carries every configured RDN value.

    Parsed from text such as ``"E=publications@guardtime.com, O=Guardtime"``;
    attribute names may also be dotted OIDs.
    """

    def __init__(self, criteria: Iterable[tuple[ObjectIdentifier, str]]) -> None:
        self.criteria = tuple(criteria)
        if not self.criteria:
            raise ValueError("Certificate subject selector needs at least one attribute")

    @classmethod
    def parse(cls, text: str) -> CertificateSubjectSelector:
        criteria: list[tuple[ObjectIdentifier, str]] = []
        for part in text.split(","):
            if not part.strip():
                continue
            name, sep, value = part.partition("=")
            name = name.strip()
            if not sep or not value.strip():
                raise ValueError(f"Invalid subject selector component {part.strip()!r}")
            if name.upper() in _RDN_ATTRIBUTES:
                oid = _RDN_ATTRIBUTES[name.upper()]
            elif name.replace(".", "").isdigit():
                oid = ObjectIdentifier(name)
            else:
                raise ValueError(f"Unknown subject attribute {name!r}")
            criteria.append((oid, value.strip()))
        return cls(criteria)

    def matches(self, certificate: x509.Certificate) -> bool:
        subject = certificate.subject
        for oid, expected in self.criteria:
            values = [attribute.value for attribute in subject.get_attributes_for_oid(oid)]
            if expected not in values:
                return False
        return True

    def __str__(self) -> str:
        return ", ".join(f"{oid.dotted_string}={value}" for oid, value in self.criteria)


# ---------------------------------------------------------------------------
# Trust store
# ---------------------------------------------------------------------------


def _check_validity(certificate: x509.Certificate, moment: datetime) -> None:
    if not certificate.not_valid_before_utc <= moment <= certificate.not_valid_after_utc:
        raise CertificateValidationError(
            f"Certificate {certificate.subject.rfc4514_string()} "
            f"is not valid at {moment.isoformat()}"
        )


def _find_issuer(
    certificate: x509.Certificate,
    candidates: Iterable[x509.Certificate],
) -> x509.Certificate | None:
    for candidate in candidates:
        if candidate.subject != certificate.issuer or candidate == certificate:
            continue
        try:
            certificate.verify_directly_issued_by(candidate)
        except (ValueError, TypeError, InvalidSignature):
            continue
        return candidate
    return None


class PKITrustStore:
    """Read-only set of trusted root certificates."""

    def __init__(self, roots: Iterable[x509.Certificate]) -> None:
        self.roots = tuple(roots)

    @classmethod
    def from_pem(cls, data: bytes) -> PKITrustStore:
        return cls(x509.load_pem_x509_certificates(data))

    @classmethod
    def from_pem_file(cls, path: Path | str) -> PKITrustStore:
        return cls.from_pem(Path(path).read_bytes())

    @classmethod
    def default(cls) -> PKITrustStore:
        """Trust store backed by the certifi CA bundle."""
        return cls.from_pem_file(certifi.where())

    def validate_path(
        self,
        certificate: x509.Certificate,
        intermediates: Sequence[x509.Certificate] = (),
        *,
        at: datetime | None = None,
        max_depth: int = 8,
    ) -> list[x509.Certificate]:
        """Build and check a chain from ``certificate`` to a trusted root.

        Returns the chain, leaf first. Every certificate on the path must be
        valid at ``at`` (now when omitted).
        """
        moment = at or datetime.now(UTC)
        chain = [certificate]
        current = certificate
        for _ in range(max_depth):
            _check_validity(current, moment)
            if current in self.roots:
                return chain
            root = _find_issuer(current, self.roots)
            if root is not None:
                _check_validity(root, moment)
                chain.append(root)
                return chain
            issuer = _find_issuer(current, intermediates)
            if issuer is None:
                raise CertificateValidationError(
                    f"No trusted path for {certificate.subject.rfc4514_string()}"
                )
            chain.append(issuer)
            current = issuer
        raise CertificateValidationError(f"Certificate path longer than {max_depth}")


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


def _verify_with_key(
    certificate: x509.Certificate,
    signature: bytes,
    data: bytes,
    digest: hashes.HashAlgorithm,
    *,
    pss: bool = False,
) -> None:
    public_key = certificate.public_key()
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            scheme = (
                padding.PSS(mgf=padding.MGF1(digest), salt_length=padding.PSS.AUTO)
                if pss
                else padding.PKCS1v15()
            )
            public_key.verify(signature, data, scheme, digest)
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, data, ec.ECDSA(digest))
        elif isinstance(public_key, ed25519.Ed25519PublicKey):
            public_key.verify(signature, data)
        else:
            raise CertificateValidationError(
                f"Unsupported public key type {type(public_key).__name__}"
            )
    except InvalidSignature as exc:
        raise CertificateValidationError("Signature verification failed") from exc


def _signer_certificate(
    signer_id: cms.SignerIdentifier,
    certificates: Sequence[x509.Certificate],
) -> x509.Certificate:
    if signer_id.name == "issuer_and_serial_number":
        serial = signer_id.chosen["serial_number"].native
        issuer = signer_id.chosen["issuer"].dump()
        for certificate in certificates:
            if certificate.serial_number == serial and certificate.issuer.public_bytes() == issuer:
                return certificate
    else:
        key_id = signer_id.chosen.native
        for certificate in certificates:
            try:
                extension = certificate.extensions.get_extension_for_class(
                    x509.SubjectKeyIdentifier
                )
            except x509.ExtensionNotFound:
                continue
            if extension.value.digest == key_id:
                return certificate
    raise CertificateValidationError("Signer certificate not included in CMS signature")


def verify_cms_signature(
    signature: bytes,
    content: bytes,
) -> tuple[x509.Certificate, list[x509.Certificate]]:
    """Verify a detached CMS SignedData signature over ``content``.

    Returns
    -------
    tuple
        The signer certificate and every certificate embedded in the
        signature (candidates for path building).
    """
    try:
        content_info = cms.ContentInfo.load(signature)
        if content_info["content_type"].native != "signed_data":
            raise CertificateValidationError("CMS content is not SignedData")
        signed_data = content_info["content"]
        certificates = [
            x509.load_der_x509_certificate(choice.chosen.dump())
            for choice in signed_data["certificates"]
            if choice.name == "certificate"
        ]
        signer_infos = signed_data["signer_infos"]
        if len(signer_infos) != 1:
            raise CertificateValidationError(
                f"Expected one CMS signer, found {len(signer_infos)}"
            )
        signer_info = signer_infos[0]
        digest_name = signer_info["digest_algorithm"]["algorithm"].native
        signature_algorithm = signer_info["signature_algorithm"]["algorithm"].native
        signer_signature = signer_info["signature"].native
        signed_attributes = signer_info["signed_attrs"]
        signer = _signer_certificate(signer_info["sid"], certificates)
    except (ValueError, TypeError, KeyError) as exc:
        if isinstance(exc, CertificateValidationError):
            raise
        raise CertificateValidationError(f"Unparseable CMS signature: {exc}") from exc

    digest_type = _CMS_DIGESTS.get(digest_name)
    if digest_type is None:
        raise CertificateValidationError(f"Unsupported CMS digest algorithm {digest_name!r}")

    if isinstance(signed_attributes, core.Void):
        signed_bytes = content
    else:
        message_digest = None
        for attribute in signed_attributes:
            if attribute["type"].native == "message_digest":
                message_digest = attribute["values"][0].native
        if message_digest is None:
            raise CertificateValidationError("CMS signed attributes lack a message digest")
        hasher = hashes.Hash(digest_type())
        hasher.update(content)
        if hasher.finalize() != message_digest:
            raise CertificateValidationError("CMS message digest does not match the content")
        # Signed attributes are signed with their universal SET tag
        encoded = signed_attributes.dump()
        signed_bytes = b"\x31" + encoded[1:]

    _verify_with_key(
        signer,
        signer_signature,
        signed_bytes,
        digest_type(),
        pss=signature_algorithm == "rsassa_pss",
    )
    logger.debug(
        "cms_signature_verified",
        signer=signer.subject.rfc4514_string(),
        digest=digest_name,
    )
    return signer, certificates


def verify_signature_by_type(
    certificate: x509.Certificate,
    signature_type: str,
    signature: bytes,
    data: bytes,
) -> None:
    """Verify ``signature`` over ``data`` with ``certificate``'s key.

    ``signature_type`` is a signature algorithm OID or the PKCS#7 signed-data
    OID, in which case the CMS signer must be ``certificate``.
    """
    if signature_type == PKCS7_SIGNATURE_TYPE:
        signer, _ = verify_cms_signature(signature, data)
        if signer != certificate:
            raise CertificateValidationError("CMS signer is not the referenced certificate")
        return
    try:
        key_type, digest_type = _SIGNATURE_TYPES[signature_type]
    except KeyError:
        raise CertificateValidationError(
            f"Unsupported signature type {signature_type!r}"
        ) from None
    public_key = certificate.public_key()
    expected = rsa.RSAPublicKey if key_type == "rsa" else ec.EllipticCurvePublicKey
    if not isinstance(public_key, expected):
        raise CertificateValidationError(
            f"Signature type {signature_type} does not match the certificate key"
        )
    _verify_with_key(certificate, signature, data, digest_type())
