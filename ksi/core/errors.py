"""
Error hierarchy for the KSI client.

Every error carries a kind (code family), a numeric code and a human readable
message. ``error_code`` renders the pair the way verification results and the
command line report them, e.g. ``"FMT-11"``.
"""

from __future__ import annotations

from typing import ClassVar


class KSIError(Exception):
    """Base class for all KSI client errors."""

    kind: ClassVar[str] = "GEN"
    code: ClassVar[int] = 10

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def error_code(self) -> str:
        return f"{self.kind}-{self.code:02d}"

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# GEN: caller input and client state
# ---------------------------------------------------------------------------


class InvalidArgumentError(KSIError, ValueError):
    """Raised when a caller-supplied value is unusable."""

    code = 10


class UnsupportedAlgorithmError(KSIError, ValueError):
    """Raised for hash algorithms that are unknown or not available at runtime."""

    code = 11


class AlgorithmDeprecatedError(KSIError):
    """Raised in strict mode when a deprecated hash algorithm is requested."""

    code = 12


class BlockTooLargeError(KSIError):
    """Raised when a block signer would exceed its configured leaf limit."""

    code = 13


class ClientClosedError(KSIError, RuntimeError):
    """Raised when an operation is attempted on a closed client."""

    code = 14


class OperationCancelledError(KSIError):
    """Raised when a caller-supplied deadline expires before completion."""

    code = 15


# ---------------------------------------------------------------------------
# FMT: parsing
# ---------------------------------------------------------------------------


class FormatError(KSIError, ValueError):
    """Base class for decoding failures."""

    kind = "FMT"
    code = 10


class MalformedTlvError(FormatError):
    """Raised when bytes do not form valid TLV elements."""

    code = 11


class UnknownCriticalTlvError(FormatError):
    """Raised when a critical element with an unknown tag is encountered."""

    code = 12

    def __init__(self, message: str, *, tag: int) -> None:
        super().__init__(message)
        self.tag = tag


class MalformedSignatureError(FormatError):
    """Raised when a signature violates its structural rules."""

    code = 13


class MalformedPublicationCodeError(FormatError):
    """Raised when a publication code cannot be decoded or fails its CRC."""

    code = 14


class MalformedPublicationsFileError(FormatError):
    """Raised when a publications file cannot be parsed."""

    code = 15


class MalformedResponseError(FormatError):
    """Raised when an aggregator or extender response is not usable."""

    code = 16


# ---------------------------------------------------------------------------
# PUB: publication trust
# ---------------------------------------------------------------------------


class PublicationsFileUntrustedError(KSIError):
    """Raised when the publications file signature cannot be trusted."""

    kind = "PUB"
    code = 10


class PublicationsFileRegressionError(KSIError):
    """Raised when a refreshed publications file is older than the cached one."""

    kind = "PUB"
    code = 11


class PublicationUnavailableError(KSIError):
    """Raised when the extender cannot deliver the requested publication."""

    kind = "PUB"
    code = 12


class NoSuitablePublicationError(KSIError):
    """Raised when no publication exists at or after the signing time."""

    kind = "PUB"
    code = 13


# ---------------------------------------------------------------------------
# CAL: calendar trust
# ---------------------------------------------------------------------------


class ExtenderInconsistentError(KSIError):
    """Raised when an extender response does not match the target publication."""

    kind = "CAL"
    code = 10


# ---------------------------------------------------------------------------
# NET / AUTH: transport and credentials
# ---------------------------------------------------------------------------


class NetworkError(KSIError):
    """Raised when a service endpoint cannot be reached."""

    kind = "NET"
    code = 10


class TransportTimeoutError(NetworkError):
    """Raised when a single request exceeds its timeout."""

    code = 11


class ServiceRejectedError(NetworkError):
    """Raised when a service answers with a non-zero protocol status."""

    code = 12

    def __init__(self, message: str, *, status: int, status_message: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.status_message = status_message


class AggregatorRejectedError(ServiceRejectedError):
    """Raised when the aggregator rejects a signing request."""

    code = 13


class ExtenderRejectedError(ServiceRejectedError):
    """Raised when the extender rejects an extension request."""

    code = 14


class AuthenticationFailedError(KSIError):
    """Raised on credential rejection or response MAC mismatch."""

    kind = "AUTH"
    code = 10
