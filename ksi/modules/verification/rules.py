"""
Verification rules.

A rule is any object with a ``name`` and an async ``run(context)`` returning
a :class:`RuleOutcome`. Rules never raise for verification failures; they
report ``fail`` with an error code, or ``na`` when they cannot decide.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Protocol

from cryptography import x509

from ksi.core.crypto.hashing import DataHash
from ksi.core.crypto.pki import (
    CertificateSubjectSelector,
    CertificateValidationError,
    verify_signature_by_type,
)
from ksi.core.errors import KSIError, MalformedSignatureError
from ksi.modules.extending.service import ExtendingService
from ksi.modules.publications.models import PublicationsFile
from ksi.modules.signature.chains import ChainResult, aggregate_chains
from ksi.modules.signature.models import (
    CalendarAuthenticationRecord,
    CalendarHashChain,
    KSISignature,
    PublicationData,
    PublicationRecord,
)
from ksi.modules.verification.schemas import RuleStatus


class ErrorCode(StrEnum):
    WRONG_DOCUMENT = "GEN-01"
    INCONCLUSIVE = "GEN-02"
    AGGREGATION_CHAINS_INCONSISTENT = "INT-01"
    AGGREGATION_TIMES_INCONSISTENT = "INT-02"
    CALENDAR_INPUT_MISMATCH = "INT-03"
    CALENDAR_REGISTRATION_TIME_MISMATCH = "INT-04"
    CALENDAR_OUTPUT_MISMATCH = "INT-05"
    ALGORITHM_DEPRECATED = "INT-06"
    CERTIFICATE_NOT_FOUND = "KEY-01"
    CERTIFICATE_REJECTED = "KEY-02"
    CERTIFICATE_NOT_VALID = "KEY-03"
    EXTENDED_OUTPUT_MISMATCH = "CAL-01"
    EXTENDED_AGGREGATION_TIME_MISMATCH = "CAL-02"
    EXTENDED_INPUT_MISMATCH = "CAL-03"
    EXTENDED_PUBLICATION_TIME_MISMATCH = "CAL-04"
    EXTENDER_UNAVAILABLE = "CAL-05"
    EXTENDER_ROOT_MISMATCH = "PUB-01"
    EXTENDER_INCONSISTENT = "PUB-02"
    EXTENDER_INPUT_MISMATCH = "PUB-03"
    USER_PUBLICATION_MISMATCH = "PUB-04"
    PUBLICATION_NOT_IN_FILE = "PUB-05"


@dataclass(frozen=True, slots=True)
class RuleOutcome:
    status: RuleStatus
    error_code: str | None = None
    message: str | None = None

    @classmethod
    def ok(cls, message: str | None = None) -> RuleOutcome:
        return cls("ok", None, message)

    @classmethod
    def na(cls, message: str, error_code: str = ErrorCode.INCONCLUSIVE) -> RuleOutcome:
        return cls("na", str(error_code), message)

    @classmethod
    def fail(cls, error_code: str, message: str) -> RuleOutcome:
        return cls("fail", str(error_code), message)


@dataclass
class VerificationContext:
    """Inputs of one verification plus values derived while it runs.

    The publications file is the snapshot taken when the verification
    started. Calendar chains fetched from the extender and auto-extended
    copies of the signature are cached here and never touch ``signature``.
    """

    signature: KSISignature
    document_hash: DataHash | None = None
    publications_file: PublicationsFile | None = None
    user_publication: PublicationData | None = None
    extending_allowed: bool = False
    extender: ExtendingService | None = None
    certificate_selector: CertificateSubjectSelector | None = None
    _aggregation_results: list[ChainResult] | None = field(default=None, init=False, repr=False)
    _calendar_chains: dict[int | None, CalendarHashChain] = field(
        default_factory=dict, init=False, repr=False
    )
    extended_signatures: dict[int, KSISignature] = field(
        default_factory=dict, init=False, repr=False
    )

    @property
    def aggregation_results(self) -> list[ChainResult]:
        if self._aggregation_results is None:
            self._aggregation_results = aggregate_chains(self.signature.aggregation_chains)
        return self._aggregation_results

    @property
    def aggregation_output(self) -> DataHash:
        return self.aggregation_results[-1].output_hash

    async def calendar_chain(self, publication_time: int | None) -> CalendarHashChain:
        """Calendar chain for the signature's round, fetched once per target time."""
        if self.extender is None:
            raise KSIError("No extender is configured")
        if publication_time not in self._calendar_chains:
            self._calendar_chains[publication_time] = await self.extender.get_calendar_chain(
                self.signature.aggregation_time, publication_time
            )
        return self._calendar_chains[publication_time]

    def remember_extension(
        self, chain: CalendarHashChain, record: PublicationRecord
    ) -> KSISignature:
        extended = self.signature.extended_to(chain, record)
        self.extended_signatures[record.publication_time] = extended
        return extended


class Rule(Protocol):
    name: str

    async def run(self, context: VerificationContext) -> RuleOutcome: ...


# ---------------------------------------------------------------------------
# Internal rules
# ---------------------------------------------------------------------------


class InputHashMatchesRule:
    name = "InputHashMatches"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        if context.document_hash is None:
            return RuleOutcome.ok("No document hash supplied")
        if context.document_hash != context.signature.input_hash:
            return RuleOutcome.fail(
                ErrorCode.WRONG_DOCUMENT,
                f"Document hash {context.document_hash} differs from signed "
                f"{context.signature.input_hash}",
            )
        return RuleOutcome.ok()


class AggregationChainConsistentRule:
    name = "AggregationChainConsistent"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        signature = context.signature
        chains = signature.aggregation_chains
        if signature.rfc3161_record is not None:
            if signature.rfc3161_record.output_hash != chains[0].input_hash:
                return RuleOutcome.fail(
                    ErrorCode.AGGREGATION_CHAINS_INCONSISTENT,
                    "RFC 3161 record output differs from the lowest aggregation chain input",
                )
        try:
            results = context.aggregation_results
        except MalformedSignatureError as exc:
            return RuleOutcome.fail(ErrorCode.AGGREGATION_CHAINS_INCONSISTENT, str(exc))
        for position, (result, upper) in enumerate(zip(results, chains[1:], strict=False)):
            if result.output_hash != upper.input_hash:
                return RuleOutcome.fail(
                    ErrorCode.AGGREGATION_CHAINS_INCONSISTENT,
                    f"Aggregation chain {position} output differs from chain {position + 1} input",
                )
        return RuleOutcome.ok()


class AggregationTimesConsistentRule:
    name = "AggregationTimesConsistent"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        signature = context.signature
        expected = signature.aggregation_time
        times = [chain.aggregation_time for chain in signature.aggregation_chains]
        if signature.rfc3161_record is not None:
            times.append(signature.rfc3161_record.aggregation_time)
        if signature.calendar_chain is not None:
            times.append(signature.calendar_chain.effective_aggregation_time)
        mismatched = [time for time in times if time != expected]
        if mismatched:
            return RuleOutcome.fail(
                ErrorCode.AGGREGATION_TIMES_INCONSISTENT,
                f"Aggregation times {sorted(set(mismatched))} differ from {expected}",
            )
        return RuleOutcome.ok()


class CalendarChainInputMatchesRule:
    name = "CalendarChainInputMatches"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        calendar = context.signature.calendar_chain
        if calendar is None:
            return RuleOutcome.ok("Signature has no calendar chain")
        if calendar.input_hash != context.aggregation_output:
            return RuleOutcome.fail(
                ErrorCode.CALENDAR_INPUT_MISMATCH,
                "Calendar chain input differs from the aggregation output",
            )
        return RuleOutcome.ok()


class CalendarChainRegistrationTimeRule:
    name = "CalendarChainRegistrationTime"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        calendar = context.signature.calendar_chain
        if calendar is None:
            return RuleOutcome.ok("Signature has no calendar chain")
        try:
            registration_time = calendar.registration_time
        except MalformedSignatureError as exc:
            return RuleOutcome.fail(ErrorCode.CALENDAR_REGISTRATION_TIME_MISMATCH, str(exc))
        if registration_time != context.signature.aggregation_time:
            return RuleOutcome.fail(
                ErrorCode.CALENDAR_REGISTRATION_TIME_MISMATCH,
                f"Calendar chain registers time {registration_time}, "
                f"signature claims {context.signature.aggregation_time}",
            )
        return RuleOutcome.ok()


class CalendarChainOutputMatchesRule:
    name = "CalendarChainOutputMatches"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        calendar = context.signature.calendar_chain
        published = context.signature.published_data
        if calendar is None or published is None:
            return RuleOutcome.ok("Signature has no trust anchor record")
        if calendar.publication_data != published:
            return RuleOutcome.fail(
                ErrorCode.CALENDAR_OUTPUT_MISMATCH,
                "Calendar chain output differs from the published calendar root",
            )
        return RuleOutcome.ok()


class AlgorithmNotDeprecatedRule:
    name = "AlgorithmNotDeprecatedAtSigningTime"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        signing_time = context.signature.aggregation_time
        deprecated = sorted(
            algorithm.name
            for algorithm in context.signature.hash_algorithms
            if algorithm.is_deprecated_at(signing_time)
        )
        if deprecated:
            return RuleOutcome.fail(
                ErrorCode.ALGORITHM_DEPRECATED,
                f"{', '.join(deprecated)} deprecated at signing time {signing_time}",
            )
        return RuleOutcome.ok()


# ---------------------------------------------------------------------------
# Key-based rules
# ---------------------------------------------------------------------------


def _calendar_certificate(
    context: VerificationContext,
) -> tuple[CalendarAuthenticationRecord, x509.Certificate] | None:
    """The authentication record and its certificate, when both can be found."""
    record = context.signature.calendar_authentication_record
    if record is None or context.publications_file is None:
        return None
    certificate = context.publications_file.certificate_by_id(record.signature_data.certificate_id)
    if certificate is None:
        return None
    return record, certificate


class CalendarAuthenticationRecordPresentRule:
    name = "CalendarAuthenticationRecordPresent"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        if context.signature.calendar_authentication_record is None:
            return RuleOutcome.na("Signature has no calendar authentication record")
        if context.publications_file is None:
            return RuleOutcome.na("No publications file to look up certificates in")
        return RuleOutcome.ok()


class CertificateExistsRule:
    name = "CertificateExists"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        record = context.signature.calendar_authentication_record
        if record is None or context.publications_file is None:
            return RuleOutcome.na("Nothing to look up")
        certificate_id = record.signature_data.certificate_id
        if context.publications_file.certificate_by_id(certificate_id) is None:
            return RuleOutcome.fail(
                ErrorCode.CERTIFICATE_NOT_FOUND,
                f"Certificate {certificate_id.hex()} is not in the publications file",
            )
        return RuleOutcome.ok()


class CertificateSubjectMatchesRule:
    name = "CertificateSubjectMatches"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        found = _calendar_certificate(context)
        if found is None:
            return RuleOutcome.na("No calendar certificate")
        _, certificate = found
        if context.certificate_selector is None:
            return RuleOutcome.ok("No certificate selector configured")
        if not context.certificate_selector.matches(certificate):
            return RuleOutcome.fail(
                ErrorCode.CERTIFICATE_REJECTED,
                f"Certificate {certificate.subject.rfc4514_string()} does not match "
                f"{context.certificate_selector}",
            )
        return RuleOutcome.ok()


class CertificateValidAtAggregationTimeRule:
    name = "CertificateValidAtAggregationTime"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        found = _calendar_certificate(context)
        if found is None:
            return RuleOutcome.na("No calendar certificate")
        _, certificate = found
        moment = datetime.fromtimestamp(context.signature.aggregation_time, tz=UTC)
        if not certificate.not_valid_before_utc <= moment <= certificate.not_valid_after_utc:
            return RuleOutcome.fail(
                ErrorCode.CERTIFICATE_NOT_VALID,
                f"Certificate not valid at aggregation time {moment.isoformat()}",
            )
        return RuleOutcome.ok()


class CalendarAuthenticationSignatureRule:
    name = "CalendarAuthenticationSignatureValid"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        found = _calendar_certificate(context)
        if found is None:
            return RuleOutcome.na("No calendar certificate")
        record, certificate = found
        try:
            verify_signature_by_type(
                certificate,
                record.signature_data.signature_type,
                record.signature_data.signature_value,
                record.signed_bytes,
            )
        except CertificateValidationError as exc:
            return RuleOutcome.fail(ErrorCode.CERTIFICATE_REJECTED, str(exc))
        return RuleOutcome.ok()


# ---------------------------------------------------------------------------
# Calendar-based rules
# ---------------------------------------------------------------------------


def _target_publication_time(signature: KSISignature) -> int | None:
    if signature.calendar_chain is None:
        return None
    return signature.calendar_chain.publication_time


class ExtenderResponseAvailableRule:
    name = "ExtenderResponseAvailable"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        if context.extender is None:
            return RuleOutcome.na("No extender is configured")
        try:
            await context.calendar_chain(_target_publication_time(context.signature))
        except KSIError as exc:
            return RuleOutcome.fail(
                ErrorCode.EXTENDER_UNAVAILABLE, f"Extender request failed: {exc}"
            )
        return RuleOutcome.ok()


class ExtendedChainInputMatchesRule:
    name = "ExtendedChainInputMatches"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        chain = await context.calendar_chain(_target_publication_time(context.signature))
        if chain.input_hash != context.aggregation_output:
            return RuleOutcome.fail(
                ErrorCode.EXTENDED_INPUT_MISMATCH,
                "Extender chain input differs from the aggregation output",
            )
        return RuleOutcome.ok()


class ExtendedChainAggregationTimeMatchesRule:
    name = "ExtendedChainAggregationTimeMatches"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        chain = await context.calendar_chain(_target_publication_time(context.signature))
        try:
            registration_time = chain.registration_time
        except MalformedSignatureError as exc:
            return RuleOutcome.fail(ErrorCode.EXTENDED_AGGREGATION_TIME_MISMATCH, str(exc))
        if (
            chain.effective_aggregation_time != context.signature.aggregation_time
            or registration_time != context.signature.aggregation_time
        ):
            return RuleOutcome.fail(
                ErrorCode.EXTENDED_AGGREGATION_TIME_MISMATCH,
                "Extender chain aggregation time differs from the signature",
            )
        return RuleOutcome.ok()


class ExtendedChainOutputMatchesRule:
    name = "ExtendedChainOutputMatches"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        calendar = context.signature.calendar_chain
        chain = await context.calendar_chain(_target_publication_time(context.signature))
        if calendar is None:
            return RuleOutcome.ok("Signature has no calendar chain to compare")
        if chain.publication_time != calendar.publication_time:
            return RuleOutcome.fail(
                ErrorCode.EXTENDED_PUBLICATION_TIME_MISMATCH,
                f"Extender chain publication time {chain.publication_time} differs from "
                f"{calendar.publication_time}",
            )
        if chain.output_hash != calendar.output_hash:
            return RuleOutcome.fail(
                ErrorCode.EXTENDED_OUTPUT_MISMATCH,
                "Extender chain output differs from the signature's calendar root",
            )
        return RuleOutcome.ok()


# ---------------------------------------------------------------------------
# Publication-based rules
# ---------------------------------------------------------------------------


async def _auto_extend(
    context: VerificationContext,
    record: PublicationRecord,
) -> RuleOutcome:
    """Fetch a chain to ``record`` and check it before trusting the copy."""
    if context.extender is None:
        return RuleOutcome.na("Extending is allowed but no extender is configured")
    try:
        chain = await context.calendar_chain(record.publication_time)
    except KSIError as exc:
        return RuleOutcome.na(f"Auto-extending failed: {exc}")
    if chain.output_hash != record.published_hash:
        return RuleOutcome.fail(
            ErrorCode.EXTENDER_ROOT_MISMATCH,
            "Extender chain does not hash to the published root",
        )
    try:
        registration_time = chain.registration_time
    except MalformedSignatureError as exc:
        return RuleOutcome.fail(ErrorCode.EXTENDER_INCONSISTENT, str(exc))
    if (
        chain.publication_time != record.publication_time
        or chain.effective_aggregation_time != context.signature.aggregation_time
        or registration_time != context.signature.aggregation_time
    ):
        return RuleOutcome.fail(
            ErrorCode.EXTENDER_INCONSISTENT,
            "Extender chain times do not match the signature and publication",
        )
    if chain.input_hash != context.aggregation_output:
        return RuleOutcome.fail(
            ErrorCode.EXTENDER_INPUT_MISMATCH,
            "Extender chain input differs from the aggregation output",
        )
    context.remember_extension(chain, record)
    return RuleOutcome.ok(f"Verified through extension to {record.publication_time}")


class PublicationsFileContainsPublicationRule:
    name = "PublicationsFileContainsPublication"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        if context.publications_file is None:
            return RuleOutcome.na("No publications file available")
        record = context.signature.publication_record
        if record is None:
            return RuleOutcome.na("Signature is not extended")
        if context.publications_file.publication_record_by_data(record.publication_data) is None:
            return RuleOutcome.fail(
                ErrorCode.PUBLICATION_NOT_IN_FILE,
                f"Publication {record.publication_data.to_code()} is not in the publications file",
            )
        return RuleOutcome.ok()


class PublicationsFileExtendingRule:
    name = "PublicationsFileExtending"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        if context.publications_file is None or context.signature.is_extended:
            return RuleOutcome.na("Nothing to extend against the publications file")
        if not context.extending_allowed:
            return RuleOutcome.na("Signature is not extended and extending is not allowed")
        record = context.publications_file.publication_record_at_or_after(
            context.signature.aggregation_time
        )
        if record is None:
            return RuleOutcome.na("No publication after the signing time yet")
        return await _auto_extend(context, record)


class UserPublicationMatchesRule:
    name = "UserPublicationMatches"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        user = context.user_publication
        if user is None:
            return RuleOutcome.na("No user publication supplied")
        record = context.signature.publication_record
        if record is None:
            return RuleOutcome.na("Signature is not extended")
        if record.publication_data == user:
            return RuleOutcome.ok()
        if record.publication_time == user.publication_time:
            return RuleOutcome.fail(
                ErrorCode.USER_PUBLICATION_MISMATCH,
                "Signature publication differs from the user publication",
            )
        return RuleOutcome.na("Signature is extended to a different publication")


class UserPublicationExtendingRule:
    name = "UserPublicationExtending"

    async def run(self, context: VerificationContext) -> RuleOutcome:
        user = context.user_publication
        if user is None:
            return RuleOutcome.na("No user publication supplied")
        if not context.extending_allowed:
            return RuleOutcome.na("Extending is not allowed")
        if user.publication_time < context.signature.aggregation_time:
            return RuleOutcome.fail(
                ErrorCode.USER_PUBLICATION_MISMATCH,
                "User publication predates the signature",
            )
        return await _auto_extend(context, PublicationRecord(user))
