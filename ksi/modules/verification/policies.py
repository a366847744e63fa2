"""
Verification policies.

A policy is an ordered list of steps. A step marked terminal ends the policy
successfully when its rule returns ``ok``. Every trust-anchor policy starts
with the internal consistency rules.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from ksi.modules.verification.rules import (
    AggregationChainConsistentRule,
    AggregationTimesConsistentRule,
    AlgorithmNotDeprecatedRule,
    CalendarAuthenticationRecordPresentRule,
    CalendarAuthenticationSignatureRule,
    CalendarChainInputMatchesRule,
    CalendarChainOutputMatchesRule,
    CalendarChainRegistrationTimeRule,
    CertificateExistsRule,
    CertificateSubjectMatchesRule,
    CertificateValidAtAggregationTimeRule,
    ExtendedChainAggregationTimeMatchesRule,
    ExtendedChainInputMatchesRule,
    ExtendedChainOutputMatchesRule,
    ExtenderResponseAvailableRule,
    InputHashMatchesRule,
    PublicationsFileContainsPublicationRule,
    PublicationsFileExtendingRule,
    Rule,
    UserPublicationExtendingRule,
    UserPublicationMatchesRule,
)


@dataclass(frozen=True)
class PolicyStep:
    rule: Rule
    terminal: bool = False


@dataclass(frozen=True)
class Policy:
    name: str
    steps: tuple[PolicyStep, ...]
    fallback: Policy | None = field(default=None)

    @property
    def has_terminal_steps(self) -> bool:
        return any(step.terminal for step in self.steps)

    @property
    def names(self) -> tuple[str, ...]:
        """Names of this policy and every fallback, in run order."""
        names: list[str] = []
        current: Policy | None = self
        while current is not None:
            names.append(current.name)
            current = current.fallback
        return tuple(names)

    def with_fallback(self, fallback: Policy) -> Policy:
        return Policy(self.name, self.steps, fallback)


def _steps(rules: Sequence[Rule], *, terminal: Sequence[Rule] = ()) -> tuple[PolicyStep, ...]:
    return tuple(PolicyStep(rule, terminal=rule in terminal) for rule in rules)


def _internal_rules() -> list[Rule]:
    return [
        InputHashMatchesRule(),
        AggregationChainConsistentRule(),
        AggregationTimesConsistentRule(),
        CalendarChainInputMatchesRule(),
        CalendarChainRegistrationTimeRule(),
        CalendarChainOutputMatchesRule(),
        AlgorithmNotDeprecatedRule(),
    ]


def internal_policy() -> Policy:
    return Policy("internal", _steps(_internal_rules()))


def key_based_policy() -> Policy:
    signature_rule = CalendarAuthenticationSignatureRule()
    rules = _internal_rules() + [
        CalendarAuthenticationRecordPresentRule(),
        CertificateExistsRule(),
        CertificateSubjectMatchesRule(),
        CertificateValidAtAggregationTimeRule(),
        signature_rule,
    ]
    return Policy("key-based", _steps(rules, terminal=[signature_rule]))


def calendar_based_policy() -> Policy:
    output_rule = ExtendedChainOutputMatchesRule()
    rules = _internal_rules() + [
        ExtenderResponseAvailableRule(),
        ExtendedChainInputMatchesRule(),
        ExtendedChainAggregationTimeMatchesRule(),
        output_rule,
    ]
    return Policy("calendar-based", _steps(rules, terminal=[output_rule]))


def publications_file_policy() -> Policy:
    contains = PublicationsFileContainsPublicationRule()
    extending = PublicationsFileExtendingRule()
    rules = _internal_rules() + [contains, extending]
    return Policy("publications-file", _steps(rules, terminal=[contains, extending]))


def user_publication_policy() -> Policy:
    matches = UserPublicationMatchesRule()
    extending = UserPublicationExtendingRule()
    rules = _internal_rules() + [matches, extending]
    return Policy("user-publication", _steps(rules, terminal=[matches, extending]))


def default_policy() -> Policy:
    """Publications-file verification, falling back to key-based."""
    return publications_file_policy().with_fallback(key_based_policy())


POLICIES = {
    "default": default_policy,
    "internal": internal_policy,
    "key": key_based_policy,
    "calendar": calendar_based_policy,
    "publications-file": publications_file_policy,
    "user-publication": user_publication_policy,
}
