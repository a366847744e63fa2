"""Policy-driven signature verification."""

from ksi.modules.verification.engine import VerificationEngine
from ksi.modules.verification.policies import (
    Policy,
    PolicyStep,
    calendar_based_policy,
    default_policy,
    internal_policy,
    key_based_policy,
    publications_file_policy,
    user_publication_policy,
)
from ksi.modules.verification.rules import ErrorCode, RuleOutcome, VerificationContext
from ksi.modules.verification.schemas import RuleResult, VerificationResult

__all__ = [
    "VerificationEngine",
    "VerificationContext",
    "VerificationResult",
    "RuleResult",
    "RuleOutcome",
    "ErrorCode",
    "Policy",
    "PolicyStep",
    "internal_policy",
    "key_based_policy",
    "calendar_based_policy",
    "publications_file_policy",
    "user_publication_policy",
    "default_policy",
]
