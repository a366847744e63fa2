"""Pydantic schemas for verification results."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

RuleStatus = Literal["ok", "na", "fail"]


class RuleResult(BaseModel):
    """Outcome of one rule within one policy run."""

    policy: str
    rule: str
    status: RuleStatus
    error_code: str | None = Field(default=None, description="e.g. INT-03, set for fail and na")
    message: str | None = None


class VerificationResult(BaseModel):
    """Verdict of a verification with the ordered rule trace."""

    success: bool
    policy: str = Field(description="Policy that produced the verdict")
    error_code: str | None = None
    message: str | None = None
    rule_results: list[RuleResult] = Field(default_factory=list)
    verified_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def results_for(self, policy: str) -> list[RuleResult]:
        return [result for result in self.rule_results if result.policy == policy]
