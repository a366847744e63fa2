"""
Policy-driven verification engine.

Runs a policy's rules in order and stops at the first failure or at the
first terminal rule that succeeds. A policy with terminal steps that ends
without reaching one is inconclusive, and its fallback policy runs next.
"""

from __future__ import annotations

from ksi.core.errors import KSIError
from ksi.core.logging import get_logger
from ksi.modules.verification.policies import Policy
from ksi.modules.verification.rules import (
    ErrorCode,
    Rule,
    RuleOutcome,
    VerificationContext,
)
from ksi.modules.verification.schemas import RuleResult, VerificationResult

logger = get_logger(__name__)


class VerificationEngine:
    """Stateless policy evaluator.

    Usage::

        engine = VerificationEngine()
        result = await engine.verify(default_policy(), context)
    """

    async def verify(self, policy: Policy, context: VerificationContext) -> VerificationResult:
        trace: list[RuleResult] = []
        current: Policy | None = policy
        verdict = VerificationResult(success=False, policy=policy.name)

        while current is not None:
            verdict = await self._run_policy(current, context, trace)
            if verdict.success or verdict.error_code != ErrorCode.INCONCLUSIVE:
                break
            if current.fallback is not None:
                logger.debug(
                    "ksi_verification_fallback",
                    policy=current.name,
                    fallback=current.fallback.name,
                )
            current = current.fallback

        result = verdict.model_copy(update={"rule_results": trace})
        logger.info(
            "ksi_verification_finished",
            policy=result.policy,
            success=result.success,
            error_code=result.error_code,
            aggregation_time=context.signature.aggregation_time,
        )
        return result

    async def _run_policy(
        self,
        policy: Policy,
        context: VerificationContext,
        trace: list[RuleResult],
    ) -> VerificationResult:
        last_na: RuleOutcome | None = None
        for step in policy.steps:
            outcome = await self._run_rule(step.rule, context)
            trace.append(
                RuleResult(
                    policy=policy.name,
                    rule=step.rule.name,
                    status=outcome.status,
                    error_code=outcome.error_code,
                    message=outcome.message,
                )
            )
            if outcome.status == "fail":
                return VerificationResult(
                    success=False,
                    policy=policy.name,
                    error_code=outcome.error_code,
                    message=f"{step.rule.name}: {outcome.message}",
                )
            if outcome.status == "na":
                last_na = outcome
            elif step.terminal:
                return VerificationResult(
                    success=True, policy=policy.name, message=outcome.message
                )

        if not policy.has_terminal_steps:
            return VerificationResult(success=True, policy=policy.name)
        return VerificationResult(
            success=False,
            policy=policy.name,
            error_code=ErrorCode.INCONCLUSIVE,
            message=last_na.message if last_na else "No terminal rule succeeded",
        )

    async def _run_rule(self, rule: Rule, context: VerificationContext) -> RuleOutcome:
        try:
            return await rule.run(context)
        except KSIError as exc:
            logger.debug("ksi_rule_inconclusive", rule=rule.name, error=str(exc))
            return RuleOutcome.na(f"{exc.error_code}: {exc}")
