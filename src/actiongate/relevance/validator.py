"""Relevance validator: rule-based fast path, semantic fallback, default policy.

The rule checker always runs first. A definitive rule verdict is returned
without touching the semantic scorer. Only an inconclusive rule check (and
only outside the ``inner_world`` scope) pays for a semantic call; when that
call cannot decide either, ``default_action_on_uncertainty`` applies.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from collections.abc import Sequence

from actiongate.config import ActionRelevanceConfig, PolicyStore, UncertaintyAction
from actiongate.models import (
    ActionRelevanceResult,
    ActionScope,
    ContactContext,
    RelevanceVerdict,
    ScheduledAction,
    ValidationMethod,
)
from actiongate.relevance.rules import RuleBasedChecker
from actiongate.relevance.semantic import SemanticRelevanceChecker

logger = logging.getLogger(__name__)


class RelevanceValidator:
    """Combines the rule and semantic checkers under the current policy."""

    def __init__(
        self,
        policy_store: PolicyStore,
        *,
        rules: RuleBasedChecker | None = None,
        semantic: SemanticRelevanceChecker | None = None,
        checked_by: str = "relevance_validator",
    ) -> None:
        self._policy_store = policy_store
        self._rules = rules or RuleBasedChecker()
        self._semantic = semantic
        self._checked_by = checked_by

    @property
    def semantic(self) -> SemanticRelevanceChecker | None:
        return self._semantic

    async def validate(
        self,
        action: ScheduledAction,
        context: ContactContext,
        *,
        policy: ActionRelevanceConfig | None = None,
    ) -> tuple[ActionRelevanceResult, ScheduledAction]:
        """Check *action* against *context*.

        Returns the result and a copy of the action with
        ``last_relevance_check`` / ``last_relevance_result`` updated. The
        action's status is left to the caller.
        """
        policy = policy or self._policy_store.current
        trace_id = action.trace_id or str(uuid.uuid4())
        criteria = action.relevance_criteria

        if policy.rule_validation_enabled:
            rule_result = self._rules.check(criteria, context)
            if rule_result.definitive:
                result = ActionRelevanceResult(
                    action_id=action.id,
                    verdict=rule_result.verdict,
                    confidence=rule_result.confidence,
                    reason=rule_result.reason,
                    method=ValidationMethod.RULE_BASED,
                    checked_by=self._checked_by,
                    failed_criteria=list(rule_result.failed),
                    trace_id=trace_id,
                )
                return self._finish(action, result, context)
            undetermined = list(rule_result.undetermined)
            skip_reason = rule_result.reason
        else:
            undetermined = list(criteria)
            skip_reason = "rule validation disabled"

        semantic_reason = self._semantic_skip_reason(action, policy)
        if semantic_reason is None:
            subset = {key: criteria[key] for key in undetermined} or dict(criteria)
            semantic_result = await self._semantic.check(
                action, context, policy, criteria=subset, trace_id=trace_id
            )
            if semantic_result.verdict != RelevanceVerdict.UNKNOWN:
                if not semantic_result.is_relevant:
                    semantic_result.failed_criteria = undetermined
                semantic_result.checked_by = self._checked_by
                return self._finish(action, semantic_result, context)
            semantic_reason = semantic_result.reason

        result = self._default_result(
            action, policy, undetermined, f"{skip_reason}; {semantic_reason}", trace_id
        )
        return self._finish(action, result, context)

    async def validate_batch(
        self,
        pairs: Sequence[tuple[ScheduledAction, ContactContext]],
        *,
        policy: ActionRelevanceConfig | None = None,
    ) -> list[tuple[ActionRelevanceResult, ScheduledAction]]:
        """Validate many actions with at most ``max_concurrent_checks`` in flight.

        Results are returned in input order.
        """
        policy = policy or self._policy_store.current
        semaphore = asyncio.Semaphore(policy.max_concurrent_checks)

        async def _one(
            action: ScheduledAction, context: ContactContext
        ) -> tuple[ActionRelevanceResult, ScheduledAction]:
            async with semaphore:
                return await self.validate(action, context, policy=policy)

        return list(await asyncio.gather(*(_one(a, c) for a, c in pairs)))

    def _semantic_skip_reason(
        self, action: ScheduledAction, policy: ActionRelevanceConfig
    ) -> str | None:
        if not policy.semantic_validation_enabled:
            return "semantic validation disabled"
        if self._semantic is None:
            return "no semantic scorer configured"
        if action.scope == ActionScope.INNER_WORLD:
            return "semantic validation skipped for inner_world scope"
        return None

    def _default_result(
        self,
        action: ScheduledAction,
        policy: ActionRelevanceConfig,
        undetermined: list[str],
        cause: str,
        trace_id: str,
    ) -> ActionRelevanceResult:
        approve = policy.default_action_on_uncertainty == UncertaintyAction.APPROVE
        unresolved = ", ".join(undetermined) if undetermined else "none"
        reason = (
            f"Relevance undetermined for criteria: {unresolved} ({cause}); "
            f"default policy '{policy.default_action_on_uncertainty.value}' applied"
        )
        logger.info("Action %s: %s", action.id, reason)
        return ActionRelevanceResult(
            action_id=action.id,
            verdict=RelevanceVerdict.RELEVANT if approve else RelevanceVerdict.NOT_RELEVANT,
            confidence=0.0,
            reason=reason,
            method=ValidationMethod.DEFAULT_POLICY,
            checked_by=self._checked_by,
            failed_criteria=list(undetermined),
            trace_id=trace_id,
        )

    @staticmethod
    def _finish(
        action: ScheduledAction,
        result: ActionRelevanceResult,
        context: ContactContext,
    ) -> tuple[ActionRelevanceResult, ScheduledAction]:
        result.context_snapshot = context.to_dict()
        updated = dataclasses.replace(
            action,
            last_relevance_check=result.checked_at,
            last_relevance_result=result,
        )
        logger.debug(
            "Relevance for action %s: %s (%s, confidence=%.2f)",
            action.id,
            result.verdict.value,
            result.method.value,
            result.confidence,
        )
        return result, updated
