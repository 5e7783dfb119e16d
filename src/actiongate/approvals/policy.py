"""Approval policy engine: decides whether a relevant action needs human sign-off.

Decision table, evaluated top to bottom:

1. ``real_world`` scope always requires approval, whatever the override mode.
2. ``always_ask`` requires approval; ``never_ask`` does not.
3. ``llm_decision`` asks the semantic scorer's review prompt and falls back
   to ``risk_based`` when it cannot answer.
4. ``risk_based``: a blank action type requires approval; the always-list
   wins over the never-list when a type appears in both; any other type
   requires approval when the relevance confidence is below
   ``user_approval_threshold``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from actiongate.config import ActionRelevanceConfig, OverrideMode, PolicyStore
from actiongate.models import (
    ActionRelevanceResult,
    ActionScope,
    ContactContext,
    ScheduledAction,
    UserApprovalRequest,
    utcnow,
)
from actiongate.relevance.semantic import SemanticRelevanceChecker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalRequirement:
    required: bool
    reason: str


def risk_based_requirement(
    action: ScheduledAction,
    result: ActionRelevanceResult,
    policy: ActionRelevanceConfig,
) -> ApprovalRequirement:
    """Pure risk-based decision (no scope floor, no override mode)."""
    action_type = action.action_type.strip()
    if not action_type:
        return ApprovalRequirement(True, "action type is blank")
    if action_type in policy.always_require_approval_actions:
        return ApprovalRequirement(True, f"{action_type} always requires approval")
    if action_type in policy.never_require_approval_actions:
        return ApprovalRequirement(False, f"{action_type} never requires approval")
    if result.confidence < policy.user_approval_threshold:
        return ApprovalRequirement(
            True,
            f"confidence {result.confidence:.2f} below approval threshold "
            f"{policy.user_approval_threshold:.2f}",
        )
    return ApprovalRequirement(
        False,
        f"confidence {result.confidence:.2f} meets approval threshold "
        f"{policy.user_approval_threshold:.2f}",
    )


class ApprovalPolicyEngine:
    """Applies the override mode and the risk-based rules to a relevance result."""

    def __init__(
        self,
        policy_store: PolicyStore,
        semantic: SemanticRelevanceChecker | None = None,
    ) -> None:
        self._policy_store = policy_store
        self._semantic = semantic

    async def requires_approval(
        self,
        action: ScheduledAction,
        result: ActionRelevanceResult,
        mode: OverrideMode | None = None,
        *,
        policy: ActionRelevanceConfig | None = None,
        context: ContactContext | None = None,
    ) -> ApprovalRequirement:
        policy = policy or self._policy_store.current
        mode = mode or policy.override_mode

        if action.scope == ActionScope.REAL_WORLD:
            return ApprovalRequirement(True, "real_world actions always require approval")
        if mode == OverrideMode.ALWAYS_ASK:
            return ApprovalRequirement(True, "override mode always_ask")
        if mode == OverrideMode.NEVER_ASK:
            return ApprovalRequirement(False, "override mode never_ask")

        if mode == OverrideMode.LLM_DECISION:
            if self._semantic is not None:
                required = await self._semantic.review_required(action, result, context, policy)
                if required is not None:
                    verdict = "requires" if required else "does not require"
                    return ApprovalRequirement(required, f"semantic review {verdict} approval")
            fallback = risk_based_requirement(action, result, policy)
            logger.info(
                "Semantic review unavailable for action %s; using risk-based rules", action.id
            )
            return ApprovalRequirement(
                fallback.required, f"{fallback.reason} (risk-based fallback)"
            )

        return risk_based_requirement(action, result, policy)


def build_request(
    action: ScheduledAction,
    result: ActionRelevanceResult,
    reason: str,
    policy: ActionRelevanceConfig,
    *,
    approver_id: str,
    alternatives: list[str] | None = None,
    now: datetime | None = None,
) -> UserApprovalRequest:
    """Construct (but do not persist) an approval request for *action*."""
    requested_at = now or utcnow()
    if alternatives is None:
        alternatives = list(result.alternative_actions)
    return UserApprovalRequest(
        action=action,
        relevance_result=result,
        reason=reason,
        approver_id=approver_id,
        requested_at=requested_at,
        expires_at=requested_at + timedelta(minutes=policy.user_approval_timeout_minutes),
        alternative_actions=list(alternatives),
    )
